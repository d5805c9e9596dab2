"""Shared pytest fixtures and fakes for ledger-sync tests."""

import asyncio
import json
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from ledger_sync.config import AppConfig, BudgetConfig, ImportConfig, ServerConfig
from ledger_sync.schemas.ledger import Balance, SourceAccount, SourceTransaction


class FakeLedger:
    """In-memory ledger source."""

    def __init__(self, accounts=None, transactions=None, locked=False):
        self.accounts = list(accounts or [])
        self.transactions = list(transactions or [])
        self.locked = locked
        self.transaction_queries = []

    async def is_locked(self):
        return self.locked

    async def get_accounts(self):
        return list(self.accounts)

    async def get_transactions(self, from_date, to_date=None, for_account=None, for_category=None):
        self.transaction_queries.append((from_date, to_date))
        return [
            tx for tx in self.transactions
            if tx.value_date >= from_date and (to_date is None or tx.value_date <= to_date)
        ]


class FakeBudgetSdk:
    """
    In-memory budget SDK.

    Downloading a budget writes the metadata.json the real SDK keeps on disk.
    Operations listed in `hang` never finish; `failures` maps an operation to
    a list of exceptions raised by its next calls.
    """

    def __init__(self, accounts=None, local_ids=None):
        self.accounts = list(accounts or [{"id": "budget-checking", "name": "Checking", "type": "checking"}])
        self.local_ids = dict(local_ids or {})
        self.records = {}
        self.calls = []
        self.hang = set()
        self.failures = {}
        self.data_dir = None

    async def _enter(self, operation, *args):
        self.calls.append((operation,) + args)
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)
        if operation in self.hang:
            await asyncio.Event().wait()

    def count(self, operation):
        return sum(1 for call in self.calls if call[0] == operation)

    async def init(self, data_dir, server_url, password):
        await self._enter("init", data_dir, server_url)
        self.data_dir = Path(data_dir)

    async def download_budget(self, sync_id, password=None):
        await self._enter("download_budget", sync_id, password)
        local_id = self.local_ids.get(sync_id, f"Budget-{sync_id}")
        directory = self.data_dir / local_id
        directory.mkdir(parents=True, exist_ok=True)
        (directory / "metadata.json").write_text(
            json.dumps({"id": local_id, "groupId": sync_id, "budgetName": "Budget"}),
            encoding="utf-8",
        )

    async def load_budget(self, local_id):
        await self._enter("load_budget", local_id)

    async def sync(self):
        await self._enter("sync")

    async def get_accounts(self):
        await self._enter("get_accounts")
        return list(self.accounts)

    async def get_transactions(self, account_id, start_date, end_date):
        await self._enter("get_transactions", account_id, start_date, end_date)
        return [
            dict(record) for record in self.records.get(account_id, [])
            if start_date <= record["date"] <= end_date
        ]

    async def import_transactions(self, account_id, transactions):
        await self._enter("import_transactions", account_id, transactions)
        stored = self.records.setdefault(account_id, [])
        known = {record["imported_id"] for record in stored}
        added = []
        for tx in transactions:
            if tx["imported_id"] in known:
                continue
            record = dict(tx, id=f"tx-{len(stored) + 1}")
            stored.append(record)
            known.add(tx["imported_id"])
            added.append(record["id"])
        return {"added": added, "updated": [], "errors": []}

    async def shutdown(self):
        await self._enter("shutdown")


def make_account(id="ledger-checking", name="Checking", account_number="DE001", balance="1000.00"):
    return SourceAccount(
        id=id,
        account_number=account_number,
        name=name,
        balance=Balance(amount=Decimal(balance), currency="EUR") if balance is not None else None,
    )


def make_transaction(id, amount, value_date, account_id="ledger-checking", booked=True, name="Grocery Store",
                     purpose="Card payment", comment=""):
    return SourceTransaction(
        id=id,
        account_id=account_id,
        amount=Decimal(amount),
        booked=booked,
        value_date=value_date,
        booking_date=value_date,
        name=name,
        purpose=purpose,
        comment=comment,
    )


@pytest.fixture
def budget_config():
    return BudgetConfig(sync_id="budget-1", account_mapping={"ledger-checking": "Checking"})


@pytest.fixture
def server_config(budget_config):
    return ServerConfig(
        server_url="http://localhost:5006",
        server_password="secret",
        request_timeout_ms=1000,
        budgets=[budget_config],
    )


@pytest.fixture
def app_config(server_config):
    return AppConfig(
        import_=ImportConfig(import_unchecked_transactions=False, synchronize_cleared_status=True),
        actual_servers=[server_config],
    )


@pytest.fixture
def sdk():
    return FakeBudgetSdk()


@pytest.fixture
def ledger():
    return FakeLedger(
        accounts=[make_account()],
        transactions=[
            make_transaction("1", "-20.00", date(2024, 2, 3)),
            make_transaction("2", "-30.50", date(2024, 2, 10), name="Coffee Shop"),
        ],
    )
