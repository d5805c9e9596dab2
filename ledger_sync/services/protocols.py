"""Interfaces of the external collaborators ledger-sync drives.

The ledger source client and the budget SDK are provided by the caller;
anything matching these protocols can be plugged in (tests use fakes).
"""
from datetime import date
from typing import Any, Dict, List, Optional, Protocol

from ..schemas.ledger import SourceAccount, SourceTransaction


class LedgerClient(Protocol):
    async def is_locked(self) -> bool: ...

    async def get_accounts(self) -> List[SourceAccount]: ...

    async def get_transactions(
        self,
        from_date: date,
        to_date: Optional[date] = None,
        for_account: Optional[str] = None,
        for_category: Optional[str] = None,
    ) -> List[SourceTransaction]: ...


class BudgetSdk(Protocol):
    """Async surface of the remote budgeting SDK.

    Records cross this boundary as plain dicts, like the SDK's JSON payloads.
    """

    async def init(self, data_dir: str, server_url: str, password: str) -> None: ...

    async def download_budget(self, sync_id: str, password: Optional[str] = None) -> None: ...

    async def load_budget(self, local_id: str) -> None: ...

    async def sync(self) -> None: ...

    async def get_accounts(self) -> List[Dict[str, Any]]: ...

    async def get_transactions(self, account_id: str, start_date: str, end_date: str) -> List[Dict[str, Any]]: ...

    async def import_transactions(self, account_id: str, transactions: List[Dict[str, Any]]) -> Dict[str, Any]: ...

    async def shutdown(self) -> None: ...


class PayeeNormalizer(Protocol):
    async def transform_payees(self, names: List[str]) -> Optional[Dict[str, str]]: ...
