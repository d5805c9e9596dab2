"""Tests for the budget session client."""

import asyncio
import json
import logging
import sys
import time
from datetime import date

import pytest

from conftest import FakeBudgetSdk
from ledger_sync.config import BudgetConfig, EncryptionConfig, ServerConfig
from ledger_sync.errors import (
    BudgetCredentialsError,
    BudgetDirectoryMissingError,
    BudgetDirectoryNotFoundError,
    BudgetFileNotFoundError,
    BudgetNetworkError,
    BudgetTimeoutError,
)
from ledger_sync.schemas.budget import DestinationTransaction
from ledger_sync.services.budget_session import BudgetSessionClient, SessionState, quiet_output


def make_client(tmp_path, sdk=None, timeout_ms=1000, budgets=None, **kwargs):
    server = ServerConfig(
        server_url="http://localhost:5006",
        server_password="secret",
        request_timeout_ms=timeout_ms,
        budgets=budgets or [BudgetConfig(sync_id="budget-1")],
    )
    return BudgetSessionClient(server, sdk or FakeBudgetSdk(), tmp_path / "data", **kwargs)


def write_metadata(directory, content):
    directory.mkdir(parents=True)
    (directory / "metadata.json").write_text(content, encoding="utf-8")


def test_init_creates_data_dir_and_downloads_budgets(tmp_path):
    """init() prepares the data dir, initialises once and downloads each budget."""
    sdk = FakeBudgetSdk()
    client = make_client(tmp_path, sdk)

    async def scenario():
        await client.init()
        await client.init()

    asyncio.run(scenario())

    assert (tmp_path / "data").is_dir()
    assert sdk.count("init") == 1
    assert sdk.count("download_budget") == 1
    assert client.state is SessionState.READY


def test_load_budget_downloads_loads_and_syncs_in_order(tmp_path):
    """The local id comes from metadata.json, not the sync id."""
    sdk = FakeBudgetSdk(local_ids={"budget-1": "My-Budget-abc123"})
    client = make_client(tmp_path, sdk)

    asyncio.run(client.load_budget("budget-1"))

    operations = [call[0] for call in sdk.calls]
    assert operations == ["init", "download_budget", "download_budget", "load_budget", "sync"]
    assert ("load_budget", "My-Budget-abc123") in sdk.calls
    assert client.state is SessionState.BUDGET_LOADED
    assert client.loaded_sync_id == "budget-1"


def test_encrypted_budget_download_passes_password(tmp_path):
    """End-to-end encrypted budgets are downloaded with their password."""
    sdk = FakeBudgetSdk()
    budget = BudgetConfig(sync_id="budget-1", e2e_encryption=EncryptionConfig(enabled=True, password="e2e"))
    client = make_client(tmp_path, sdk, budgets=[budget])

    asyncio.run(client.load_budget("budget-1"))

    assert ("download_budget", "budget-1", "e2e") in sdk.calls


def test_get_transactions_formats_dates_and_silences_sdk_output(tmp_path, capsys):
    """SDK prints are swallowed during the call and stdout is restored afterwards."""
    sdk = FakeBudgetSdk()
    client = make_client(tmp_path, sdk)
    original_stdout = sys.stdout

    async def noisy_get_transactions(account_id, start_date, end_date):
        sdk.calls.append(("get_transactions", account_id, start_date, end_date))
        print("Got messages from server abc")
        return [{"id": "t1", "date": "2024-02-05", "amount": -100, "imported_id": "x-1"}]

    sdk.get_transactions = noisy_get_transactions

    transactions = asyncio.run(
        client.get_transactions("account-1", date(2024, 2, 1), date(2024, 2, 20))
    )

    assert ("get_transactions", "account-1", "2024-02-01", "2024-02-20") in sdk.calls
    assert transactions[0].imported_id == "x-1"
    assert sys.stdout is original_stdout
    assert "Got messages from server" not in capsys.readouterr().out


def test_quiet_output_restores_streams_on_error():
    """Streams are restored even when the wrapped block raises."""
    original_stdout, original_stderr = sys.stdout, sys.stderr

    with pytest.raises(RuntimeError):
        with quiet_output("test"):
            print("noise")
            raise RuntimeError("boom")

    assert sys.stdout is original_stdout
    assert sys.stderr is original_stderr


def test_import_transactions_assigns_ids_and_drops_duplicates(tmp_path):
    """Missing imported ids are generated, repeated explicit ids keep the first record."""
    sdk = FakeBudgetSdk()
    client = make_client(tmp_path, sdk)
    transactions = [
        DestinationTransaction(date=date(2024, 2, 1), amount=100, imported_id="existing", imported_payee="Alpha"),
        DestinationTransaction(date=date(2024, 2, 2), amount=200, imported_id="existing", imported_payee="Beta"),
        DestinationTransaction(date=date(2024, 2, 3), amount=300, imported_payee="Gamma", notes="needs id"),
    ]

    result = asyncio.run(client.import_transactions("account-1", transactions))

    sent = [call for call in sdk.calls if call[0] == "import_transactions"][0][2]
    assert len(sent) == 2
    assert sent[0]["imported_id"] == "existing"
    assert sent[0]["imported_payee"] == "Alpha"
    assert sent[1]["imported_id"].startswith("mm-sync-")
    assert "cleared" not in sent[1]
    assert len(result.added) == 2


def test_identical_records_without_ids_are_all_imported(tmp_path):
    """Two identical purchases on the same day are distinct records, not duplicates."""
    sdk = FakeBudgetSdk()
    client = make_client(tmp_path, sdk)
    coffee = DestinationTransaction(date=date(2024, 2, 3), amount=-350, imported_payee="Coffee")

    async def scenario():
        await client.import_transactions("account-1", [coffee, coffee])
        await client.import_transactions("account-1", [coffee, coffee])

    asyncio.run(scenario())

    first, second = [call[2] for call in sdk.calls if call[0] == "import_transactions"]
    assert len(first) == 2
    assert first[0]["imported_id"] != first[1]["imported_id"]
    assert first == second
    assert len(sdk.records["account-1"]) == 2


def test_retried_import_after_timeout_sends_identical_batch(tmp_path, caplog):
    """A timed-out import can be retried without changing the generated ids."""
    sdk = FakeBudgetSdk()
    client = make_client(tmp_path, sdk, timeout_ms=5)
    transactions = [
        DestinationTransaction(date=date(2024, 2, 1), amount=100, imported_id="existing"),
        DestinationTransaction(date=date(2024, 2, 3), amount=300, imported_payee="Gamma"),
    ]

    async def scenario():
        await client.init()
        sdk.hang.add("import_transactions")
        with pytest.raises(BudgetTimeoutError):
            await client.import_transactions("account-1", transactions)
        sdk.hang.clear()
        return await client.import_transactions("account-1", transactions)

    result = asyncio.run(scenario())

    payloads = [call[2] for call in sdk.calls if call[0] == "import_transactions"]
    assert len(payloads) == 2
    assert payloads[0] == payloads[1]
    assert len(result.added) == 2
    timeout_records = [r for r in caplog.records if "timed out" in r.getMessage()]
    assert timeout_records
    assert "Account ID: account-1" in timeout_records[0].hints
    assert "Server URL: http://localhost:5006" in timeout_records[0].hints


def test_data_call_timeout_keeps_session(tmp_path):
    """A hanging data call fails fast and the session is reused afterwards."""
    sdk = FakeBudgetSdk()
    client = make_client(tmp_path, sdk, timeout_ms=5)

    async def scenario():
        await client.load_budget("budget-1")
        sdk.hang.add("get_transactions")
        started = time.monotonic()
        with pytest.raises(BudgetTimeoutError) as excinfo:
            await client.get_transactions("account-1", date(2024, 2, 1))
        elapsed = time.monotonic() - started
        sdk.hang.clear()
        transactions = await client.get_transactions("account-1", date(2024, 2, 1))
        return excinfo.value, elapsed, transactions

    error, elapsed, transactions = asyncio.run(scenario())

    assert error.operation == "getTransactions"
    assert elapsed < 1.0
    assert transactions == []
    assert sdk.count("init") == 1
    assert sdk.count("shutdown") == 0
    assert client.state is SessionState.BUDGET_LOADED


def test_load_timeout_shuts_down_and_reinitialises_once(tmp_path, caplog):
    """A hanging download during load forces a restart, retried exactly once."""
    sdk = FakeBudgetSdk()
    client = make_client(tmp_path, sdk, timeout_ms=5)

    async def scenario():
        await client.init()
        sdk.hang.add("download_budget")
        with pytest.raises(BudgetTimeoutError):
            await client.load_budget("budget-1")

    asyncio.run(scenario())

    assert sdk.count("init") == 2
    assert sdk.count("shutdown") == 2
    assert sdk.count("load_budget") == 0
    assert client.state is SessionState.UNINITIALIZED
    timeout_records = [r for r in caplog.records if "timed out" in r.getMessage()]
    assert "Budget sync ID: budget-1" in timeout_records[0].hints


def test_missing_local_directory_restarts_session_and_retries(tmp_path):
    """A stale local directory is recovered by one restart."""
    sdk = FakeBudgetSdk()
    sdk.failures["load_budget"] = [FileNotFoundError("ENOENT: no such file or directory, open 'db.sqlite'")]
    client = make_client(tmp_path, sdk)

    asyncio.run(client.load_budget("budget-1"))

    assert sdk.count("init") == 2
    assert sdk.count("shutdown") == 1
    assert sdk.count("load_budget") == 2
    assert client.state is SessionState.BUDGET_LOADED


def test_missing_local_directory_twice_raises(tmp_path):
    """The retry is bounded to a single extra attempt."""
    sdk = FakeBudgetSdk()
    sdk.failures["sync"] = [Exception("budget directory does not exist")] * 2
    client = make_client(tmp_path, sdk)

    with pytest.raises(BudgetDirectoryMissingError):
        asyncio.run(client.load_budget("budget-1"))

    assert sdk.count("sync") == 2


def test_unmatched_sync_id_lists_directories_and_mismatches(tmp_path, caplog):
    """No matching metadata produces an error describing what was scanned."""
    data_dir = tmp_path / "data"
    write_metadata(data_dir / "Other-Budget", json.dumps({"id": "Other-Budget", "groupId": "other"}))
    write_metadata(data_dir / "Broken-Budget", "{not json")
    sdk = FakeBudgetSdk()

    async def download_nothing(sync_id, password=None):
        sdk.calls.append(("download_budget", sync_id, password))

    sdk.download_budget = download_nothing
    client = make_client(tmp_path, sdk)

    with pytest.raises(BudgetDirectoryNotFoundError) as excinfo:
        asyncio.run(client.load_budget("budget-1"))

    error = excinfo.value
    assert "budget-1" in error.message
    assert str(data_dir) in error.message
    assert any("Other-Budget" in hint and "Broken-Budget" in hint for hint in error.hints)
    assert "Other-Budget: groupId 'other' does not match requested syncId 'budget-1'" in error.hints
    assert any("desktop client" in hint for hint in error.hints)
    assert any("Broken-Budget" in r.getMessage() for r in caplog.records if r.levelno == logging.WARNING)
    assert sdk.count("load_budget") == 0


def test_directory_scan_is_capped(tmp_path, caplog):
    """Only the configured number of directories is inspected."""
    data_dir = tmp_path / "data"
    for name in ("a", "b", "c"):
        write_metadata(data_dir / name, json.dumps({"id": name, "groupId": f"group-{name}"}))
    client = make_client(tmp_path, max_scanned_directories=2)

    scan = client.find_budget_directory("missing")

    assert len(scan.considered) == 2
    assert scan.skipped == 1
    assert scan.local_id is None
    assert any("1 skipped" in r.getMessage() for r in caplog.records)


def test_network_errors_are_translated(tmp_path):
    """Connection failures surface as BudgetNetworkError with guidance."""
    sdk = FakeBudgetSdk()
    sdk.failures["get_accounts"] = [ConnectionError("request to server failed: connect ECONNREFUSED")]
    client = make_client(tmp_path, sdk)

    with pytest.raises(BudgetNetworkError) as excinfo:
        asyncio.run(client.get_accounts())

    assert any("network" in hint for hint in excinfo.value.hints)


def test_invalid_password_is_terminal(tmp_path):
    """Rejected credentials name the server and are not retried."""
    sdk = FakeBudgetSdk()
    sdk.failures["init"] = [Exception("Failed to login: Invalid password provided")]
    client = make_client(tmp_path, sdk)

    with pytest.raises(BudgetCredentialsError) as excinfo:
        asyncio.run(client.init())

    assert "http://localhost:5006" in excinfo.value.message
    assert sdk.count("init") == 1


def test_budget_missing_on_server_is_terminal(tmp_path):
    """A budget file missing on the server is not retried."""
    sdk = FakeBudgetSdk()
    client = make_client(tmp_path, sdk)

    async def scenario():
        await client.init()
        sdk.failures["download_budget"] = [Exception("file-not-found")]
        await client.load_budget("budget-1")

    with pytest.raises(BudgetFileNotFoundError):
        asyncio.run(scenario())

    assert sdk.count("download_budget") == 2
    assert sdk.count("init") == 1


def test_shutdown_without_init_is_a_noop(tmp_path):
    sdk = FakeBudgetSdk()
    client = make_client(tmp_path, sdk)

    asyncio.run(client.shutdown())

    assert sdk.count("shutdown") == 0


def test_benign_shutdown_errors_are_swallowed(tmp_path, caplog):
    """Closing an already closed database only warns."""
    sdk = FakeBudgetSdk()
    sdk.failures["shutdown"] = [Exception("No database connection to close")]
    client = make_client(tmp_path, sdk)

    async def scenario():
        await client.init()
        await client.shutdown()

    asyncio.run(scenario())

    assert client.state is SessionState.UNINITIALIZED
    assert any(r.levelno == logging.WARNING and "shutting down" in r.getMessage() for r in caplog.records)


def test_failing_shutdown_is_logged_not_raised(tmp_path, caplog):
    """Shutdown resolves even when the SDK fails for a non-benign reason."""
    sdk = FakeBudgetSdk()
    sdk.failures["shutdown"] = [RuntimeError("socket hang up")]
    client = make_client(tmp_path, sdk)

    async def scenario():
        await client.init()
        await client.shutdown()

    asyncio.run(scenario())

    assert client.state is SessionState.UNINITIALIZED
    errors = [r for r in caplog.records if r.levelno == logging.ERROR and "shutting down" in r.getMessage().lower()]
    assert "socket hang up" in errors[0].getMessage()
    assert "Server URL: http://localhost:5006" in errors[0].hints


def test_init_timeout_shuts_down_half_started_sdk(tmp_path):
    """An SDK whose init hangs is still shut down."""
    sdk = FakeBudgetSdk()
    sdk.hang.add("init")
    client = make_client(tmp_path, sdk, timeout_ms=5)

    with pytest.raises(BudgetTimeoutError):
        asyncio.run(client.init())

    assert sdk.count("shutdown") == 1
    assert client.state is SessionState.UNINITIALIZED
