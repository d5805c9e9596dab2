import asyncio
import hashlib
import io
import logging
from collections import defaultdict
from contextlib import contextmanager, redirect_stderr, redirect_stdout
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterator, List, Optional, Sequence, Set

from pydantic import ValidationError

from ..config import BudgetConfig, ServerConfig
from ..errors import (
    BudgetCredentialsError,
    BudgetDirectoryMissingError,
    BudgetDirectoryNotFoundError,
    BudgetFileNotFoundError,
    BudgetNetworkError,
    BudgetSessionError,
    BudgetTimeoutError,
    LedgerSyncError,
)
from ..schemas.budget import BudgetMetadata, DestinationAccount, DestinationTransaction, ImportResult
from .protocols import BudgetSdk

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
MAX_SCANNED_DIRECTORIES = 100
MAX_LOAD_ATTEMPTS = 2
GENERATED_ID_PREFIX = "mm-sync-"

NETWORK_ERROR_MARKERS = ("econnrefused", "enotfound", "econnreset", "etimedout", "network-failure", "fetch failed")
CREDENTIAL_ERROR_MARKERS = ("invalid password", "failed to login", "unauthorized", "invalid-password")
FILE_NOT_FOUND_MARKERS = ("file not found", "file-not-found", "budget not found", "could not find budget")
DIRECTORY_MISSING_MARKERS = ("no such file or directory", "enoent", "budget directory does not exist", "directory missing")
BENIGN_SHUTDOWN_MARKERS = ("no database connection", "database is closed", "not open", "already closed")


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    READY = "ready"
    BUDGET_LOADED = "budget_loaded"


@dataclass
class DirectoryScan:
    """Outcome of looking for the local directory of one budget."""
    sync_id: str
    data_dir: Path
    local_id: Optional[str] = None
    directory: Optional[Path] = None
    considered: List[str] = field(default_factory=list)
    mismatches: List[str] = field(default_factory=list)
    skipped: int = 0


@contextmanager
def quiet_output(operation: str) -> Iterator[None]:
    """
    Swallow whatever the SDK prints to stdout/stderr while the block runs.

    Captured lines are replayed at debug level once the streams have been
    restored, on success and on error alike.
    """
    sink = io.StringIO()
    try:
        with redirect_stdout(sink), redirect_stderr(sink):
            yield
    finally:
        for line in sink.getvalue().splitlines():
            if line.strip():
                logger.debug(f"[{operation}] {line}")


def _content_key(account_id: str, record: DestinationTransaction) -> str:
    return f"{account_id}:{record.date.isoformat()}:{record.amount}:{record.imported_payee or ''}:{record.notes or ''}"


def generate_imported_id(account_id: str, record: DestinationTransaction, occurrence: int = 0) -> str:
    """
    Derive an imported id from the record contents, stable across retries.

    `occurrence` is the record's position among batch records with identical
    content, so equal-looking but distinct records get distinct ids.
    """
    hash_input = f"{_content_key(account_id, record)}:{occurrence}"
    return GENERATED_ID_PREFIX + hashlib.sha256(hash_input.encode()).hexdigest()[:24]


def _matches(exc: BaseException, markers: Sequence[str]) -> bool:
    text = f"{exc} {getattr(exc, 'code', '') or ''}".lower()
    return any(marker in text for marker in markers)


class BudgetSessionClient:
    """
    Session with one budget server.

    Owns the SDK instance for the server: initialisation, budget download
    and loading, time-bounded data calls and shutdown. One instance per
    server; budgets of that server are loaded one after another.
    """

    def __init__(
        self,
        server_config: ServerConfig,
        sdk: BudgetSdk,
        data_dir: Path,
        max_scanned_directories: int = MAX_SCANNED_DIRECTORIES,
    ):
        self.server_config = server_config
        self.sdk = sdk
        self.data_dir = Path(data_dir)
        self.max_scanned_directories = max_scanned_directories
        self.timeout_ms = server_config.effective_timeout_ms

        self.state = SessionState.UNINITIALIZED
        self.loaded_sync_id: Optional[str] = None
        self._abandoned: Set[asyncio.Future] = set()

    @property
    def server_url(self) -> str:
        return self.server_config.server_url

    # Lifecycle

    async def init(self) -> None:
        """Initialise the SDK and download every budget of this server."""
        if self.state is not SessionState.UNINITIALIZED:
            return

        await self._start()
        for budget in self.server_config.budgets:
            await self._download_with_retry(budget)

    async def _start(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        # Counts as started for shutdown purposes even if init fails half way
        self.state = SessionState.STARTING
        try:
            await self._call(
                "init",
                lambda: self.sdk.init(
                    data_dir=str(self.data_dir),
                    server_url=self.server_url,
                    password=self.server_config.server_password,
                ),
                during_load=True,
            )
        except LedgerSyncError:
            await self.shutdown()
            raise
        self.state = SessionState.READY
        self.loaded_sync_id = None
        logger.debug(f"Budget session for {self.server_url} initialised (data dir: {self.data_dir})")

    async def _restart(self) -> None:
        await self.shutdown()
        await self._start()

    async def _download_with_retry(self, budget: BudgetConfig) -> None:
        for attempt in range(1, MAX_LOAD_ATTEMPTS + 1):
            try:
                await self._download(budget.sync_id, attempt)
                return
            except (BudgetTimeoutError, BudgetNetworkError) as e:
                if attempt == MAX_LOAD_ATTEMPTS:
                    raise
                logger.warning(
                    f"Downloading budget '{budget.sync_id}' failed, restarting the session and retrying.",
                    extra={"hints": e.hints},
                )
                await self._restart()

    async def load_budget(self, sync_id: str) -> None:
        """
        Make `sync_id` the active budget of the session.

        Downloads the budget, resolves its local directory, loads and syncs
        it. A stale local directory or a transient failure restarts the
        session and repeats the sequence once.

        Raises:
            BudgetDirectoryNotFoundError: If no local directory matches sync_id
            BudgetTimeoutError: If a step exceeds the request timeout twice
            BudgetSessionError: For every other budget service failure
        """
        await self.init()

        for attempt in range(1, MAX_LOAD_ATTEMPTS + 1):
            try:
                await self._load_budget_once(sync_id, attempt)
                break
            except (BudgetDirectoryMissingError, BudgetTimeoutError, BudgetNetworkError) as e:
                if attempt == MAX_LOAD_ATTEMPTS:
                    raise
                logger.warning(
                    f"Loading budget '{sync_id}' failed, restarting the session and retrying once.",
                    extra={"hints": e.hints},
                )
                await self._restart()

        self.state = SessionState.BUDGET_LOADED
        self.loaded_sync_id = sync_id
        logger.info(f"Budget '{sync_id}' loaded from {self.server_url}")

    async def _load_budget_once(self, sync_id: str, attempt: int) -> None:
        scan = self.find_budget_directory(sync_id)
        if scan.local_id:
            logger.debug(f"Budget '{sync_id}' currently lives in '{scan.directory}'")
        else:
            logger.debug(f"Budget '{sync_id}' has no local directory yet")

        await self._download(sync_id, attempt)

        # The SDK may rotate the local id while downloading
        scan = self.find_budget_directory(sync_id)
        if not scan.local_id:
            raise self._directory_not_found(scan)

        hints = self._budget_hints(sync_id, attempt)
        await self._call("loadBudget", lambda: self.sdk.load_budget(scan.local_id), hints=hints, during_load=True)
        await self._call("sync", self.sdk.sync, hints=hints, during_load=True)

    async def _download(self, sync_id: str, attempt: int = 1) -> None:
        budget = self._budget_config(sync_id)
        password = None
        if budget is not None and budget.e2e_encryption.enabled:
            password = budget.e2e_encryption.password

        await self._call(
            "downloadBudget",
            lambda: self.sdk.download_budget(sync_id, password=password),
            hints=self._budget_hints(sync_id, attempt),
            during_load=True,
        )

    async def shutdown(self) -> None:
        """
        Close the session. Never-initialised sessions are left alone.

        Never raises once attempted; failures are logged instead.
        """
        if self.state is SessionState.UNINITIALIZED:
            logger.debug(f"Budget session for {self.server_url} was never initialised, nothing to shut down")
            return

        try:
            await self._call("shutdown", self.sdk.shutdown)
        except BudgetTimeoutError as e:
            logger.warning(f"Shutting down the budget session timed out: {e}", extra={"hints": e.hints})
        except LedgerSyncError as e:
            if _matches(e.__cause__ or e, BENIGN_SHUTDOWN_MARKERS):
                logger.warning(f"Ignoring error while shutting down the budget session: {e.__cause__ or e}")
            else:
                logger.error(f"Shutting down the budget session failed: {e}", extra={"hints": e.hints})
        finally:
            self.state = SessionState.UNINITIALIZED
            self.loaded_sync_id = None
            for future in self._abandoned:
                future.cancel()
            self._abandoned.clear()

    # Data calls

    async def get_accounts(self) -> List[DestinationAccount]:
        await self.init()
        accounts = await self._call("getAccounts", self.sdk.get_accounts)
        return [DestinationAccount.model_validate(a) for a in accounts or []]

    async def get_transactions(
        self,
        account_id: str,
        from_date: date,
        to_date: Optional[date] = None
    ) -> List[DestinationTransaction]:
        """Get existing transactions of a budget account within [from_date, to_date]."""
        await self.init()
        end_date = to_date or date.today()
        transactions = await self._call(
            "getTransactions",
            lambda: self.sdk.get_transactions(account_id, from_date.isoformat(), end_date.isoformat()),
            hints=[f"Account ID: {account_id}"],
        )
        return [DestinationTransaction.model_validate(t) for t in transactions or []]

    async def import_transactions(
        self,
        account_id: str,
        transactions: List[DestinationTransaction]
    ) -> ImportResult:
        """
        Import transactions into a budget account.

        Records without an imported id get one derived from their contents and
        their occurrence among identical records. Records repeating an
        explicit imported id already in the batch are dropped.

        Returns:
            ImportResult with added/updated ids and per-record errors
        """
        await self.init()

        prepared = []
        seen_ids = set()
        occurrences: Dict[str, int] = defaultdict(int)
        for tx in transactions:
            if tx.imported_id:
                imported_id = tx.imported_id
            else:
                key = _content_key(account_id, tx)
                imported_id = generate_imported_id(account_id, tx, occurrences[key])
                occurrences[key] += 1
            if imported_id in seen_ids:
                logger.debug(f"Dropping duplicate imported id '{imported_id}' from batch for account {account_id}")
                continue
            seen_ids.add(imported_id)
            prepared.append(tx.model_copy(update={"imported_id": imported_id}))

        result = await self._call(
            "importTransactions",
            lambda: self.sdk.import_transactions(account_id, [tx.to_payload() for tx in prepared]),
            hints=[f"Account ID: {account_id}"],
        )
        return ImportResult.model_validate(result or {})

    # Local budget directories

    def find_budget_directory(self, sync_id: str) -> DirectoryScan:
        """
        Scan the data dir for the budget directory belonging to `sync_id`.

        Only the most recently modified directories are inspected. Directories
        with missing or corrupt metadata are skipped.
        """
        scan = DirectoryScan(sync_id=sync_id, data_dir=self.data_dir)
        if not self.data_dir.is_dir():
            return scan

        entries = []
        for entry in self.data_dir.iterdir():
            try:
                if entry.is_dir():
                    entries.append((entry.stat().st_mtime, entry))
            except OSError:
                continue
        entries.sort(key=lambda item: (-item[0], item[1].name))

        if len(entries) > self.max_scanned_directories:
            scan.skipped = len(entries) - self.max_scanned_directories
            logger.warning(
                f"Found {len(entries)} budget directories in '{self.data_dir}', "
                f"only scanning the {self.max_scanned_directories} most recent ({scan.skipped} skipped)."
            )

        best_mtime = None
        for _, directory in entries[:self.max_scanned_directories]:
            scan.considered.append(directory.name)
            metadata_file = directory / METADATA_FILE
            if not metadata_file.is_file():
                scan.mismatches.append(f"{directory.name}: no {METADATA_FILE}")
                continue

            try:
                metadata = BudgetMetadata.model_validate_json(metadata_file.read_text(encoding="utf-8"))
                metadata_mtime = metadata_file.stat().st_mtime
            except (OSError, ValueError, ValidationError) as e:
                logger.warning(f"Skipping budget directory '{directory.name}': unreadable {METADATA_FILE} ({e})")
                scan.mismatches.append(f"{directory.name}: unreadable {METADATA_FILE}")
                continue

            if sync_id in (metadata.group_id, metadata.id):
                if best_mtime is None or metadata_mtime > best_mtime:
                    best_mtime = metadata_mtime
                    scan.local_id = metadata.id
                    scan.directory = directory
            elif metadata.group_id:
                scan.mismatches.append(
                    f"{directory.name}: groupId '{metadata.group_id}' does not match requested syncId '{sync_id}'"
                )
            else:
                scan.mismatches.append(f"{directory.name}: metadata has no groupId")

        return scan

    def _directory_not_found(self, scan: DirectoryScan) -> BudgetDirectoryNotFoundError:
        considered = ", ".join(scan.considered) if scan.considered else "(none)"
        hints = [
            f"Server URL: {self.server_url}",
            f"Budget sync ID: {scan.sync_id}",
            f"Data directory: {scan.data_dir}",
            f"Directories considered: {considered}",
        ]
        hints.extend(scan.mismatches)
        if scan.skipped:
            hints.append(f"{scan.skipped} older directories were not scanned.")
        hints.append("Open the budget in the desktop client and sync it, then run the import again.")
        return BudgetDirectoryNotFoundError(
            f"No local budget directory matches sync ID '{scan.sync_id}' in '{scan.data_dir}'.",
            hints=hints,
        )

    # Plumbing

    def _budget_config(self, sync_id: str) -> Optional[BudgetConfig]:
        return next((b for b in self.server_config.budgets if b.sync_id == sync_id), None)

    def _budget_hints(self, sync_id: str, attempt: int) -> List[str]:
        return [f"Budget sync ID: {sync_id}", f"Attempt: {attempt}/{MAX_LOAD_ATTEMPTS}"]

    async def _call(
        self,
        operation: str,
        call: Callable[[], Awaitable],
        hints: Optional[List[str]] = None,
        during_load: bool = False,
    ):
        """
        Run one SDK call under the request timeout.

        On timeout the call is abandoned, not interrupted: its task keeps
        running and a late result is discarded. Timeouts while loading a
        budget also shut the session down so the next call starts clean.
        """
        hints = [f"Server URL: {self.server_url}"] + (hints or [])

        with quiet_output(operation):
            task = asyncio.ensure_future(call())
            try:
                return await asyncio.wait_for(asyncio.shield(task), timeout=self.timeout_ms / 1000)
            except asyncio.TimeoutError:
                self._abandon(task)
                error = BudgetTimeoutError(operation, self.timeout_ms, hints=hints)
            except LedgerSyncError:
                raise
            except Exception as e:
                raise self._translate_error(operation, e, hints) from e

        logger.error(f"{error.message} The call was abandoned.", extra={"hints": error.hints})
        if during_load:
            await self.shutdown()
        raise error

    def _abandon(self, task: asyncio.Future) -> None:
        self._abandoned.add(task)

        def _done(finished: asyncio.Future) -> None:
            self._abandoned.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                logger.debug(f"Abandoned budget service call failed late: {finished.exception()}")

        task.add_done_callback(_done)

    def _translate_error(self, operation: str, exc: Exception, hints: List[str]) -> BudgetSessionError:
        if _matches(exc, NETWORK_ERROR_MARKERS):
            return BudgetNetworkError(
                f"Could not reach the budget server at {self.server_url} during '{operation}'.",
                hints=hints + ["Check your network connection.", "Verify the server is running and the URL is correct."],
            )
        if _matches(exc, CREDENTIAL_ERROR_MARKERS):
            return BudgetCredentialsError(
                f"The budget server at {self.server_url} rejected the configured password.",
                hints=hints + ["Update serverPassword in the configuration file."],
            )
        if operation == "downloadBudget" and _matches(exc, FILE_NOT_FOUND_MARKERS):
            return BudgetFileNotFoundError(
                f"The budget file was not found on the server {self.server_url}.",
                hints=hints + ["Check the syncId in the configuration file against the budget's advanced settings."],
            )
        if operation in ("loadBudget", "sync") and (
            isinstance(exc, FileNotFoundError) or _matches(exc, DIRECTORY_MISSING_MARKERS)
        ):
            return BudgetDirectoryMissingError(
                f"The local budget directory disappeared during '{operation}'.",
                hints=hints + [str(exc)],
            )
        return BudgetSessionError(f"Budget service operation '{operation}' failed: {exc}", hints=hints)
