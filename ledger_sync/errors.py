from typing import Iterable, List, Optional


class LedgerSyncError(Exception):
    """Base error for ledger-sync.

    Every error carries a list of hints (server URL, budget sync id,
    account id, ...) that the logging layer renders below the message.
    """

    def __init__(self, message: str, hints: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.message = message
        self.hints: List[str] = list(hints or [])


class ConfigError(LedgerSyncError):
    """Configuration file missing, unreadable or invalid."""


class LedgerLockedError(LedgerSyncError):
    """The ledger source database is locked and cannot be queried."""


class AccountMappingError(LedgerSyncError):
    """One or more configured account references did not resolve."""

    def __init__(self, sync_id: str, unresolved: List[str]):
        header = f"Failed to resolve account mapping for budget '{sync_id}'."
        if len(unresolved) == 1:
            message = f"{header} {unresolved[0]}"
        else:
            message = header + "".join(f"\n - {item}" for item in unresolved)
        super().__init__(message, hints=[f"Budget sync ID: {sync_id}"])
        self.sync_id = sync_id
        self.unresolved = unresolved


class AccountMapNotLoadedError(LedgerSyncError):
    """The account map was accessed before load_from_config() finished."""


class MalformedTransactionError(LedgerSyncError):
    """The ledger source returned a transaction missing required fields."""


class BudgetSessionError(LedgerSyncError):
    """Base error for failures talking to the budget service."""


class BudgetTimeoutError(BudgetSessionError):
    """A budget service call did not finish within the configured bound."""

    def __init__(self, operation: str, timeout_ms: int, hints: Optional[Iterable[str]] = None):
        super().__init__(
            f"Budget service operation '{operation}' timed out after {timeout_ms}ms.",
            hints=hints,
        )
        self.operation = operation
        self.timeout_ms = timeout_ms


class BudgetNetworkError(BudgetSessionError):
    """The budget server could not be reached."""


class BudgetCredentialsError(BudgetSessionError):
    """The budget server rejected the configured password."""


class BudgetFileNotFoundError(BudgetSessionError):
    """The requested budget file does not exist on the server."""


class BudgetDirectoryMissingError(BudgetSessionError):
    """The local budget directory vanished or went stale after download."""


class BudgetDirectoryNotFoundError(BudgetSessionError):
    """No local budget directory matches the requested sync id."""
