from .ledger import (
    Balance,
    SourceAccount,
    SourceTransaction,
)
from .budget import (
    DestinationAccount,
    DestinationTransaction,
    ImportRecordError,
    ImportResult,
    BudgetMetadata,
)

__all__ = [
    "Balance",
    "SourceAccount",
    "SourceTransaction",
    "DestinationAccount",
    "DestinationTransaction",
    "ImportRecordError",
    "ImportResult",
    "BudgetMetadata",
]
