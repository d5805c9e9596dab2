from .account_map import AccountMap, ResolvedAccountMap, resolve_destination_account, resolve_source_account
from .budget_session import BudgetSessionClient, SessionState, quiet_output
from .reconciler import TransactionReconciler, Reconciliation, to_minor_units
from .importer import Importer, ImportSummary, PairOutcome
from .payee_transformer import PayeeTransformer
from .masking import mask_payee

__all__ = [
    "AccountMap",
    "ResolvedAccountMap",
    "resolve_source_account",
    "resolve_destination_account",
    "BudgetSessionClient",
    "SessionState",
    "quiet_output",
    "TransactionReconciler",
    "Reconciliation",
    "to_minor_units",
    "Importer",
    "ImportSummary",
    "PairOutcome",
    "PayeeTransformer",
    "mask_payee",
]
