import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from typing import Iterable, List, Optional, Sequence, Union

from ..config import BudgetConfig, ImportConfig
from ..errors import MalformedTransactionError
from ..schemas.budget import DestinationAccount, DestinationTransaction
from ..schemas.ledger import SourceAccount, SourceTransaction

logger = logging.getLogger(__name__)

STARTING_BALANCE_LABEL = "Starting balance"


def to_minor_units(amount: Union[Decimal, int, float, str]) -> int:
    """Convert a currency amount to integer cents, rounding halves away from zero."""
    if not isinstance(amount, Decimal):
        amount = Decimal(str(amount))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@lru_cache(maxsize=256)
def _pattern_regex(pattern: str) -> "re.Pattern[str]":
    # `*` is a wildcard, everything else is literal
    return re.compile(".*".join(re.escape(part) for part in pattern.split("*")), re.IGNORECASE)


def matches_pattern(value: Optional[str], patterns: Optional[Iterable[str]]) -> bool:
    """True if any pattern occurs in value (case-insensitive, `*` wildcards)."""
    if not value or not patterns:
        return False
    return any(_pattern_regex(pattern).search(value) for pattern in patterns)


@dataclass
class Reconciliation:
    """Write-set for one ledger account -> budget account pair."""
    source_account: SourceAccount
    destination_account: DestinationAccount
    candidates: List[DestinationTransaction] = field(default_factory=list)
    skipped_reason: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.candidates


class TransactionReconciler:
    """
    Decides which ledger transactions still have to be written to a budget account.

    Identity is the imported id `{ledgerAccountId}-{transactionId}`; anything
    whose id already exists in the budget account is left out, so repeated
    runs over the same window write nothing new.
    """

    def __init__(self, import_config: ImportConfig, budget_config: BudgetConfig):
        self.import_config = import_config
        self.budget_config = budget_config

    def effective_from_date(self, requested: date) -> date:
        """Clamp the requested start date to the budget's earliest import date."""
        earliest = self.budget_config.earliest_import_date
        if earliest and earliest > requested:
            logger.warning(
                f"Earliest import date is set to {earliest.isoformat()}. "
                f"Using this date instead of {requested.isoformat()}."
            )
            return earliest
        return requested

    def filter_transactions(self, transactions: Iterable[SourceTransaction]) -> List[SourceTransaction]:
        """Drop pending transactions (unless configured) and ignored ones."""
        result = []
        ignore = self.import_config.ignore_patterns

        for tx in transactions:
            if not tx.booked and not self.import_config.import_unchecked_transactions:
                continue

            if ignore is not None and (
                matches_pattern(tx.comment, ignore.comment_patterns)
                or matches_pattern(tx.name, ignore.payee_patterns)
                or matches_pattern(tx.purpose, ignore.purpose_patterns)
            ):
                logger.debug(f"Ignoring transaction {tx.id} due to ignore patterns")
                continue

            result.append(tx)

        return result

    def convert(self, tx: SourceTransaction) -> DestinationTransaction:
        self.validate(tx)
        return DestinationTransaction(
            date=tx.value_date,
            amount=to_minor_units(tx.amount),
            imported_id=f"{tx.account_id}-{tx.id}",
            imported_payee=tx.name,
            cleared=tx.booked if self.import_config.synchronize_cleared_status else None,
            notes=tx.purpose,
        )

    @staticmethod
    def validate(tx: SourceTransaction) -> None:
        """
        Reject ledger transactions missing what an import needs.

        Raises:
            MalformedTransactionError: Listing every problem found
        """
        issues = []
        if tx.value_date is None:
            issues.append("valueDate is missing or invalid")
        if tx.amount is None or not tx.amount.is_finite():
            issues.append("amount is missing or invalid")
        if not tx.name or not tx.name.strip():
            issues.append("name is missing or invalid")
        if not tx.id:
            issues.append("id is missing")
        if not tx.account_id:
            issues.append("accountId is missing")

        if not issues:
            return

        transaction_id = tx.id or "(missing)"
        account_id = tx.account_id or "(missing)"
        raise MalformedTransactionError(
            f"The ledger returned a malformed transaction (id: {transaction_id}, account: {account_id}). "
            f"{'; '.join(issues)}.",
            hints=[
                f"Transaction ID: {transaction_id}",
                f"Ledger account ID: {account_id}",
                "Export a fresh transactions report from the ledger or repair its database before retrying.",
            ],
        )

    def starting_balance(
        self,
        account: SourceAccount,
        transactions: Sequence[SourceTransaction]
    ) -> DestinationTransaction:
        """
        Build the synthetic first transaction of an empty budget account.

        Its amount is the ledger balance minus every booked transaction in
        the window, dated at the oldest transaction.
        """
        if account.balance is None:
            logger.warning(
                f"Ledger account '{account.id}' is missing a balance entry. Assuming a starting balance of 0.",
                extra={"hints": ["Refresh balances in the ledger before re-running the import."]},
            )
            amount = 0
        else:
            net_change = sum((tx.amount for tx in transactions if tx.booked), Decimal("0"))
            amount = to_minor_units(account.balance.amount - net_change)

        oldest = min(transactions, key=lambda tx: tx.value_date)
        return DestinationTransaction(
            date=oldest.value_date,
            amount=amount,
            imported_id=f"{account.id}-start",
            imported_payee=STARTING_BALANCE_LABEL,
            cleared=True,
            notes=STARTING_BALANCE_LABEL,
        )

    def reconcile(
        self,
        source_account: SourceAccount,
        destination_account: DestinationAccount,
        source_transactions: Iterable[SourceTransaction],
        existing_transactions: Sequence[DestinationTransaction],
    ) -> Reconciliation:
        """
        Compute the write-set for one account pair.

        Args:
            source_account: Ledger account (for the starting balance)
            destination_account: Budget account receiving the transactions
            source_transactions: Ledger transactions of the account in the window
            existing_transactions: Budget transactions of the account in the window

        Returns:
            Reconciliation whose candidates are the records to write
        """
        result = Reconciliation(source_account, destination_account)

        transactions = self.filter_transactions(sort_transactions(source_transactions))
        candidates = [self.convert(tx) for tx in transactions]

        if not existing_transactions:
            if not transactions:
                logger.warning(
                    f"Skipping starting balance for budget account '{destination_account.name}' because no "
                    f"ledger transactions were found for account {source_account.id} in this import window.",
                    extra={"hints": ["Extend the date range or review ignore patterns if a starting balance is expected."]},
                )
                result.skipped_reason = "no ledger history"
                return result

            start = self.starting_balance(source_account, transactions)
            logger.debug(
                f"No existing transactions found for budget account '{destination_account.name}'. "
                f"Adding start transaction with amount {start.amount}..."
            )
            candidates.append(start)

        known_ids = {tx.imported_id for tx in existing_transactions if tx.imported_id}
        for candidate in candidates:
            if candidate.imported_id in known_ids:
                continue
            known_ids.add(candidate.imported_id)
            result.candidates.append(candidate)

        if result.is_empty:
            logger.debug(f"No new transactions found for budget account '{destination_account.name}'. Skipping...")
            result.skipped_reason = "no new transactions"

        return result


def sort_transactions(transactions: Iterable[SourceTransaction]) -> List[SourceTransaction]:
    """Order by value date, then id; undated transactions go last."""
    return sorted(
        transactions,
        key=lambda tx: (tx.value_date is None, tx.value_date or date.max, str(tx.id or "")),
    )
