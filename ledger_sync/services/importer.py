import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence

from dateutil.relativedelta import relativedelta

from ..config import AppConfig, BudgetConfig
from ..schemas.budget import DestinationTransaction
from ..schemas.ledger import SourceTransaction
from .account_map import AccountMap
from .budget_session import BudgetSessionClient
from .masking import mask_payee
from .protocols import LedgerClient, PayeeNormalizer
from .reconciler import Reconciliation, TransactionReconciler

logger = logging.getLogger(__name__)


@dataclass
class PairOutcome:
    """What happened to one ledger account -> budget account pair."""
    source_account_id: str
    destination_account_id: str
    candidates: int = 0
    added: int = 0
    updated: int = 0
    errors: List[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None


@dataclass
class ImportSummary:
    sync_id: str
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    dry_run: bool = False
    pairs: List[PairOutcome] = field(default_factory=list)

    @property
    def added(self) -> int:
        return sum(p.added for p in self.pairs)

    @property
    def updated(self) -> int:
        return sum(p.updated for p in self.pairs)

    @property
    def has_new_transactions(self) -> bool:
        return any(p.candidates for p in self.pairs)


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


class Importer:
    """Imports ledger transactions into the mapped accounts of one budget."""

    def __init__(
        self,
        config: AppConfig,
        budget_config: BudgetConfig,
        session: BudgetSessionClient,
        ledger: LedgerClient,
        account_map: AccountMap,
        payee_transformer: Optional[PayeeNormalizer] = None,
    ):
        self.config = config
        self.budget_config = budget_config
        self.session = session
        self.ledger = ledger
        self.account_map = account_map
        self.payee_transformer = payee_transformer
        self.reconciler = TransactionReconciler(config.import_, budget_config)

    async def import_transactions(
        self,
        account_refs: Optional[Sequence[str]] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        dry_run: bool = False,
    ) -> ImportSummary:
        """
        Import new ledger transactions for every mapped account pair.

        Args:
            account_refs: Optional ledger account refs limiting the import
            from_date: Start of the window (default: one month ago)
            to_date: End of the window (default: today)
            dry_run: Compute everything but write nothing

        Returns:
            ImportSummary with one PairOutcome per processed pair
        """
        started = time.monotonic()
        import_date = self.reconciler.effective_from_date(from_date or date.today() - relativedelta(months=1))
        summary = ImportSummary(self.budget_config.sync_id, import_date, to_date, dry_run)

        account_mapping = self.account_map.get_map(account_refs)
        if not account_mapping:
            if account_refs:
                logger.warning(
                    "No mapped accounts matched the requested account filter. Nothing to import.",
                    extra={"hints": [f"Account refs: {', '.join(account_refs)}"]},
                )
            return summary

        logger.debug(
            f"Cleared status synchronization is "
            f"{'enabled' if self.config.import_.synchronize_cleared_status else 'disabled'}"
        )

        fetch_started = time.monotonic()
        source_transactions = await self.ledger.get_transactions(from_date=import_date, to_date=to_date)
        logger.debug(f"Ledger transaction fetch completed in {(time.monotonic() - fetch_started) * 1000:.0f}ms")
        logger.debug(f"Found {len(source_transactions)} transactions in the ledger since {import_date.isoformat()}")

        by_account: Dict[str, List[SourceTransaction]] = defaultdict(list)
        for tx in source_transactions:
            by_account[tx.account_id].append(tx)

        for source_account, destination_account in account_mapping:
            pair_started = time.monotonic()

            existing = await self.session.get_transactions(destination_account.id, import_date, to_date)
            logger.debug(
                f"Found {len(existing)} existing transactions for budget account '{destination_account.name}'"
            )

            reconciliation = self.reconciler.reconcile(
                source_account,
                destination_account,
                by_account.get(source_account.id, []),
                existing,
            )
            outcome = PairOutcome(
                source_account.id,
                destination_account.id,
                candidates=len(reconciliation.candidates),
                skipped_reason=reconciliation.skipped_reason,
            )
            summary.pairs.append(outcome)

            if not reconciliation.is_empty:
                await self._write(reconciliation, outcome, dry_run)

            logger.debug(
                f"Account '{destination_account.name}' processing completed in "
                f"{(time.monotonic() - pair_started) * 1000:.0f}ms"
            )

        logger.debug(f"Total import process completed in {(time.monotonic() - started) * 1000:.0f}ms")
        if not summary.has_new_transactions:
            logger.info("No new transactions to import.")

        return summary

    async def _write(self, reconciliation: Reconciliation, outcome: PairOutcome, dry_run: bool) -> None:
        destination_account = reconciliation.destination_account
        transactions = reconciliation.candidates
        logger.debug(f"Considering {len(transactions)} transactions for budget account '{destination_account.name}'...")

        await self._finalize_payees(transactions, dry_run)
        self._log_payees(transactions)

        if dry_run:
            logger.info(
                f"DRY RUN - Would import to account '{destination_account.name}'",
                extra={"hints": [f"Would add {_plural(len(transactions), 'new transaction')}.", "No changes made."]},
            )
            return

        result = await self.session.import_transactions(destination_account.id, transactions)

        if result.errors:
            logger.error("Some errors occurred during import:")
            for index, error in enumerate(result.errors, start=1):
                logger.error(f"Error {index}: {error.message}")
                outcome.errors.append(error.message)

        outcome.added = len(result.added)
        outcome.updated = len(result.updated)
        logger.info(
            f"Transaction import to account '{destination_account.name}' successful",
            extra={"hints": [
                f"Added {_plural(outcome.added, 'new transaction')}.",
                f"Updated {_plural(outcome.updated, 'existing transaction')}.",
            ]},
        )

    async def _finalize_payees(self, transactions: List[DestinationTransaction], dry_run: bool) -> None:
        """Set payee_name on every transaction, normalised when enabled."""
        if self.payee_transformer is None or dry_run:
            if dry_run:
                logger.debug("Skipping payee transformation in dry run mode, using default payee names...")
            else:
                logger.debug("Payee transformation is disabled. Using default payee names...")
            for tx in transactions:
                tx.payee_name = tx.imported_payee
            return

        payees = list(dict.fromkeys(tx.imported_payee or "" for tx in transactions))
        logger.debug(f"Cleaning up payee names for {_plural(len(payees), 'payee')}...")

        started = time.monotonic()
        transformed = await self.payee_transformer.transform_payees(payees)
        logger.debug(f"Payee transformation completed in {(time.monotonic() - started) * 1000:.0f}ms")

        if transformed is None:
            logger.warning("Payee transformation failed. Using default payee names...")
            transformed = {}

        for tx in transactions:
            new_payee = transformed.get(tx.imported_payee or "")
            # "Unknown" means the model gave up on this payee
            if new_payee and new_payee.strip().lower() != "unknown":
                tx.payee_name = new_payee
            else:
                tx.payee_name = tx.imported_payee

    def _log_payees(self, transactions: List[DestinationTransaction]) -> None:
        masked = self.config.import_.mask_payee_names_in_logs
        names = []
        for tx in transactions:
            payee = tx.payee_name or ""
            names.append(f'"{mask_payee(payee) if masked else payee}"')

        logger.debug(
            "Final payee names for import (masked):" if masked else "Final payee names for import:",
            extra={"hints": names},
        )
