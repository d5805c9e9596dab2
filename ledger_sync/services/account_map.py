import asyncio
import logging
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from ..config import BudgetConfig
from ..errors import AccountMapNotLoadedError, AccountMappingError, ConfigError
from ..schemas.budget import DestinationAccount
from ..schemas.ledger import SourceAccount
from .budget_session import BudgetSessionClient
from .protocols import LedgerClient

logger = logging.getLogger(__name__)


def _first_match(matches: list, kind: str, ref: str):
    if not matches:
        return None
    if len(matches) > 1:
        logger.warning(f"Found multiple {kind} accounts matching the reference '{ref}'. Using the first one.")
    return matches[0]


def resolve_source_account(accounts: Sequence[SourceAccount], ref: str) -> Optional[SourceAccount]:
    """
    Find the ledger account a configured reference points to.

    Precedence is exact id, then exact account number, then trimmed
    display name. Returns None when nothing matches.
    """
    ref = str(ref)

    for field in ("id", "account_number"):
        matches = [acc for acc in accounts if getattr(acc, field) == ref]
        if matches:
            return _first_match(matches, "ledger", ref)

    name = ref.strip()
    matches = [acc for acc in accounts if (acc.name or "").strip() == name]
    return _first_match(matches, "ledger", name)


def resolve_destination_account(accounts: Sequence[DestinationAccount], ref: str) -> Optional[DestinationAccount]:
    """Like resolve_source_account, for budget accounts (no account number)."""
    ref = str(ref)

    matches = [acc for acc in accounts if acc.id == ref]
    if matches:
        return _first_match(matches, "budget", ref)

    name = ref.strip()
    matches = [acc for acc in accounts if (acc.name or "").strip() == name]
    return _first_match(matches, "budget", name)


class ResolvedAccountMap:
    """
    Ordered ledger account id -> budget account id mapping.

    The account objects live in side tables keyed by id; iterating yields
    (SourceAccount, DestinationAccount) pairs in insertion order.
    """

    def __init__(self):
        self.pairs: Dict[str, str] = {}
        self.source_accounts: Dict[str, SourceAccount] = {}
        self.destination_accounts: Dict[str, DestinationAccount] = {}

    def add(self, source: SourceAccount, destination: DestinationAccount) -> None:
        self.pairs[source.id] = destination.id
        self.source_accounts[source.id] = source
        self.destination_accounts[destination.id] = destination

    def get(self, source_id: str) -> Optional[DestinationAccount]:
        destination_id = self.pairs.get(source_id)
        if destination_id is None:
            return None
        return self.destination_accounts[destination_id]

    def __iter__(self) -> Iterator[Tuple[SourceAccount, DestinationAccount]]:
        for source_id, destination_id in self.pairs.items():
            yield self.source_accounts[source_id], self.destination_accounts[destination_id]

    def __len__(self) -> int:
        return len(self.pairs)

    def __contains__(self, source_id: object) -> bool:
        return source_id in self.pairs


class AccountMap:
    """Resolves the configured account mapping of one budget."""

    def __init__(self, budget_config: BudgetConfig, ledger: LedgerClient, session: BudgetSessionClient):
        self.budget_config = budget_config
        self.ledger = ledger
        self.session = session

        self.source_accounts: List[SourceAccount] = []
        self.destination_accounts: List[DestinationAccount] = []
        self._mapping: Optional[ResolvedAccountMap] = None
        self._is_loading = False

    @property
    def is_loaded(self) -> bool:
        return self._mapping is not None

    async def load_from_config(self, account_refs: Optional[Sequence[str]] = None) -> None:
        """
        Fetch both account lists and resolve every configured mapping entry.

        Args:
            account_refs: Optional ledger account references limiting which
                entries must resolve. Entries outside the filter that fail to
                resolve are dropped instead of failing the whole load.

        Raises:
            AccountMappingError: If any in-scope reference does not resolve
        """
        if self._mapping is not None:
            return
        if self._is_loading:
            logger.debug("Account mapping is already being loaded, skipping concurrent request.")
            return
        self._is_loading = True

        try:
            account_mapping = self.budget_config.account_mapping
            if not isinstance(account_mapping, dict):
                raise ConfigError(
                    "Invalid budget configuration: accountMapping must be a table like { ledgerRef = budgetRef }.",
                    hints=[f"Budget sync ID: {self.budget_config.sync_id}"],
                )

            refs_filter = set(account_refs) if account_refs else None

            self.source_accounts, self.destination_accounts = await asyncio.gather(
                self.ledger.get_accounts(),
                self.session.get_accounts(),
            )
            logger.debug(f"Found {len(self.source_accounts)} accounts in the ledger.")
            logger.debug(f"Found {len(self.destination_accounts)} accounts in the budget.")
            logger.debug(f"Account mapping contains {len(account_mapping)} entries.")

            mapping = ResolvedAccountMap()
            unresolved: List[str] = []

            for source_ref, destination_ref in account_mapping.items():
                source = resolve_source_account(self.source_accounts, source_ref)
                destination = resolve_destination_account(self.destination_accounts, destination_ref)
                in_scope = refs_filter is None or source_ref in refs_filter

                if source is None:
                    message = f"Ledger account reference '{source_ref}' did not match any ledger accounts."
                    if in_scope:
                        logger.error(message)
                        unresolved.append(message)
                    else:
                        logger.debug(
                            f"Skipping mapping for ledger reference '{source_ref}' because it is not part of the import filter."
                        )

                if destination is None:
                    message = f"Budget account reference '{destination_ref}' did not match any budget accounts."
                    if in_scope:
                        logger.error(message)
                        unresolved.append(message)
                    else:
                        logger.debug(
                            f"Skipping mapping for budget reference '{destination_ref}' because it is not part of the import filter."
                        )

                if source is None or destination is None:
                    continue

                logger.debug(f"Ledger account '{source.name}' will import to budget account '{destination.name}'.")
                mapping.add(source, destination)

            if unresolved:
                raise AccountMappingError(self.budget_config.sync_id, unresolved)

            logger.info(
                "Parsed account mapping",
                extra={"hints": ["[Ledger Account] → [Budget Account]"] + [
                    f"{source.name} ({source.id}) → {destination.name} ({destination.id})"
                    for source, destination in mapping
                ]},
            )
            self._mapping = mapping
        finally:
            self._is_loading = False

    def get_map(self, account_refs: Optional[Sequence[str]] = None) -> ResolvedAccountMap:
        """
        Return the resolved mapping, optionally narrowed to some ledger refs.

        Raises:
            AccountMapNotLoadedError: If load_from_config() has not completed
        """
        if self._mapping is None:
            raise AccountMapNotLoadedError(
                "Account mapping has not been loaded. Call load_from_config() before accessing the map."
            )

        if not account_refs:
            return self._mapping

        filtered = ResolvedAccountMap()
        for ref in account_refs:
            source = resolve_source_account(self.source_accounts, ref)
            if source is None:
                logger.error(f"Specified account ref '{ref}' did not resolve to any ledger accounts.")
                continue

            destination = self._mapping.get(source.id)
            if destination is None:
                logger.error(f"Could not find a budget account for specified ledger account with ref '{ref}'.")
                continue

            filtered.add(source, destination)

        return filtered
