import logging
from datetime import date
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .config import AppConfig, ServerConfig, get_settings
from .errors import LedgerLockedError
from .services.account_map import AccountMap
from .services.budget_session import BudgetSessionClient
from .services.importer import Importer, ImportSummary
from .services.payee_transformer import PayeeTransformer
from .services.protocols import BudgetSdk, LedgerClient, PayeeNormalizer

logger = logging.getLogger(__name__)


async def run_import(
    config: AppConfig,
    ledger: LedgerClient,
    sdk_factory: Callable[[ServerConfig], BudgetSdk],
    account_refs: Optional[Sequence[str]] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    dry_run: bool = False,
    data_dir: Optional[Path] = None,
    payee_transformer: Optional[PayeeNormalizer] = None,
) -> List[ImportSummary]:
    """
    Import ledger transactions into every configured budget.

    Each server gets its own SDK instance and session; the session is shut
    down after its budgets are processed, also when an import fails.

    Returns:
        One ImportSummary per budget, in configuration order
    """
    if await ledger.is_locked():
        raise LedgerLockedError(
            "The ledger database is locked.",
            hints=["Unlock the ledger application and run the import again."],
        )

    data_dir = Path(data_dir or get_settings().data_dir).expanduser()
    if payee_transformer is None and config.payee_transformation.enabled:
        payee_transformer = PayeeTransformer(config.payee_transformation)

    summaries = []
    for server in config.actual_servers:
        session = BudgetSessionClient(server, sdk_factory(server), data_dir)
        try:
            await session.init()
            for budget in server.budgets:
                logger.info(f"Importing transactions into budget '{budget.sync_id}' on {server.server_url}")
                await session.load_budget(budget.sync_id)

                account_map = AccountMap(budget, ledger, session)
                await account_map.load_from_config(account_refs=account_refs)

                importer = Importer(config, budget, session, ledger, account_map, payee_transformer)
                summaries.append(
                    await importer.import_transactions(
                        account_refs=account_refs,
                        from_date=from_date,
                        to_date=to_date,
                        dry_run=dry_run,
                    )
                )
        finally:
            await session.shutdown()

    return summaries
