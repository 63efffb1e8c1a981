"""
Operator-triggered jobs. Each returns a JobSummary of
{checked, updated, created, deleted, skipped}.

Every user trades on their own exchange account. Jobs that touch the
exchange build one adapter per user from ``config.accounts``; a single-user
run falls back to the ``exchange`` section. A run over all users needs
per-user accounts (or an adapter_factory) and refuses to start otherwise,
because reconciling one user against another user's history deletes and
imports the wrong rows.
"""
from contextlib import AsyncExitStack
from typing import Callable, Optional

from copytrade.config.config import Config
from copytrade.domain.models import JobSummary
from copytrade.domain.protocols import ExchangeAdapter
from copytrade.exceptions import ValidationError
from copytrade.exchange.ccxt_adapter import create_adapter
from copytrade.monitoring.logger import get_logger
from copytrade.reconciliation.alert_linker import AlertLinker
from copytrade.reconciliation.reconciler import ReconciliationEngine
from copytrade.reconciliation.repairs import PositionRepairer
from copytrade.storage.repository import list_user_ids, record_event

logger = get_logger(__name__)

AdapterFactory = Callable[[str], Optional[ExchangeAdapter]]


def _config_adapters(config: Config, stack: AsyncExitStack, *, single_user: bool) -> AdapterFactory:
    """user_id -> adapter built from that user's account; closed when the stack unwinds."""

    def build(user_id: str) -> Optional[ExchangeAdapter]:
        account = config.exchange_for(user_id) if single_user else config.accounts.get(user_id)
        if account is None:
            logger.warning("EXCHANGE_ACCOUNT_MISSING", user_id=user_id)
            return None
        adapter = create_adapter(account, page_limit=config.reconciliation.page_limit)
        stack.push_async_callback(adapter.close)
        return adapter

    return build


def _plan(
    user_id: Optional[str],
    config: Config,
    adapter: Optional[ExchangeAdapter],
    adapter_factory: Optional[AdapterFactory],
    stack: AsyncExitStack,
) -> tuple[list[str], AdapterFactory]:
    """Users to run and where each one's adapter comes from."""
    if adapter is not None:
        if not user_id:
            raise ValidationError("an explicit adapter holds one account; pass the user id it belongs to")
        return [user_id], lambda _uid: adapter
    if adapter_factory is not None:
        return ([user_id] if user_id else list_user_ids()), adapter_factory
    if user_id:
        return [user_id], _config_adapters(config, stack, single_user=True)
    if not config.accounts:
        raise ValidationError(
            "no per-user exchange accounts configured; pass a user id to run against the single account"
        )
    return list_user_ids(), _config_adapters(config, stack, single_user=False)


async def reconcile(
    user_id: Optional[str] = None,
    *,
    config: Optional[Config] = None,
    adapter: Optional[ExchangeAdapter] = None,
    adapter_factory: Optional[AdapterFactory] = None,
) -> JobSummary:
    """
    Reconcile one user, or every known user sequentially when user_id is None.

    Args:
        user_id: Limit the run to this user
        config: Loaded configuration (defaults apply when None)
        adapter: This user's adapter; requires user_id and is not closed here
        adapter_factory: user_id -> adapter for all-user runs; users it returns None for are skipped
    """
    config = config or Config()
    total = JobSummary()
    async with AsyncExitStack() as stack:
        users, adapters = _plan(user_id, config, adapter, adapter_factory, stack)
        for uid in users:
            exchange = adapters(uid)
            if exchange is None:
                continue
            engine = ReconciliationEngine(exchange, config.reconciliation, event_recorder=record_event)
            total = total.merge(await engine.reconcile(uid))
    if len(users) > 1:
        logger.info("RECONCILE_ALL_SUMMARY", users=len(users), **total.as_dict())
    return total


async def repair_quantity_and_leverage(
    user_id: Optional[str] = None,
    *,
    config: Optional[Config] = None,
    adapter: Optional[ExchangeAdapter] = None,
    adapter_factory: Optional[AdapterFactory] = None,
    use_exchange: bool = True,
) -> JobSummary:
    """
    Re-derive quantities from P&L and prices; fetch leverage for positions
    left at the legacy default from each owner's history when use_exchange is set.
    """
    config = config or Config()
    if not use_exchange:
        repairer = PositionRepairer(config.repair, config.reconciliation)
        return await repairer.repair_quantity_and_leverage(user_id)
    async with AsyncExitStack() as stack:
        _users, adapters = _plan(user_id, config, adapter, adapter_factory, stack)
        repairer = PositionRepairer(config.repair, config.reconciliation, adapter_factory=adapters)
        return await repairer.repair_quantity_and_leverage(user_id)


def repair_close_reasons(user_id: Optional[str] = None, *, config: Optional[Config] = None) -> JobSummary:
    """Fill in unknown close reasons and missing P&L."""
    config = config or Config()
    return PositionRepairer(config.repair, config.reconciliation).repair_close_reasons(user_id)


def link_orphans(user_id: Optional[str] = None, *, config: Optional[Config] = None) -> JobSummary:
    """Link closed positions lacking a signal reference to their alerts."""
    config = config or Config()
    return AlertLinker(config.linking, event_recorder=record_event).link_orphans(user_id)
