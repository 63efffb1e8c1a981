"""
Signal admission: the single entry point the ingestion side calls.

    register (idempotency) -> risk gate -> bracket orchestration

Every path ends with the stored signal in a terminal status (rejected,
failed or executed) carrying its reason.
"""
import time
from typing import Optional

from copytrade.constants import REASON_ALREADY_EXECUTED
from copytrade.domain.models import AdmissionResult, Signal, SignalStatus
from copytrade.domain.protocols import EventRecorder, ExchangeAdapter
from copytrade.domain.settings import EffectiveSettings, UserSettings, resolve
from copytrade.exceptions import DataError, OperationalError
from copytrade.execution.bracket_orchestrator import BracketOrderOrchestrator
from copytrade.monitoring.logger import get_logger
from copytrade.risk.risk_gate import RiskGate
from copytrade.storage.repository import (
    count_open_positions,
    get_today_realized_pnl,
    load_admin_settings,
    load_user_settings,
    mark_signal,
    record_event,
    register_signal,
)

logger = get_logger(__name__)


def settings_for(user_id: str) -> EffectiveSettings:
    """Resolve a user's stored settings against the admin record."""
    user = load_user_settings(user_id) or UserSettings(user_id=user_id)
    return resolve(user, load_admin_settings())


async def admit_and_execute(
    signal: Signal,
    settings: EffectiveSettings,
    *,
    adapter: ExchangeAdapter,
    event_recorder: EventRecorder = record_event,
) -> AdmissionResult:
    """
    Admit a signal and, if it passes, open the bracketed position.

    A re-delivered alert (same user, symbol, side and timestamp) is answered
    with "already executed" without touching the exchange. With
    duplicate_alert_handling off, a re-delivery of a signal that previously
    failed is attempted again on the same stored row.

    Args:
        signal: Incoming signal
        settings: Effective settings for signal.user_id
        adapter: Exchange adapter for the user's account
        event_recorder: Audit sink for rejections and failures

    Returns:
        AdmissionResult(accepted, position_id, rejection_reason)
    """
    started_at = time.monotonic()

    signal_id, status, created = register_signal(signal)
    if not created:
        retry = not settings.duplicate_alert_handling and status == SignalStatus.FAILED
        if not retry:
            logger.info(
                "SIGNAL_DUPLICATE",
                signal_id=signal_id,
                user_id=signal.user_id,
                symbol=signal.symbol,
                stored_status=status.value,
            )
            return AdmissionResult(accepted=False, rejection_reason=REASON_ALREADY_EXECUTED)
        logger.info("SIGNAL_RETRY", signal_id=signal_id, user_id=signal.user_id, symbol=signal.symbol)

    gate = RiskGate(event_recorder=event_recorder)
    try:
        decision = await gate.evaluate(
            signal,
            settings,
            open_positions=count_open_positions(signal.user_id),
            today_pnl=get_today_realized_pnl(signal.user_id),
            adapter=adapter,
        )
    except (OperationalError, DataError) as e:
        logger.error(
            "RISK_GATE_FAILED",
            signal_id=signal_id,
            user_id=signal.user_id,
            error=str(e),
            error_type=type(e).__name__,
        )
        mark_signal(signal_id, SignalStatus.FAILED, error_message=str(e))
        return AdmissionResult(accepted=False, rejection_reason=str(e))

    if not decision.approved:
        mark_signal(signal_id, SignalStatus.REJECTED, error_message=decision.rejection_reason)
        return AdmissionResult(accepted=False, rejection_reason=decision.rejection_reason)

    orchestrator = BracketOrderOrchestrator(adapter, event_recorder=event_recorder)
    outcome = await orchestrator.execute(
        signal,
        settings,
        signal_id=signal_id,
        equity=decision.equity,
        started_at=started_at,
    )
    if not outcome.succeeded:
        return AdmissionResult(accepted=False, rejection_reason=outcome.error)
    return AdmissionResult(accepted=True, position_id=outcome.position.id)


async def admit_for_user(
    signal: Signal,
    *,
    adapter: ExchangeAdapter,
    event_recorder: Optional[EventRecorder] = None,
) -> AdmissionResult:
    """admit_and_execute with the signal owner's stored settings."""
    return await admit_and_execute(
        signal,
        settings_for(signal.user_id),
        adapter=adapter,
        event_recorder=event_recorder or record_event,
    )
