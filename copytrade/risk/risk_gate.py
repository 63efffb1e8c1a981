"""
Admission control for incoming signals.

Checks run in order and stop at the first failure:

    bot inactive -> tier filter -> strength threshold
    -> open-position count -> daily loss limit

A rejection is terminal for the signal; nothing is retried. The exchange is
only asked for equity when a percent-based limit or percent sizing needs it,
and the figure is handed back so sizing does not fetch it twice.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from copytrade.constants import (
    REASON_BOT_INACTIVE,
    REASON_DAILY_LOSS,
    REASON_MAX_OPEN,
    REASON_STRENGTH,
)
from copytrade.domain.models import Signal
from copytrade.domain.protocols import EventRecorder, ExchangeAdapter, _noop_event_recorder
from copytrade.domain.settings import EffectiveSettings
from copytrade.exceptions import ValidationError
from copytrade.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class GateDecision:
    """Outcome of RiskGate.evaluate()."""
    approved: bool
    rejection_reason: Optional[str] = None
    equity: Optional[Decimal] = None  # Fetched account equity, reused for sizing


class RiskGate:
    """
    Admission control: open-position limit, daily loss limit and signal filters.
    """

    def __init__(self, *, event_recorder: EventRecorder = _noop_event_recorder):
        """
        Args:
            event_recorder: Callable for recording rejections (injected; defaults to no-op)
        """
        self._record_event = event_recorder

    async def evaluate(
        self,
        signal: Signal,
        settings: EffectiveSettings,
        open_positions: int,
        today_pnl: Decimal,
        adapter: Optional[ExchangeAdapter] = None,
    ) -> GateDecision:
        """
        Decide whether a signal may open a position.

        Args:
            signal: Candidate signal
            settings: Effective settings for the signal's user
            open_positions: Current count of open positions for the user
            today_pnl: Realized P&L of positions closed today (UTC)
            adapter: Exchange adapter, used only when equity is required

        Returns:
            GateDecision; equity is set whenever it had to be fetched
        """
        reason = self._filter_reason(signal, settings)
        if reason is None and open_positions >= settings.max_open_positions:
            reason = REASON_MAX_OPEN
        if reason is not None:
            return self._reject(signal, reason, open_positions=open_positions, today_pnl=today_pnl)

        equity: Optional[Decimal] = None
        needs_equity = (
            settings.loss_limit_type == "percent_drawdown"
            or settings.position_sizing_type == "percent_balance"
        )
        if needs_equity:
            if adapter is None:
                raise ValidationError("An exchange adapter is required for percent-based limits or sizing")
            equity = await adapter.get_account()

        limit = self.daily_loss_limit(settings, equity)
        if limit > 0 and today_pnl < 0 and abs(today_pnl) >= limit:
            return self._reject(
                signal,
                REASON_DAILY_LOSS,
                open_positions=open_positions,
                today_pnl=today_pnl,
                limit=limit,
                equity=equity,
            )

        logger.debug(
            "SIGNAL_ADMITTED",
            symbol=signal.symbol,
            user_id=signal.user_id,
            open_positions=open_positions,
            today_pnl=str(today_pnl),
        )
        return GateDecision(approved=True, equity=equity)

    @staticmethod
    def daily_loss_limit(settings: EffectiveSettings, equity: Optional[Decimal]) -> Decimal:
        """Loss amount that halts new entries for the day; 0 disables the check."""
        if settings.loss_limit_type == "percent_drawdown":
            if equity is None:
                raise ValidationError("percent_drawdown loss limit requires account equity")
            return equity * settings.daily_loss_percent / Decimal("100")
        return settings.daily_loss_limit

    @staticmethod
    def _filter_reason(signal: Signal, settings: EffectiveSettings) -> Optional[str]:
        if not settings.bot_active:
            return REASON_BOT_INACTIVE
        if settings.filter_by_tier and signal.tier:
            if signal.tier in settings.excluded_tiers:
                return f"tier {signal.tier} excluded"
            if settings.allowed_tiers and signal.tier not in settings.allowed_tiers:
                return f"tier {signal.tier} not allowed"
        if signal.strength < settings.alert_strength_threshold:
            return REASON_STRENGTH
        return None

    def _reject(self, signal: Signal, reason: str, **context) -> GateDecision:
        details = {k: str(v) if isinstance(v, Decimal) else v for k, v in context.items()}
        logger.info("SIGNAL_REJECTED", symbol=signal.symbol, user_id=signal.user_id, reason=reason, **details)
        self._record_event(
            "SIGNAL_REJECTED",
            signal.symbol,
            {"reason": reason, "signal_id": signal.id, **details},
            user_id=signal.user_id,
        )
        return GateDecision(approved=False, rejection_reason=reason)
