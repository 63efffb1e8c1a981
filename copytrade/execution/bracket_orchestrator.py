"""
Bracket order orchestration.

One signal, one attempt:

    received -> sized -> entry_placed -> brackets_placed -> recorded -> done
        |         |          |                 |               |
        +---------+----------+-----------------+---------------+--> failed

The market entry is the only leg whose failure aborts the attempt. Stop and
take-profit legs are placed independently after it; a failed leg leaves a
null order id on the position and its error under metadata["leg_errors"].
The exchange offers no atomic bracket primitive, so a partially bracketed
position is a valid, recorded state for the operator to finish.
"""
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Optional

from copytrade.constants import REASON_ALREADY_OPEN
from copytrade.data.symbol_utils import normalize_symbol, same_symbol
from copytrade.domain.models import (
    BracketKind,
    LegResult,
    OrderLeg,
    Position,
    PositionStatus,
    Signal,
    SignalStatus,
    TradeAction,
    utc_now,
)
from copytrade.domain.protocols import EventRecorder, ExchangeAdapter, _noop_event_recorder
from copytrade.domain.settings import EffectiveSettings
from copytrade.exceptions import DataError, DuplicatePositionError, OperationalError
from copytrade.execution.sltp_calculator import breakeven_price, calculate_levels, close_quantities, position_size
from copytrade.execution.symbol_rules import QUANTITY_STEP, resolve_leverage
from copytrade.monitoring.logger import get_logger
from copytrade.storage.repository import get_open_positions, insert_position, mark_signal

logger = get_logger(__name__)


class ExecutionState(str, Enum):
    RECEIVED = "received"
    SIZED = "sized"
    ENTRY_PLACED = "entry_placed"
    BRACKETS_PLACED = "brackets_placed"
    RECORDED = "recorded"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ExecutionOutcome:
    """Where one attempt ended, with every leg that was tried."""
    state: ExecutionState
    position: Optional[Position] = None
    legs: dict[OrderLeg, LegResult] = field(default_factory=dict)
    error: Optional[str] = None
    already_open: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state == ExecutionState.DONE

    @property
    def missing_legs(self) -> list[OrderLeg]:
        return [leg for leg, result in self.legs.items() if not result.ok]


class BracketOrderOrchestrator:
    """
    Places entry + stop + take-profit legs for an admitted signal and
    records the resulting position.
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        *,
        event_recorder: EventRecorder = _noop_event_recorder,
    ):
        """
        Args:
            adapter: Exchange adapter for the signal's user
            event_recorder: Callable for recording failures (injected; defaults to no-op)
        """
        self.adapter = adapter
        self._record_event = event_recorder

    async def execute(
        self,
        signal: Signal,
        settings: EffectiveSettings,
        *,
        signal_id: Optional[str] = None,
        equity: Optional[Decimal] = None,
        started_at: Optional[float] = None,
    ) -> ExecutionOutcome:
        """
        Run the state machine for one admitted signal.

        Args:
            signal: Admitted signal
            settings: Effective settings for the signal's user
            signal_id: Id of the stored signal row (defaults to signal.id)
            equity: Equity already fetched by the risk gate
            started_at: time.monotonic() at ingestion, for latency

        Returns:
            ExecutionOutcome in state DONE or FAILED
        """
        signal_id = signal_id or signal.id
        started_at = started_at if started_at is not None else time.monotonic()
        state = ExecutionState.RECEIVED

        if self._has_open_position(signal):
            return self._already_open(signal, signal_id, state)

        # received -> sized
        try:
            leverage, leverage_source = resolve_leverage(signal.symbol, settings, signal.leverage)
            size = position_size(signal, settings, equity)
            levels = calculate_levels(signal, settings, size.quantity, leverage)
        except DataError as e:
            return self._fail(signal, signal_id, state, f"sizing failed: {e}")
        quantity = size.quantity
        state = ExecutionState.SIZED

        # sized -> entry_placed
        entry = LegResult(leg=OrderLeg.ENTRY, price=signal.price, quantity=quantity)
        try:
            entry.order_id = await self.adapter.place_order(
                signal.symbol, TradeAction.open_for(signal.side), quantity
            )
        except (OperationalError, DataError) as e:
            logger.error(
                "ENTRY_ORDER_FAILED",
                symbol=signal.symbol,
                user_id=signal.user_id,
                signal_id=signal_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return self._fail(signal, signal_id, state, str(e))
        legs = {OrderLeg.ENTRY: entry}
        state = ExecutionState.ENTRY_PLACED

        # entry_placed -> brackets_placed
        close_action = TradeAction.close_for(signal.side)
        legs[OrderLeg.STOP] = await self._place_leg(
            signal, OrderLeg.STOP, close_action, levels.stop_loss, quantity, BracketKind.STOP
        )
        tp_sizes = close_quantities(quantity, settings)
        for leg, price in levels.take_profits():
            tp_quantity = tp_sizes[leg].quantize(QUANTITY_STEP, rounding=ROUND_DOWN)
            if tp_quantity <= 0:
                continue
            legs[leg] = await self._place_leg(
                signal, leg, close_action, price, tp_quantity, BracketKind.PROFIT
            )
        state = ExecutionState.BRACKETS_PLACED

        # brackets_placed -> recorded
        position = self._build_position(signal, signal_id, settings, legs, leverage, leverage_source)
        try:
            insert_position(position)
        except DuplicatePositionError:
            # Lost the race to a concurrent signal; its position stands
            return self._already_open(signal, signal_id, state, entry_order_id=entry.order_id)
        state = ExecutionState.RECORDED

        latency_ms = int((time.monotonic() - started_at) * 1000)
        mark_signal(signal_id, SignalStatus.EXECUTED, position_id=position.id, latency_ms=latency_ms)

        outcome = ExecutionOutcome(state=ExecutionState.DONE, position=position, legs=legs)
        logger.info(
            "POSITION_OPENED",
            position_id=position.id,
            symbol=signal.symbol,
            side=signal.side.value,
            user_id=signal.user_id,
            quantity=str(quantity),
            leverage=leverage,
            leverage_source=leverage_source,
            missing_legs=[leg.value for leg in outcome.missing_legs],
            latency_ms=latency_ms,
        )
        return outcome

    async def _place_leg(
        self,
        signal: Signal,
        leg: OrderLeg,
        action: TradeAction,
        trigger_price: Decimal,
        quantity: Decimal,
        kind: BracketKind,
    ) -> LegResult:
        result = LegResult(leg=leg, price=trigger_price, quantity=quantity)
        try:
            result.order_id = await self.adapter.place_bracket_order(
                signal.symbol, action, trigger_price, quantity, kind
            )
        except (OperationalError, DataError) as e:
            result.error = str(e)
            logger.warning(
                "BRACKET_LEG_FAILED",
                leg=leg.value,
                symbol=signal.symbol,
                user_id=signal.user_id,
                trigger_price=str(trigger_price),
                error=str(e),
                error_type=type(e).__name__,
            )
        return result

    @staticmethod
    def _build_position(
        signal: Signal,
        signal_id: str,
        settings: EffectiveSettings,
        legs: dict[OrderLeg, LegResult],
        leverage: int,
        leverage_source: str,
    ) -> Position:
        entry = legs[OrderLeg.ENTRY]
        position = Position(
            user_id=signal.user_id,
            symbol=normalize_symbol(signal.symbol),
            side=signal.side,
            entry_price=signal.price,
            quantity=entry.quantity,
            leverage=leverage,
            opened_at=utc_now(),
            status=PositionStatus.OPEN,
            signal_id=signal_id,
            metadata={
                "entry_order_id": entry.order_id,
                "original_quantity": str(entry.quantity),
                "effective_leverage": leverage,
                "leverage_source": leverage_source,
                "breakeven_price": str(breakeven_price(
                    signal.price, signal.side, settings.fee_aware_breakeven, settings.breakeven_fee_percent
                )),
                "settings_snapshot": settings.snapshot(),
                "alert_data": signal.to_alert_data(),
                "leg_errors": {
                    leg.value: result.error for leg, result in legs.items() if result.error is not None
                },
            },
        )
        stop = legs.get(OrderLeg.STOP)
        if stop is not None:
            position.sl_price = stop.price
            position.sl_order_id = stop.order_id
        for leg in (OrderLeg.TP1, OrderLeg.TP2, OrderLeg.TP3):
            result = legs.get(leg)
            if result is None:
                continue
            setattr(position, f"{leg.value}_price", result.price)
            setattr(position, f"{leg.value}_quantity", result.quantity)
            setattr(position, f"{leg.value}_order_id", result.order_id)
        return position

    @staticmethod
    def _has_open_position(signal: Signal) -> bool:
        return any(
            p.side == signal.side and same_symbol(p.symbol, signal.symbol)
            for p in get_open_positions(signal.user_id)
        )

    def _already_open(
        self,
        signal: Signal,
        signal_id: str,
        state: ExecutionState,
        entry_order_id: Optional[str] = None,
    ) -> ExecutionOutcome:
        logger.warning(
            "POSITION_ALREADY_OPEN",
            symbol=signal.symbol,
            side=signal.side.value,
            user_id=signal.user_id,
            signal_id=signal_id,
            state=state.value,
            entry_order_id=entry_order_id,
        )
        outcome = self._fail(signal, signal_id, state, REASON_ALREADY_OPEN, entry_order_id=entry_order_id)
        outcome.already_open = True
        return outcome

    def _fail(
        self,
        signal: Signal,
        signal_id: str,
        state: ExecutionState,
        reason: str,
        **details,
    ) -> ExecutionOutcome:
        mark_signal(signal_id, SignalStatus.FAILED, error_message=reason)
        self._record_event(
            "SIGNAL_FAILED",
            signal.symbol,
            {"reason": reason, "signal_id": signal_id, "state": state.value, **details},
            user_id=signal.user_id,
        )
        return ExecutionOutcome(state=ExecutionState.FAILED, error=reason)
