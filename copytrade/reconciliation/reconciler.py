"""
Reconciliation of the position ledger against exchange history.

The exchange is the single source of truth for closed positions. One run
for one user:

    1. Pull closed-position history for the lookback window, span by span,
       following each span's cursor until it is exhausted.
    2. Match history to stored closed positions on close time.
    3. Match what is left to stored open positions on open time
       (positions closed on the exchange since we last looked).
    4. Matched: correct entry/close/pnl/quantity/leverage/closed_at and the
       close reason through apply_correction.
    5. Unmatched history: insert as an imported closed position.
    6. Unmatched stored closed positions in the window: delete.

Step 6 is irreversible and only runs when every history page was fetched.
Open positions are never deleted here. A second run with no new exchange
data changes nothing.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from copytrade.config.config import ReconciliationConfig
from copytrade.constants import DEFAULT_LEVERAGE
from copytrade.data.symbol_utils import same_symbol, normalize_symbol
from copytrade.domain.corrections import apply_correction
from copytrade.domain.models import (
    CloseReason,
    ExchangeHistoryEntry,
    JobSummary,
    Position,
    PositionStatus,
    utc_now,
)
from copytrade.domain.protocols import EventRecorder, ExchangeAdapter, _noop_event_recorder
from copytrade.exceptions import DataError, OperationalError
from copytrade.execution.symbol_rules import QUANTITY_STEP
from copytrade.monitoring.logger import get_logger
from copytrade.reconciliation.close_reason import infer_close_reason
from copytrade.reconciliation.matching import greedy_match, time_distance
from copytrade.storage.repository import (
    delete_position,
    get_closed_positions,
    get_open_positions,
    insert_position,
    update_position,
)

logger = get_logger(__name__)

# Reasons assigned by provenance rather than by price proximity
_KEPT_REASONS = (CloseReason.MANUAL, CloseReason.IMPORTED)


def _q(value: Decimal) -> Decimal:
    """Exchange figure at storage precision, so stored and fresh values compare equal."""
    return Decimal(value).quantize(QUANTITY_STEP)


def _normalized(entry: ExchangeHistoryEntry) -> ExchangeHistoryEntry:
    return ExchangeHistoryEntry(
        symbol=normalize_symbol(entry.symbol),
        side=entry.side,
        open_price=_q(entry.open_price),
        close_price=_q(entry.close_price),
        quantity=_q(entry.quantity),
        leverage=entry.leverage,
        net_profit=_q(entry.net_profit),
        opened_at=entry.opened_at,
        closed_at=entry.closed_at,
        close_type=entry.close_type,
        venue_position_id=entry.venue_position_id,
    )


async def fetch_history(
    adapter: ExchangeAdapter,
    start: datetime,
    end: datetime,
    *,
    chunk_days: int = 7,
    symbol: Optional[str] = None,
) -> tuple[list[ExchangeHistoryEntry], bool]:
    """
    Every closed position between start and end.

    Spans are fetched oldest first; within a span each page's cursor comes
    from the previous response, so pages are strictly sequential. An entry
    whose venue position id was already returned (venues that filter spans
    by open time repeat a position in the next span) is dropped; entries
    without an id are kept as reported.

    Returns:
        (entries, complete) - complete is False when a fetch failed and
        the remaining pages were not read
    """
    entries: list[ExchangeHistoryEntry] = []
    seen_ids: set[str] = set()
    span_start = start
    while span_start < end:
        span_end = min(span_start + timedelta(days=chunk_days), end)
        cursor: Optional[str] = None
        seen_cursors: set[str] = set()
        while True:
            try:
                page = await adapter.get_position_history(symbol, span_start, span_end, cursor)
            except (OperationalError, DataError) as e:
                logger.error(
                    "HISTORY_FETCH_FAILED",
                    span_start=span_start.isoformat(),
                    span_end=span_end.isoformat(),
                    cursor=cursor,
                    fetched=len(entries),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return entries, False
            for entry in page.entries:
                if entry.venue_position_id:
                    if entry.venue_position_id in seen_ids:
                        continue
                    seen_ids.add(entry.venue_position_id)
                entries.append(entry)
            if not page.next_cursor or page.next_cursor in seen_cursors:
                break
            seen_cursors.add(page.next_cursor)
            cursor = page.next_cursor
        span_start = span_end
    return entries, True


class ReconciliationEngine:
    """
    Converges one user's stored positions to the exchange's closed-position history.
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        config: Optional[ReconciliationConfig] = None,
        *,
        event_recorder: EventRecorder = _noop_event_recorder,
    ):
        """
        Args:
            adapter: Exchange adapter holding this user's credentials
            config: Reconciliation settings (defaults apply when None)
            event_recorder: Callable for recording deletions (injected; defaults to no-op)
        """
        self.adapter = adapter
        self.config = config or ReconciliationConfig()
        self._record_event = event_recorder
        self.tolerance = timedelta(minutes=self.config.match_tolerance_minutes)

    async def reconcile(self, user_id: str, *, now: Optional[datetime] = None) -> JobSummary:
        """
        Reconcile one user.

        Returns:
            JobSummary: checked = history entries seen, updated = corrected
            positions, created = imported entries, deleted = unverified
            positions removed, skipped = matches that needed no change
        """
        now = now or utc_now()
        start = now - timedelta(days=self.config.lookback_days)
        logger.info("RECONCILE_START", user_id=user_id, window_start=start.isoformat(), window_end=now.isoformat())

        raw_entries, complete = await fetch_history(
            self.adapter, start, now, chunk_days=self.config.history_chunk_days
        )
        entries = [_normalized(e) for e in raw_entries]
        summary = JobSummary(checked=len(entries))

        closed = get_closed_positions(user_id, since=start - self.tolerance)
        by_close = greedy_match(entries, closed, self._close_time_distance)
        by_open = greedy_match(by_close.unmatched_left, get_open_positions(user_id), self._open_time_distance)

        for entry, position, _distance in by_close.pairs + by_open.pairs:
            if self._apply_entry(position, entry):
                update_position(position)
                summary.updated += 1
            else:
                summary.skipped += 1

        for entry in by_open.unmatched_left:
            if self.config.import_missing:
                insert_position(self._imported_position(user_id, entry))
                summary.created += 1
            else:
                summary.skipped += 1

        unverified = [p for p in by_close.unmatched_right if p.closed_at is not None and p.closed_at >= start]
        if not complete:
            logger.warning(
                "RECONCILE_DELETE_SKIPPED",
                user_id=user_id,
                reason="history incomplete",
                unverified=len(unverified),
            )
            summary.skipped += len(unverified)
        elif not self.config.delete_unverified:
            summary.skipped += len(unverified)
        else:
            for position in unverified:
                self._delete_unverified(position)
                summary.deleted += 1

        logger.info("RECONCILE_SUMMARY", user_id=user_id, complete=complete, **summary.as_dict())
        return summary

    def _close_time_distance(self, entry: ExchangeHistoryEntry, position: Position) -> Optional[float]:
        if entry.side != position.side or not same_symbol(entry.symbol, position.symbol):
            return None
        return time_distance(entry.closed_at, position.closed_at, self.tolerance)

    def _open_time_distance(self, entry: ExchangeHistoryEntry, position: Position) -> Optional[float]:
        if entry.side != position.side or not same_symbol(entry.symbol, position.symbol):
            return None
        return time_distance(entry.opened_at, position.opened_at, self.tolerance)

    def trusted_quantity(self, position: Position, reported: Decimal) -> Decimal:
        """
        Exchange quantity if it lies within the plausibility band around the
        original (or current) quantity; the trusted stored value otherwise.
        """
        original = (position.metadata or {}).get("original_quantity")
        reference = Decimal(str(original)) if original is not None else position.quantity
        if reference is None or reference <= 0:
            return reported
        ratio = reported / reference
        low = Decimal(str(self.config.quantity_min_ratio))
        high = Decimal(str(self.config.quantity_max_ratio))
        if low <= ratio <= high:
            return reported
        logger.warning(
            "QUANTITY_IMPLAUSIBLE",
            position_id=position.id,
            symbol=position.symbol,
            exchange_quantity=str(reported),
            trusted_quantity=str(reference),
            ratio=str(ratio),
        )
        return reference

    def _apply_entry(self, position: Position, entry: ExchangeHistoryEntry) -> bool:
        changes = {
            "entry_price": entry.open_price,
            "close_price": entry.close_price,
            "realized_pnl": entry.net_profit,
            "quantity": self.trusted_quantity(position, entry.quantity),
            "closed_at": entry.closed_at,
            "status": PositionStatus.CLOSED,
        }
        if entry.leverage > 0:
            changes["leverage"] = entry.leverage
        if position.close_reason not in _KEPT_REASONS:
            # Levels are compared against the corrected entry, as the exchange filled it
            draft = Position(
                user_id=position.user_id,
                symbol=position.symbol,
                side=position.side,
                entry_price=entry.open_price,
                quantity=position.quantity,
                leverage=position.leverage,
                opened_at=position.opened_at,
                sl_price=position.sl_price,
                tp1_price=position.tp1_price,
                tp2_price=position.tp2_price,
                tp3_price=position.tp3_price,
            )
            changes["close_reason"] = infer_close_reason(
                draft, entry.close_price, Decimal(str(self.config.close_reason_tolerance_pct))
            )

        flags = {"synced_from_exchange": True}
        if entry.venue_position_id:
            flags["venue_position_id"] = entry.venue_position_id
        applied = apply_correction(position, changes, source="reconcile", flags=flags)
        if applied:
            logger.info(
                "POSITION_CORRECTED",
                position_id=position.id,
                symbol=position.symbol,
                fields=sorted(applied),
            )
        return bool(applied)

    @staticmethod
    def _imported_position(user_id: str, entry: ExchangeHistoryEntry) -> Position:
        position = Position(
            user_id=user_id,
            symbol=entry.symbol,
            side=entry.side,
            entry_price=entry.open_price,
            quantity=entry.quantity,
            leverage=entry.leverage if entry.leverage > 0 else DEFAULT_LEVERAGE,
            opened_at=entry.opened_at,
            status=PositionStatus.CLOSED,
            close_price=entry.close_price,
            close_reason=CloseReason.IMPORTED,
            realized_pnl=entry.net_profit,
            closed_at=entry.closed_at,
            metadata={
                "imported_from_exchange": True,
                "synced_from_exchange": True,
                "venue_position_id": entry.venue_position_id,
                "close_type": entry.close_type,
            },
        )
        logger.info(
            "POSITION_IMPORTED",
            position_id=position.id,
            user_id=user_id,
            symbol=entry.symbol,
            side=entry.side.value,
            closed_at=entry.closed_at.isoformat(),
            realized_pnl=str(entry.net_profit),
        )
        return position

    def _delete_unverified(self, position: Position) -> None:
        details = {
            "position_id": position.id,
            "symbol": position.symbol,
            "side": position.side.value,
            "closed_at": position.closed_at.isoformat() if position.closed_at else None,
            "realized_pnl": str(position.realized_pnl) if position.realized_pnl is not None else None,
            "signal_id": position.signal_id,
            "reason": "no matching exchange history entry",
        }
        logger.warning("RECONCILE_UNVERIFIED_DELETED", user_id=position.user_id, **details)
        self._record_event("RECONCILE_UNVERIFIED_DELETED", position.symbol, details, user_id=position.user_id)
        delete_position(position.id)
