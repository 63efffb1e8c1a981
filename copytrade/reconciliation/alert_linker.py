"""
Links closed positions that have no originating signal back to the alert
that most plausibly opened them.

A signal is a candidate for a position when symbol (normalized) and side
agree, the signal's timestamp is within the time tolerance of the
position's open time, and the alert price is within the price tolerance of
the entry. The nearest in time wins; each signal links at most once.
"""
from datetime import timedelta
from decimal import Decimal
from itertools import groupby
from typing import Optional

from copytrade.config.config import LinkingConfig
from copytrade.data.symbol_utils import same_symbol
from copytrade.domain.corrections import apply_correction
from copytrade.domain.models import JobSummary, Position, Signal, utc_now
from copytrade.domain.protocols import EventRecorder, _noop_event_recorder
from copytrade.monitoring.logger import get_logger
from copytrade.reconciliation.matching import greedy_match, time_distance
from copytrade.storage.repository import (
    get_closed_positions_without_signal,
    get_unlinked_signals,
    link_position_to_signal,
)

logger = get_logger(__name__)


def price_diff_percent(entry_price: Decimal, alert_price: Decimal) -> Decimal:
    """|entry - alert| as a percent of the entry price."""
    return abs(entry_price - alert_price) / entry_price * Decimal("100")


class AlertLinker:
    """Bidirectional position <-> signal linking for orphaned closed positions."""

    def __init__(
        self,
        config: Optional[LinkingConfig] = None,
        *,
        event_recorder: EventRecorder = _noop_event_recorder,
    ):
        self.config = config or LinkingConfig()
        self.time_tolerance = timedelta(minutes=self.config.time_tolerance_minutes)
        self.price_tolerance = Decimal(str(self.config.price_tolerance_pct))
        self._record_event = event_recorder

    def distance(self, position: Position, signal: Signal) -> Optional[float]:
        """Seconds between open and alert, or None if the pair is not a candidate."""
        if position.side != signal.side or not same_symbol(position.symbol, signal.symbol):
            return None
        if position.entry_price is None or position.entry_price <= 0:
            return None
        if price_diff_percent(position.entry_price, signal.price) > self.price_tolerance:
            return None
        return time_distance(position.opened_at, signal.timestamp, self.time_tolerance)

    def link_orphans(self, user_id: Optional[str] = None) -> JobSummary:
        """
        Link every closed position lacking a signal reference.

        Returns:
            JobSummary: checked = orphans examined, updated = linked,
            skipped = left unlinked
        """
        logger.info("LINK_ORPHANS_START", user_id=user_id)
        orphans = get_closed_positions_without_signal(user_id)
        summary = JobSummary(checked=len(orphans))

        orphans = sorted(orphans, key=lambda p: p.user_id)
        for owner, group in groupby(orphans, key=lambda p: p.user_id):
            positions = list(group)
            since = min(p.opened_at for p in positions) - self.time_tolerance
            signals = get_unlinked_signals(owner, since=since)
            result = greedy_match(positions, signals, self.distance)

            for position, signal, seconds in result.pairs:
                self._link(position, signal, seconds)
                summary.updated += 1
            for position in result.unmatched_left:
                logger.info(
                    "ORPHAN_UNMATCHED",
                    position_id=position.id,
                    user_id=owner,
                    symbol=position.symbol,
                    side=position.side.value,
                    opened_at=position.opened_at.isoformat(),
                )
                summary.skipped += 1

        logger.info("LINK_ORPHANS_SUMMARY", user_id=user_id, **summary.as_dict())
        return summary

    def _link(self, position: Position, signal: Signal, seconds: float) -> None:
        diff_pct = price_diff_percent(position.entry_price, signal.price)
        apply_correction(
            position,
            {"signal_id": signal.id},
            source="link_orphans",
            flags={
                "tier": signal.tier,
                "mode": signal.mode,
                "linked_at": utc_now().isoformat(),
                "match_quality": {
                    "time_diff_seconds": round(seconds, 1),
                    "price_diff_percent": str(diff_pct.quantize(Decimal("0.0001"))),
                },
            },
        )
        link_position_to_signal(position, signal.id)
        logger.info(
            "ORPHAN_LINKED",
            position_id=position.id,
            signal_id=signal.id,
            symbol=position.symbol,
            time_diff_seconds=round(seconds, 1),
            price_diff_percent=str(diff_pct.quantize(Decimal("0.0001"))),
        )
        self._record_event(
            "ORPHAN_LINKED",
            position.symbol,
            {"position_id": position.id, "signal_id": signal.id},
            user_id=position.user_id,
        )
