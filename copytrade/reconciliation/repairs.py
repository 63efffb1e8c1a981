"""
Operator repair jobs for closed positions recorded by older releases.

repair_quantity_and_leverage:
    quantity = |pnl| / |close - entry| when that differs materially from the
    stored value and stays within the plausibility band; leverage from the
    nearest exchange history entry for positions still at the legacy default.

repair_close_reasons:
    close reasons missing or "unknown" are re-derived from price proximity;
    missing P&L is filled in from prices and quantity.
"""
from datetime import timedelta
from decimal import Decimal
from itertools import groupby
from typing import Callable, Optional

from copytrade.config.config import ReconciliationConfig, RepairConfig
from copytrade.data.symbol_utils import same_symbol
from copytrade.domain.corrections import apply_correction
from copytrade.domain.models import CloseReason, ExchangeHistoryEntry, JobSummary, Position, utc_now
from copytrade.domain.protocols import ExchangeAdapter
from copytrade.execution.symbol_rules import QUANTITY_STEP
from copytrade.monitoring.logger import get_logger
from copytrade.reconciliation.close_reason import infer_close_reason, pnl_from_prices
from copytrade.reconciliation.matching import greedy_match, time_distance
from copytrade.reconciliation.reconciler import fetch_history
from copytrade.storage.repository import get_closed_positions, update_position

logger = get_logger(__name__)

HUNDRED = Decimal("100")


class PositionRepairer:
    """Quantity, leverage and close-reason repairs over stored closed positions."""

    def __init__(
        self,
        repair_config: Optional[RepairConfig] = None,
        reconciliation_config: Optional[ReconciliationConfig] = None,
        *,
        adapter_factory: Optional[Callable[[str], Optional[ExchangeAdapter]]] = None,
    ):
        """
        Args:
            repair_config: Repair thresholds
            reconciliation_config: Match tolerance, lookback and plausibility band
            adapter_factory: user_id -> adapter; leverage repair is skipped without one,
                and for users it returns None for
        """
        self.config = repair_config or RepairConfig()
        self.recon = reconciliation_config or ReconciliationConfig()
        self.adapter_factory = adapter_factory
        self.tolerance = timedelta(minutes=self.recon.match_tolerance_minutes)

    # ------------------------------------------------------------------
    # Quantity and leverage
    # ------------------------------------------------------------------

    async def repair_quantity_and_leverage(self, user_id: Optional[str] = None) -> JobSummary:
        logger.info("REPAIR_QUANTITY_START", user_id=user_id)
        positions = get_closed_positions(user_id)
        summary = JobSummary(checked=len(positions))

        changed: dict[str, Position] = {}
        for position in positions:
            if self._repair_quantity(position):
                changed[position.id] = position

        if self.adapter_factory is not None:
            legacy = [p for p in positions if p.leverage == self.config.legacy_default_leverage]
            legacy.sort(key=lambda p: p.user_id)
            for owner, group in groupby(legacy, key=lambda p: p.user_id):
                for position in await self._repair_leverage(owner, list(group)):
                    changed[position.id] = position
        else:
            logger.info("REPAIR_LEVERAGE_SKIPPED", reason="no exchange adapter")

        for position in changed.values():
            update_position(position)
        summary.updated = len(changed)
        summary.skipped = summary.checked - summary.updated

        logger.info("REPAIR_QUANTITY_SUMMARY", user_id=user_id, **summary.as_dict())
        return summary

    def derive_quantity(self, position: Position) -> Optional[Decimal]:
        """|pnl| / |close - entry|, or None when the price move is too small to divide by."""
        if position.close_price is None or position.realized_pnl is None or not position.entry_price:
            return None
        move = abs(position.close_price - position.entry_price)
        if move / position.entry_price * HUNDRED < Decimal(str(self.config.min_price_move_pct)):
            return None
        return (abs(position.realized_pnl) / move).quantize(QUANTITY_STEP)

    def _repair_quantity(self, position: Position) -> bool:
        derived = self.derive_quantity(position)
        if derived is None or derived <= 0:
            return False
        stored = position.quantity
        if stored and stored > 0:
            diff_pct = abs(derived - stored) / stored * HUNDRED
            if diff_pct <= Decimal(str(self.config.quantity_update_threshold_pct)):
                return False

        metadata = position.metadata or {}
        original = metadata.get("original_quantity")
        reference = Decimal(str(original)) if original is not None else stored
        if reference and reference > 0:
            ratio = derived / reference
            if not (
                Decimal(str(self.recon.quantity_min_ratio)) <= ratio <= Decimal(str(self.recon.quantity_max_ratio))
            ):
                logger.warning(
                    "QUANTITY_IMPLAUSIBLE",
                    position_id=position.id,
                    symbol=position.symbol,
                    derived_quantity=str(derived),
                    trusted_quantity=str(reference),
                    ratio=str(ratio),
                )
                return False

        flags = {} if original is not None else {"original_quantity": str(stored)}
        return bool(apply_correction(position, {"quantity": derived}, source="repair_quantity", flags=flags))

    async def _repair_leverage(self, user_id: str, positions: list[Position]) -> list[Position]:
        adapter = self.adapter_factory(user_id)
        if adapter is None:
            logger.info("REPAIR_LEVERAGE_SKIPPED", user_id=user_id, reason="no exchange account")
            return []
        now = utc_now()
        start = min(
            (p.closed_at for p in positions if p.closed_at is not None),
            default=now - timedelta(days=self.recon.lookback_days),
        ) - self.tolerance
        entries, _complete = await fetch_history(
            adapter, start, now, chunk_days=self.recon.history_chunk_days
        )

        def distance(position: Position, entry: ExchangeHistoryEntry) -> Optional[float]:
            if entry.leverage <= 0 or entry.side != position.side or not same_symbol(entry.symbol, position.symbol):
                return None
            return time_distance(position.closed_at, entry.closed_at, self.tolerance)

        repaired = []
        for position, entry, _seconds in greedy_match(positions, entries, distance).pairs:
            if apply_correction(position, {"leverage": entry.leverage}, source="repair_leverage"):
                repaired.append(position)
        return repaired

    # ------------------------------------------------------------------
    # Close reasons
    # ------------------------------------------------------------------

    def repair_close_reasons(self, user_id: Optional[str] = None) -> JobSummary:
        logger.info("REPAIR_CLOSE_REASONS_START", user_id=user_id)
        positions = get_closed_positions(user_id)
        summary = JobSummary(checked=len(positions))
        tolerance = Decimal(str(self.recon.close_reason_tolerance_pct))

        for position in positions:
            if position.close_price is None:
                summary.skipped += 1
                continue
            changes = {}
            if position.close_reason in (None, CloseReason.UNKNOWN):
                changes["close_reason"] = infer_close_reason(position, position.close_price, tolerance)
            if position.realized_pnl is None:
                changes["realized_pnl"] = pnl_from_prices(
                    position.side, position.entry_price, position.close_price, position.quantity
                ).quantize(QUANTITY_STEP)
            if changes and apply_correction(position, changes, source="repair_close_reason"):
                update_position(position)
                summary.updated += 1
            else:
                summary.skipped += 1

        logger.info("REPAIR_CLOSE_REASONS_SUMMARY", user_id=user_id, **summary.as_dict())
        return summary
