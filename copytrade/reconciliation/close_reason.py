"""
Close-reason inference from the close price.

The exchange history says at what price a position closed, not which order
closed it. The reason is derived by proximity to the position's own levels:

    stop loss within tolerance          -> sl_hit
    furthest TP proven hit (TP3..TP1)   -> tpN_hit
    otherwise                           -> tp_hit if closed in profit, else sl_hit

"Within tolerance" is one-sided per direction: for a long, a close at or
below sl * (1 + tol) is a stop, at or above tp * (1 - tol) reaches that TP.
Shorts mirror it.
"""
from decimal import Decimal

from copytrade.constants import CLOSE_REASON_TOLERANCE_PCT
from copytrade.domain.models import CloseReason, Position, Side

HUNDRED = Decimal("100")


def infer_close_reason(
    position: Position,
    close_price: Decimal,
    tolerance_pct: Decimal = CLOSE_REASON_TOLERANCE_PCT,
) -> CloseReason:
    tol = Decimal(str(tolerance_pct)) / HUNDRED

    if position.side == Side.LONG:
        if position.sl_price is not None and close_price <= position.sl_price * (1 + tol):
            return CloseReason.SL_HIT
        for reason, tp in position.tp_prices():
            if close_price >= tp * (1 - tol):
                return reason
        return CloseReason.TP_HIT if close_price > position.entry_price else CloseReason.SL_HIT

    if position.sl_price is not None and close_price >= position.sl_price * (1 - tol):
        return CloseReason.SL_HIT
    for reason, tp in position.tp_prices():
        if close_price <= tp * (1 + tol):
            return reason
    return CloseReason.TP_HIT if close_price < position.entry_price else CloseReason.SL_HIT


def pnl_from_prices(side: Side, entry_price: Decimal, close_price: Decimal, quantity: Decimal) -> Decimal:
    """Gross P&L (before fees) of closing ``quantity`` at ``close_price``."""
    return (close_price - entry_price) * quantity * side.sign
