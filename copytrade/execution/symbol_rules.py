"""
Per-symbol trading rules: minimum notional and leverage caps.

Minimums are the exchange's minimum order value in USDT. Leverage caps come
from an ordered list of symbol categories; the first category that claims a
symbol wins, and the altcoin catch-all has the lowest cap.
"""
from decimal import Decimal, ROUND_UP
from typing import Optional, Tuple

from copytrade.constants import DEFAULT_MIN_NOTIONAL
from copytrade.data.symbol_utils import normalize_symbol
from copytrade.domain.models import SizeAdjustment

SYMBOL_MINIMUMS: dict[str, Decimal] = {
    "BTCUSDT": Decimal("80"),
    "ETHUSDT": Decimal("80"),
    "BNBUSDT": Decimal("80"),
    "SOLUSDT": Decimal("80"),
    **{
        f"{base}USDT": Decimal("6")
        for base in (
            "XRP", "ADA", "DOGE", "MATIC", "DOT", "AVAX", "LINK", "UNI",
            "LTC", "ATOM", "ETC", "XLM", "NEAR", "ALGO", "TRX", "FIL",
        )
    },
}

# (name, members or None for catch-all, max leverage); checked in order
LEVERAGE_TIERS: Tuple[Tuple[str, Optional[frozenset], int], ...] = (
    ("btc", frozenset({"BTCUSDT"}), 125),
    ("eth", frozenset({"ETHUSDT"}), 100),
    ("major", frozenset({"BNBUSDT", "SOLUSDT", "XRPUSDT", "ADAUSDT", "DOGEUSDT"}), 75),
    ("altcoin", None, 50),
)

LEVERAGE_SOURCE_ALERT = "alert"
LEVERAGE_SOURCE_OVERRIDE = "symbol_override"
LEVERAGE_SOURCE_DEFAULT = "default"

# Quantity precision shared with the positions table (Numeric scale 8)
QUANTITY_STEP = Decimal("1e-8")


def minimum_notional(symbol: str) -> Decimal:
    """Minimum order value for a symbol, falling back to the default floor."""
    return SYMBOL_MINIMUMS.get(normalize_symbol(symbol), DEFAULT_MIN_NOTIONAL)


def max_leverage(symbol: str) -> int:
    """Leverage cap from the first symbol category that matches."""
    key = normalize_symbol(symbol)
    for _name, members, cap in LEVERAGE_TIERS:
        if members is None or key in members:
            return cap
    raise AssertionError("LEVERAGE_TIERS must end with a catch-all tier")


def adjust_to_minimum(quantity: Decimal, symbol: str, price: Decimal) -> SizeAdjustment:
    """
    Raise quantity so that quantity * price reaches the symbol minimum.

    Quantities already at or above the minimum are returned unchanged, which
    makes the function idempotent. The raised quantity is rounded up to the
    8-decimal storage precision so the stored notional never falls below
    the minimum.
    """
    if price <= 0:
        raise ValueError(f"Price must be positive, got {price}")
    minimum = minimum_notional(symbol)
    notional = quantity * price
    if notional >= minimum:
        return SizeAdjustment(quantity=quantity, notional=notional, was_adjusted=False)

    adjusted = (minimum / price).quantize(QUANTITY_STEP, rounding=ROUND_UP)
    return SizeAdjustment(quantity=adjusted, notional=adjusted * price, was_adjusted=True)


def resolve_leverage(
    symbol: str,
    settings,
    alert_leverage: Optional[int] = None,
) -> Tuple[int, str]:
    """
    Pick the leverage for a new position and report where it came from.

    Order: alert hint (when enabled and present), per-symbol override,
    default. The result is clamped to [1, max_leverage(symbol)].
    """
    overrides = {normalize_symbol(k): v for k, v in (settings.symbol_leverage_overrides or {}).items()}
    key = normalize_symbol(symbol)

    if settings.use_alert_leverage and alert_leverage:
        leverage, source = int(alert_leverage), LEVERAGE_SOURCE_ALERT
    elif key in overrides:
        leverage, source = int(overrides[key]), LEVERAGE_SOURCE_OVERRIDE
    else:
        leverage, source = int(settings.default_leverage), LEVERAGE_SOURCE_DEFAULT

    return max(1, min(leverage, max_leverage(symbol))), source
