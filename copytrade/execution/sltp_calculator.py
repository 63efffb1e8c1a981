"""
Stop-loss / take-profit and position-size calculation.

Pipeline (each stage is a pure function of its inputs):

    1. position_size      fixed USDT or percent of equity, raised to the symbol minimum
    2. stop_loss_price    percent_entry | percent_margin | fixed_usdt | atr_based
    3. take_profit_prices simple | risk_reward | atr
    4. apply_overlays     volatility spacing -> momentum -> adaptive risk:reward

Sign convention: offsets are added in the favourable direction, i.e.
``price + side.sign * distance`` for take profits and
``price - side.sign * distance`` for the stop loss. Every percent parameter
is in percent units and divided by 100 here, nowhere else.
"""
from decimal import Decimal
from typing import Optional

from copytrade.constants import (
    ADAPTIVE_RR_STANDARD_BELOW,
    ADAPTIVE_RR_STRONG_BELOW,
    ADAPTIVE_RR_WEAK_BELOW,
    DEFAULT_TP2_SPACING,
    DEFAULT_TP3_SPACING,
    HIGH_VOLATILITY_ATR_RATIO,
    HIGH_VOLATILITY_VOLUME_RATIO,
    MOMENTUM_MODERATE_BELOW,
    MOMENTUM_WEAK_BELOW,
)
from copytrade.domain.models import OrderLeg, Side, Signal, SizeAdjustment, SLTPLevels
from copytrade.domain.settings import EffectiveSettings
from copytrade.exceptions import ValidationError
from copytrade.execution.symbol_rules import adjust_to_minimum
from copytrade.monitoring.logger import get_logger

logger = get_logger(__name__)

HUNDRED = Decimal("100")


def _pct(value: Decimal) -> Decimal:
    return Decimal(value) / HUNDRED


def _tp_from_distance(entry: Decimal, distance: Decimal, side: Side) -> Decimal:
    return entry + side.sign * distance


def scale_tp_distance(entry: Decimal, tp: Decimal, multiplier: Decimal, side: Side) -> Decimal:
    """Multiply a take-profit's distance from entry, keeping it on the profit side."""
    return _tp_from_distance(entry, abs(tp - entry) * multiplier, side)


# ---------------------------------------------------------------------------
# 1. Position size
# ---------------------------------------------------------------------------

def position_size(
    signal: Signal,
    settings: EffectiveSettings,
    equity: Optional[Decimal] = None,
) -> SizeAdjustment:
    """
    Base-asset quantity for a new position, raised to the symbol minimum notional.

    Raises:
        ValidationError: percent_balance sizing without an equity figure
    """
    price = signal.price
    if settings.position_sizing_type == "fixed_usdt":
        raw = settings.position_size_value / price
    else:
        if equity is None:
            raise ValidationError("percent_balance sizing requires account equity")
        raw = equity * _pct(settings.position_size_value) / price

    adjustment = adjust_to_minimum(raw, signal.symbol, price)
    if adjustment.was_adjusted:
        logger.info(
            "POSITION_SIZE_RAISED_TO_MINIMUM",
            symbol=signal.symbol,
            requested_quantity=str(raw),
            adjusted_quantity=str(adjustment.quantity),
            notional=str(adjustment.notional),
        )
    return adjustment


# ---------------------------------------------------------------------------
# 2. Stop loss
# ---------------------------------------------------------------------------

def stop_loss_distance(
    signal: Signal,
    settings: EffectiveSettings,
    quantity: Decimal,
    leverage: int,
) -> Decimal:
    """Absolute price distance between entry and stop."""
    price = signal.price
    method = settings.sl_method

    if method == "atr_based" and signal.atr is None:
        logger.warning("SL_ATR_MISSING_FALLBACK", symbol=signal.symbol, fallback="percent_entry")
        method = "percent_entry"

    if method == "percent_entry":
        return price * _pct(settings.simple_sl_percent)

    if method == "percent_margin":
        if quantity <= 0:
            raise ValidationError("percent_margin stop loss needs a positive quantity")
        margin = quantity * price / Decimal(leverage)
        loss = margin * _pct(settings.rr_sl_percent_margin)
        return loss / quantity

    if method == "fixed_usdt":
        if quantity <= 0:
            raise ValidationError("fixed_usdt stop loss needs a positive quantity")
        return settings.sl_fixed_usdt / quantity

    return signal.atr * settings.atr_sl_multiplier


def stop_loss_price(
    signal: Signal,
    settings: EffectiveSettings,
    quantity: Decimal,
    leverage: int,
) -> Decimal:
    """
    Stop price below entry for longs, above for shorts.

    Raises:
        ValidationError: a distance that would put a long stop at or below zero
    """
    distance = stop_loss_distance(signal, settings, quantity, leverage)
    if distance <= 0:
        raise ValidationError(f"Stop-loss distance must be positive, got {distance}")
    sl = signal.price - signal.side.sign * distance
    if sl <= 0:
        raise ValidationError(
            f"Stop-loss for {signal.symbol} resolves to {sl}; distance {distance} exceeds entry price"
        )
    return sl


# ---------------------------------------------------------------------------
# 3. Take profits
# ---------------------------------------------------------------------------

def _simple_tps(signal: Signal, settings: EffectiveSettings) -> list[Decimal]:
    tp1_pct = settings.simple_tp1_percent
    tp2_pct = settings.simple_tp2_percent or tp1_pct * DEFAULT_TP2_SPACING
    tp3_pct = settings.simple_tp3_percent or tp1_pct * DEFAULT_TP3_SPACING
    return [signal.price * _pct(p) for p in (tp1_pct, tp2_pct, tp3_pct)]


def _risk_reward_tps(sl_distance: Decimal, settings: EffectiveSettings) -> list[Decimal]:
    return [sl_distance * r for r in (settings.tp1_rr_ratio, settings.tp2_rr_ratio, settings.tp3_rr_ratio)]


def _atr_tps(atr: Decimal, settings: EffectiveSettings) -> list[Decimal]:
    m1 = settings.atr_tp_multiplier
    m2 = settings.atr_tp2_multiplier or m1 * DEFAULT_TP2_SPACING
    m3 = settings.atr_tp3_multiplier or m1 * DEFAULT_TP3_SPACING
    return [atr * m for m in (m1, m2, m3)]


def _check_take_profits(signal: Signal, tps: list[Optional[Decimal]]) -> list[Optional[Decimal]]:
    for level, tp in enumerate(tps, start=1):
        if tp is not None and tp <= 0:
            raise ValidationError(
                f"TP{level} for {signal.symbol} resolves to {tp}; distance exceeds entry price"
            )
    return tps


def take_profit_prices(
    signal: Signal,
    settings: EffectiveSettings,
    stop_loss: Decimal,
) -> list[Optional[Decimal]]:
    """
    TP1..TP3 prices; levels beyond ``tp_levels`` are None.

    Raises:
        ValidationError: a distance that would put a short target at or below zero
    """
    sl_distance = abs(signal.price - stop_loss)
    strategy = settings.calculator_type

    if strategy == "atr" and signal.atr is None:
        logger.warning("TP_ATR_MISSING_FALLBACK", symbol=signal.symbol, fallback="risk_reward")
        strategy = "risk_reward"

    if strategy == "simple":
        distances = _simple_tps(signal, settings)
    elif strategy == "risk_reward":
        distances = _risk_reward_tps(sl_distance, settings)
    else:
        distances = _atr_tps(signal.atr, settings)

    prices: list[Optional[Decimal]] = []
    for level, distance in enumerate(distances, start=1):
        if level > settings.tp_levels:
            prices.append(None)
        else:
            prices.append(_tp_from_distance(signal.price, distance, signal.side))
    return _check_take_profits(signal, prices)


# ---------------------------------------------------------------------------
# 4. Adaptive overlays
# ---------------------------------------------------------------------------

def is_high_volatility(signal: Signal) -> bool:
    """Volume ratio above 1.5 or ATR above 1% of price."""
    volume_ratio = signal.volume_ratio if signal.volume_ratio is not None else Decimal("1")
    if volume_ratio > HIGH_VOLATILITY_VOLUME_RATIO:
        return True
    return signal.atr is not None and signal.atr / signal.price > HIGH_VOLATILITY_ATR_RATIO


def volatility_multiplier(signal: Signal, settings: EffectiveSettings) -> Decimal:
    if is_high_volatility(signal):
        return settings.tp_spacing_high_vol_multiplier
    return settings.tp_spacing_low_vol_multiplier


def momentum_multiplier(signal: Signal, settings: EffectiveSettings) -> Decimal:
    if signal.strength < MOMENTUM_WEAK_BELOW:
        return settings.momentum_weak_multiplier
    if signal.strength < MOMENTUM_MODERATE_BELOW:
        return settings.momentum_moderate_multiplier
    return settings.momentum_strong_multiplier


def adaptive_rr_multiplier(signal: Signal, settings: EffectiveSettings) -> Decimal:
    score = signal.strength * 10
    if score < ADAPTIVE_RR_WEAK_BELOW:
        return settings.adaptive_rr_weak_multiplier
    if score < ADAPTIVE_RR_STANDARD_BELOW:
        return settings.adaptive_rr_standard_multiplier
    if score < ADAPTIVE_RR_STRONG_BELOW:
        return settings.adaptive_rr_strong_multiplier
    return settings.adaptive_rr_very_strong_multiplier


def apply_overlays(
    signal: Signal,
    settings: EffectiveSettings,
    tps: list[Optional[Decimal]],
) -> list[Optional[Decimal]]:
    """Apply the enabled overlays in their fixed order."""
    multipliers = []
    if settings.adaptive_tp_spacing:
        multipliers.append(("volatility", volatility_multiplier(signal, settings)))
    if settings.momentum_based_tp:
        multipliers.append(("momentum", momentum_multiplier(signal, settings)))
    if settings.adaptive_rr:
        multipliers.append(("adaptive_rr", adaptive_rr_multiplier(signal, settings)))

    for name, multiplier in multipliers:
        tps = [
            scale_tp_distance(signal.price, tp, multiplier, signal.side) if tp is not None else None
            for tp in tps
        ]
        logger.debug("TP_OVERLAY_APPLIED", overlay=name, multiplier=str(multiplier), symbol=signal.symbol)
    return tps


# ---------------------------------------------------------------------------
# Pipeline entry points
# ---------------------------------------------------------------------------

def calculate_levels(
    signal: Signal,
    settings: EffectiveSettings,
    quantity: Decimal,
    leverage: int,
) -> SLTPLevels:
    """Stop loss plus TP1..TP3 for a sized position."""
    sl = stop_loss_price(signal, settings, quantity, leverage)
    tps = _check_take_profits(signal, apply_overlays(signal, settings, take_profit_prices(signal, settings, sl)))
    return SLTPLevels(stop_loss=sl, tp1=tps[0], tp2=tps[1], tp3=tps[2])


def close_quantities(quantity: Decimal, settings: EffectiveSettings) -> dict[OrderLeg, Decimal]:
    """
    Quantity closed by each TP order.

    partial_close: each level closes its configured fraction.
    main_tp_only: TP1 closes everything, TP2/TP3 close nothing.
    """
    if settings.tp_strategy == "partial_close":
        return {
            OrderLeg.TP1: quantity * _pct(settings.tp1_close_percent),
            OrderLeg.TP2: quantity * _pct(settings.tp2_close_percent),
            OrderLeg.TP3: quantity * _pct(settings.tp3_close_percent),
        }
    return {OrderLeg.TP1: quantity, OrderLeg.TP2: Decimal("0"), OrderLeg.TP3: Decimal("0")}


def breakeven_price(
    entry: Decimal,
    side: Side,
    fee_aware: bool,
    fee_percent: Decimal,
) -> Decimal:
    """
    Stop price that locks in a true break-even once the trade has moved.

    Fee-aware: shifted by the round-trip fee in the favourable direction.
    """
    if not fee_aware:
        return entry
    return entry + side.sign * entry * _pct(fee_percent)
