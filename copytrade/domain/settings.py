"""
Per-user trading settings and their resolution against the admin defaults.

A user record carries three mode switches, one per governed field group:

    money_mode  -> SIZING_FIELDS  (position size, risk limits, leverage)
    sltp_mode   -> SLTP_FIELDS    (stop-loss / take-profit calculation)
    tier_mode   -> FILTER_FIELDS  (tier and strength filters)

``copy_admin`` takes the whole group from the admin record. ``custom`` takes
the user's values and falls back to the admin value for any field the user
left unset (None). ``resolve()`` is the only place this merge happens.
"""
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from copytrade.constants import (
    DEFAULT_DAILY_LOSS_LIMIT,
    DEFAULT_DAILY_LOSS_PERCENT,
    DEFAULT_LEVERAGE,
    DEFAULT_MAX_OPEN_POSITIONS,
    DEFAULT_POSITION_SIZE_VALUE,
    DEFAULT_SL_FIXED_USDT,
    DEFAULT_TP2_SPACING,
    DEFAULT_TP3_SPACING,
    ROUND_TRIP_FEE_PERCENT,
)
from copytrade.exceptions import SettingsResolutionError


class SettingsMode(str, Enum):
    CUSTOM = "custom"
    COPY_ADMIN = "copy_admin"


SizingType = Literal["fixed_usdt", "percent_balance"]
LossLimitType = Literal["fixed_usdt", "percent_drawdown"]
CalculatorType = Literal["simple", "risk_reward", "atr"]
SLMethod = Literal["percent_entry", "percent_margin", "fixed_usdt", "atr_based"]
TPStrategy = Literal["partial_close", "main_tp_only"]


SIZING_FIELDS = (
    "position_sizing_type",
    "position_size_value",
    "max_open_positions",
    "daily_loss_limit",
    "daily_loss_percent",
    "loss_limit_type",
    "default_leverage",
    "use_alert_leverage",
    "symbol_leverage_overrides",
)

SLTP_FIELDS = (
    "calculator_type",
    "sl_method",
    "simple_sl_percent",
    "simple_tp1_percent",
    "simple_tp2_percent",
    "simple_tp3_percent",
    "rr_sl_percent_margin",
    "sl_fixed_usdt",
    "tp1_rr_ratio",
    "tp2_rr_ratio",
    "tp3_rr_ratio",
    "atr_sl_multiplier",
    "atr_tp_multiplier",
    "atr_tp2_multiplier",
    "atr_tp3_multiplier",
    "tp_levels",
    "tp_strategy",
    "tp1_close_percent",
    "tp2_close_percent",
    "tp3_close_percent",
    "adaptive_tp_spacing",
    "tp_spacing_high_vol_multiplier",
    "tp_spacing_low_vol_multiplier",
    "momentum_based_tp",
    "momentum_weak_multiplier",
    "momentum_moderate_multiplier",
    "momentum_strong_multiplier",
    "adaptive_rr",
    "adaptive_rr_weak_multiplier",
    "adaptive_rr_standard_multiplier",
    "adaptive_rr_strong_multiplier",
    "adaptive_rr_very_strong_multiplier",
    "fee_aware_breakeven",
    "breakeven_fee_percent",
)

FILTER_FIELDS = (
    "filter_by_tier",
    "allowed_tiers",
    "excluded_tiers",
    "alert_strength_threshold",
    "duplicate_alert_handling",
)

FIELD_GROUPS = {
    "money_mode": SIZING_FIELDS,
    "sltp_mode": SLTP_FIELDS,
    "tier_mode": FILTER_FIELDS,
}


class AdminSettings(BaseModel):
    """
    Admin default record. Every governed field has a concrete value so the
    merge in ``resolve()`` is total.
    """
    model_config = ConfigDict(extra="ignore", frozen=True)

    # Sizing / risk
    position_sizing_type: SizingType = "fixed_usdt"
    position_size_value: Decimal = Field(default=DEFAULT_POSITION_SIZE_VALUE, gt=0)
    max_open_positions: int = Field(default=DEFAULT_MAX_OPEN_POSITIONS, ge=1, le=100)
    daily_loss_limit: Decimal = Field(default=DEFAULT_DAILY_LOSS_LIMIT, ge=0)
    daily_loss_percent: Decimal = Field(default=DEFAULT_DAILY_LOSS_PERCENT, ge=0, le=100)
    loss_limit_type: LossLimitType = "fixed_usdt"
    default_leverage: int = Field(default=DEFAULT_LEVERAGE, ge=1, le=125)
    use_alert_leverage: bool = True
    symbol_leverage_overrides: dict[str, int] = Field(default_factory=dict)

    # Stop-loss / take-profit
    calculator_type: CalculatorType = "simple"
    sl_method: SLMethod = "percent_entry"
    simple_sl_percent: Decimal = Field(default=Decimal("1.5"), gt=0)
    simple_tp1_percent: Decimal = Field(default=Decimal("3"), gt=0)
    simple_tp2_percent: Optional[Decimal] = None  # None: 1.5x tp1
    simple_tp3_percent: Optional[Decimal] = None  # None: 2x tp1
    rr_sl_percent_margin: Decimal = Field(default=Decimal("20"), gt=0)
    sl_fixed_usdt: Decimal = Field(default=DEFAULT_SL_FIXED_USDT, gt=0)
    tp1_rr_ratio: Decimal = Field(default=Decimal("1.5"), gt=0)
    tp2_rr_ratio: Decimal = Field(default=Decimal("2.5"), gt=0)
    tp3_rr_ratio: Decimal = Field(default=Decimal("3.5"), gt=0)
    atr_sl_multiplier: Decimal = Field(default=Decimal("1.5"), gt=0)
    atr_tp_multiplier: Decimal = Field(default=Decimal("2"), gt=0)
    atr_tp2_multiplier: Optional[Decimal] = None  # None: 1.5x atr_tp_multiplier
    atr_tp3_multiplier: Optional[Decimal] = None  # None: 2x atr_tp_multiplier
    tp_levels: int = Field(default=3, ge=1, le=3)
    tp_strategy: TPStrategy = "partial_close"
    tp1_close_percent: Decimal = Field(default=Decimal("50"), ge=0, le=100)
    tp2_close_percent: Decimal = Field(default=Decimal("30"), ge=0, le=100)
    tp3_close_percent: Decimal = Field(default=Decimal("20"), ge=0, le=100)
    adaptive_tp_spacing: bool = False
    tp_spacing_high_vol_multiplier: Decimal = Field(default=Decimal("1.3"), gt=0)
    tp_spacing_low_vol_multiplier: Decimal = Field(default=Decimal("0.9"), gt=0)
    momentum_based_tp: bool = False
    momentum_weak_multiplier: Decimal = Field(default=Decimal("0.9"), gt=0)
    momentum_moderate_multiplier: Decimal = Field(default=Decimal("1.0"), gt=0)
    momentum_strong_multiplier: Decimal = Field(default=Decimal("1.2"), gt=0)
    adaptive_rr: bool = False
    adaptive_rr_weak_multiplier: Decimal = Field(default=Decimal("0.8"), gt=0)
    adaptive_rr_standard_multiplier: Decimal = Field(default=Decimal("1.0"), gt=0)
    adaptive_rr_strong_multiplier: Decimal = Field(default=Decimal("1.2"), gt=0)
    adaptive_rr_very_strong_multiplier: Decimal = Field(default=Decimal("1.5"), gt=0)
    fee_aware_breakeven: bool = True
    breakeven_fee_percent: Decimal = Field(default=ROUND_TRIP_FEE_PERCENT, ge=0, le=5)

    # Filters
    filter_by_tier: bool = False
    allowed_tiers: list[str] = Field(default_factory=list)
    excluded_tiers: list[str] = Field(default_factory=list)
    alert_strength_threshold: Decimal = Field(default=Decimal("0"), ge=0, le=1)
    duplicate_alert_handling: bool = True


class UserSettings(BaseModel):
    """
    A user's stored record. Any governed field may be None, meaning
    "inherit the admin value".
    """
    model_config = ConfigDict(extra="ignore", frozen=True)

    user_id: str
    bot_active: bool = True
    money_mode: SettingsMode = SettingsMode.COPY_ADMIN
    sltp_mode: SettingsMode = SettingsMode.COPY_ADMIN
    tier_mode: SettingsMode = SettingsMode.COPY_ADMIN

    position_sizing_type: Optional[SizingType] = None
    position_size_value: Optional[Decimal] = Field(default=None, gt=0)
    max_open_positions: Optional[int] = Field(default=None, ge=1, le=100)
    daily_loss_limit: Optional[Decimal] = Field(default=None, ge=0)
    daily_loss_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)
    loss_limit_type: Optional[LossLimitType] = None
    default_leverage: Optional[int] = Field(default=None, ge=1, le=125)
    use_alert_leverage: Optional[bool] = None
    symbol_leverage_overrides: Optional[dict[str, int]] = None

    calculator_type: Optional[CalculatorType] = None
    sl_method: Optional[SLMethod] = None
    simple_sl_percent: Optional[Decimal] = Field(default=None, gt=0)
    simple_tp1_percent: Optional[Decimal] = Field(default=None, gt=0)
    simple_tp2_percent: Optional[Decimal] = Field(default=None, gt=0)
    simple_tp3_percent: Optional[Decimal] = Field(default=None, gt=0)
    rr_sl_percent_margin: Optional[Decimal] = Field(default=None, gt=0)
    sl_fixed_usdt: Optional[Decimal] = Field(default=None, gt=0)
    tp1_rr_ratio: Optional[Decimal] = Field(default=None, gt=0)
    tp2_rr_ratio: Optional[Decimal] = Field(default=None, gt=0)
    tp3_rr_ratio: Optional[Decimal] = Field(default=None, gt=0)
    atr_sl_multiplier: Optional[Decimal] = Field(default=None, gt=0)
    atr_tp_multiplier: Optional[Decimal] = Field(default=None, gt=0)
    atr_tp2_multiplier: Optional[Decimal] = Field(default=None, gt=0)
    atr_tp3_multiplier: Optional[Decimal] = Field(default=None, gt=0)
    tp_levels: Optional[int] = Field(default=None, ge=1, le=3)
    tp_strategy: Optional[TPStrategy] = None
    tp1_close_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)
    tp2_close_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)
    tp3_close_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)
    adaptive_tp_spacing: Optional[bool] = None
    tp_spacing_high_vol_multiplier: Optional[Decimal] = Field(default=None, gt=0)
    tp_spacing_low_vol_multiplier: Optional[Decimal] = Field(default=None, gt=0)
    momentum_based_tp: Optional[bool] = None
    momentum_weak_multiplier: Optional[Decimal] = Field(default=None, gt=0)
    momentum_moderate_multiplier: Optional[Decimal] = Field(default=None, gt=0)
    momentum_strong_multiplier: Optional[Decimal] = Field(default=None, gt=0)
    adaptive_rr: Optional[bool] = None
    adaptive_rr_weak_multiplier: Optional[Decimal] = Field(default=None, gt=0)
    adaptive_rr_standard_multiplier: Optional[Decimal] = Field(default=None, gt=0)
    adaptive_rr_strong_multiplier: Optional[Decimal] = Field(default=None, gt=0)
    adaptive_rr_very_strong_multiplier: Optional[Decimal] = Field(default=None, gt=0)
    fee_aware_breakeven: Optional[bool] = None
    breakeven_fee_percent: Optional[Decimal] = Field(default=None, ge=0, le=5)

    filter_by_tier: Optional[bool] = None
    allowed_tiers: Optional[list[str]] = None
    excluded_tiers: Optional[list[str]] = None
    alert_strength_threshold: Optional[Decimal] = Field(default=None, ge=0, le=1)
    duplicate_alert_handling: Optional[bool] = None


class EffectiveSettings(AdminSettings):
    """
    Fully resolved settings for one user at signal time.

    ``sources`` maps every governed field to "user" or "admin"; it is part of
    the snapshot stored on the resulting position.
    """
    user_id: Optional[str] = None
    bot_active: bool = True
    sources: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_close_fractions(self):
        if self.tp_strategy == "partial_close":
            total = sum(
                (getattr(self, f"tp{n}_close_percent") for n in range(1, self.tp_levels + 1)),
                Decimal("0"),
            )
            if total > Decimal("100"):
                raise ValueError(f"TP close percents exceed 100% ({total})")
        return self

    @model_validator(mode="after")
    def _check_level_order(self):
        """TP distances must grow strictly from level to level."""
        tp1 = self.simple_tp1_percent
        simple = (tp1, self.simple_tp2_percent or tp1 * DEFAULT_TP2_SPACING, self.simple_tp3_percent or tp1 * DEFAULT_TP3_SPACING)
        rr = (self.tp1_rr_ratio, self.tp2_rr_ratio, self.tp3_rr_ratio)
        m1 = self.atr_tp_multiplier
        atr = (m1, self.atr_tp2_multiplier or m1 * DEFAULT_TP2_SPACING, self.atr_tp3_multiplier or m1 * DEFAULT_TP3_SPACING)
        for name, steps in (("simple", simple), ("risk_reward", rr), ("atr", atr)):
            levels = steps[: self.tp_levels]
            if any(b <= a for a, b in zip(levels, levels[1:])):
                raise ValueError(f"{name} TP levels must increase strictly: {[str(s) for s in levels]}")
        return self

    def snapshot(self) -> dict:
        """JSON-friendly point-in-time copy for the position audit trail."""
        return self.model_dump(mode="json")


def resolve(user: UserSettings, admin: AdminSettings) -> EffectiveSettings:
    """
    Merge a user record with the admin defaults, one switch per field group.

    Raises:
        SettingsResolutionError: If the merged record fails validation
    """
    values: dict = {}
    sources: dict[str, str] = {}
    for mode_field, group in FIELD_GROUPS.items():
        mode = getattr(user, mode_field)
        for name in group:
            user_value = getattr(user, name)
            if mode == SettingsMode.COPY_ADMIN or user_value is None:
                values[name] = getattr(admin, name)
                sources[name] = "admin"
            else:
                values[name] = user_value
                sources[name] = "user"

    try:
        return EffectiveSettings(
            user_id=user.user_id,
            bot_active=user.bot_active,
            sources=sources,
            **values,
        )
    except ValueError as e:
        raise SettingsResolutionError(f"Settings for user {user.user_id} do not resolve: {e}") from e
