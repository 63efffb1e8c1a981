"""
System-wide constants for the copy-trading engine.

Centralizes magic numbers used across modules. Everything that an operator
may want to tune lives in config.yaml instead; these are the fallbacks.
"""
from decimal import Decimal

# Exchange endpoints
BITGET_PRODUCT_TYPE = "USDT-FUTURES"
BITGET_MARGIN_COIN = "USDT"
BITGET_SUCCESS_CODE = "00000"
BYBIT_CATEGORY = "linear"

# Minimum notional (USDT)
DEFAULT_MIN_NOTIONAL = Decimal("6")

# Leverage
DEFAULT_LEVERAGE = 10
LEGACY_DEFAULT_LEVERAGE = 10

# Sizing / SL / TP fallbacks (percent units)
DEFAULT_POSITION_SIZE_VALUE = Decimal("100")
DEFAULT_SL_FIXED_USDT = Decimal("50")
DEFAULT_TP2_SPACING = Decimal("1.5")
DEFAULT_TP3_SPACING = Decimal("2")
ROUND_TRIP_FEE_PERCENT = Decimal("0.12")

# Adaptive overlay thresholds
HIGH_VOLATILITY_VOLUME_RATIO = Decimal("1.5")
HIGH_VOLATILITY_ATR_RATIO = Decimal("0.01")
MOMENTUM_WEAK_BELOW = Decimal("0.3")
MOMENTUM_MODERATE_BELOW = Decimal("0.6")
ADAPTIVE_RR_WEAK_BELOW = Decimal("3")
ADAPTIVE_RR_STANDARD_BELOW = Decimal("5")
ADAPTIVE_RR_STRONG_BELOW = Decimal("7")

# Risk gate fallbacks
DEFAULT_DAILY_LOSS_LIMIT = Decimal("500")
DEFAULT_DAILY_LOSS_PERCENT = Decimal("5")
DEFAULT_MAX_OPEN_POSITIONS = 3

# Reconciliation
RECONCILE_LOOKBACK_DAYS = 90
MATCH_TOLERANCE_MINUTES = 10
HISTORY_PAGE_LIMIT = 100
HISTORY_CHUNK_DAYS = 7
CLOSE_REASON_TOLERANCE_PCT = Decimal("0.5")
QUANTITY_MIN_RATIO = Decimal("0.5")
QUANTITY_MAX_RATIO = Decimal("2")

# Alert linking
LINK_PRICE_TOLERANCE_PCT = Decimal("2")

# Repairs
MIN_PRICE_MOVE_PCT = Decimal("0.1")
QUANTITY_UPDATE_THRESHOLD_PCT = Decimal("5")

# Rejection reasons
REASON_MAX_OPEN = "max open positions reached"
REASON_DAILY_LOSS = "daily loss limit reached"
REASON_BOT_INACTIVE = "bot inactive"
REASON_STRENGTH = "signal strength below threshold"
REASON_ALREADY_EXECUTED = "already executed"
REASON_ALREADY_OPEN = "position already open"
