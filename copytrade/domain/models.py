"""
Domain models for the copy-trading engine.

These are the core business objects used throughout the application.
All timestamps use UTC timezone-aware datetimes; all money uses Decimal.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Any
import uuid


class Side(str, Enum):
    """Position side."""
    LONG = "long"
    SHORT = "short"

    @classmethod
    def parse(cls, value: Any) -> "Side":
        """Accept long/short, buy/sell and their upper-case exchange spellings."""
        if isinstance(value, Side):
            return value
        v = str(value or "").strip().lower()
        if v in ("long", "buy"):
            return cls.LONG
        if v in ("short", "sell"):
            return cls.SHORT
        raise ValueError(f"Unknown side: {value!r}")

    @property
    def sign(self) -> Decimal:
        """+1 for long, -1 for short: offsets are added in the favourable direction."""
        return Decimal("1") if self == Side.LONG else Decimal("-1")


class TradeAction(str, Enum):
    """Internal order vocabulary translated by each exchange dialect."""
    OPEN_LONG = "open_long"
    OPEN_SHORT = "open_short"
    CLOSE_LONG = "close_long"
    CLOSE_SHORT = "close_short"

    @classmethod
    def open_for(cls, side: Side) -> "TradeAction":
        return cls.OPEN_LONG if side == Side.LONG else cls.OPEN_SHORT

    @classmethod
    def close_for(cls, side: Side) -> "TradeAction":
        return cls.CLOSE_LONG if side == Side.LONG else cls.CLOSE_SHORT

    @property
    def is_open(self) -> bool:
        return self in (TradeAction.OPEN_LONG, TradeAction.OPEN_SHORT)

    @property
    def side(self) -> Side:
        return Side.LONG if self in (TradeAction.OPEN_LONG, TradeAction.CLOSE_LONG) else Side.SHORT


class BracketKind(str, Enum):
    """Trigger order kind."""
    STOP = "stop"
    PROFIT = "profit"


class OrderLeg(str, Enum):
    """Tagged set of order legs making up one bracketed position."""
    ENTRY = "entry"
    STOP = "stop"
    TP1 = "tp1"
    TP2 = "tp2"
    TP3 = "tp3"


class SignalStatus(str, Enum):
    """Lifecycle of an ingested signal."""
    PENDING = "pending"
    REJECTED = "rejected"
    FAILED = "failed"
    EXECUTED = "executed"


class PositionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class CloseReason(str, Enum):
    """Why a position was closed."""
    SL_HIT = "sl_hit"
    TP1_HIT = "tp1_hit"
    TP2_HIT = "tp2_hit"
    TP3_HIT = "tp3_hit"
    TP_HIT = "tp_hit"
    MANUAL = "manual"
    IMPORTED = "imported"
    UNKNOWN = "unknown"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Signal:
    """
    Trading alert delivered by the ingestion collaborator. Never mutated;
    its processing status lives on the stored signal row.
    """
    user_id: str
    symbol: str
    side: Side
    price: Decimal  # Reference (entry) price
    timestamp: datetime
    id: str = field(default_factory=new_id)

    # Raw levels as sent by the alert source
    sl_price: Optional[Decimal] = None
    tp1_price: Optional[Decimal] = None
    tp2_price: Optional[Decimal] = None
    tp3_price: Optional[Decimal] = None

    atr: Optional[Decimal] = None
    strength: Decimal = Decimal("0")  # [0, 1]
    leverage: Optional[int] = None  # Leverage hint
    volume_ratio: Optional[Decimal] = None
    tier: Optional[str] = None
    mode: Optional[str] = None
    technical: dict = field(default_factory=dict)

    def __post_init__(self):
        """Validate signal."""
        if self.timestamp.tzinfo is None:
            raise ValueError("Signal timestamp must be timezone-aware (UTC)")
        if self.price <= 0:
            raise ValueError(f"Signal price must be positive, got {self.price}")
        if not (Decimal("0") <= self.strength <= Decimal("1")):
            raise ValueError(f"Signal strength must be within [0, 1], got {self.strength}")

    @property
    def idempotency_key(self) -> str:
        """Natural key detecting a re-delivered alert: user + symbol + side + timestamp."""
        ts = self.timestamp.astimezone(timezone.utc).isoformat()
        return f"{self.user_id}:{self.symbol.upper()}:{self.side.value}:{ts}"

    def to_alert_data(self) -> dict:
        """JSON-friendly copy stored on the position for audit."""
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side.value,
            "price": str(self.price),
            "timestamp": self.timestamp.isoformat(),
            "sl_price": str(self.sl_price) if self.sl_price is not None else None,
            "tp1_price": str(self.tp1_price) if self.tp1_price is not None else None,
            "tp2_price": str(self.tp2_price) if self.tp2_price is not None else None,
            "tp3_price": str(self.tp3_price) if self.tp3_price is not None else None,
            "atr": str(self.atr) if self.atr is not None else None,
            "strength": str(self.strength),
            "leverage": self.leverage,
            "tier": self.tier,
            "mode": self.mode,
        }


@dataclass
class Position:
    """
    Durable record of one copied position.
    """
    user_id: str
    symbol: str
    side: Side
    entry_price: Decimal
    quantity: Decimal
    leverage: int
    opened_at: datetime
    id: str = field(default_factory=new_id)
    status: PositionStatus = PositionStatus.OPEN

    sl_price: Optional[Decimal] = None
    sl_order_id: Optional[str] = None
    tp1_price: Optional[Decimal] = None
    tp1_quantity: Optional[Decimal] = None
    tp1_order_id: Optional[str] = None
    tp2_price: Optional[Decimal] = None
    tp2_quantity: Optional[Decimal] = None
    tp2_order_id: Optional[str] = None
    tp3_price: Optional[Decimal] = None
    tp3_quantity: Optional[Decimal] = None
    tp3_order_id: Optional[str] = None

    close_price: Optional[Decimal] = None
    close_reason: Optional[CloseReason] = None
    realized_pnl: Optional[Decimal] = None
    closed_at: Optional[datetime] = None

    signal_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def tp_prices(self) -> list[tuple[CloseReason, Decimal]]:
        """Configured TP levels, furthest first (TP3, TP2, TP1)."""
        levels = [
            (CloseReason.TP3_HIT, self.tp3_price),
            (CloseReason.TP2_HIT, self.tp2_price),
            (CloseReason.TP1_HIT, self.tp1_price),
        ]
        return [(reason, price) for reason, price in levels if price is not None]

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN


@dataclass(frozen=True)
class ExchangeHistoryEntry:
    """
    One closed position as reported by the exchange. Source of truth during
    reconciliation; never persisted verbatim.
    """
    symbol: str
    side: Side
    open_price: Decimal
    close_price: Decimal
    quantity: Decimal
    leverage: int
    net_profit: Decimal  # Fee-inclusive realized P&L
    opened_at: datetime
    closed_at: datetime
    close_type: Optional[str] = None
    venue_position_id: Optional[str] = None


@dataclass
class HistoryPage:
    """One page of exchange history plus the cursor for the next page."""
    entries: list[ExchangeHistoryEntry]
    next_cursor: Optional[str] = None


@dataclass(frozen=True)
class SLTPLevels:
    """Stop-loss and up to three take-profit prices."""
    stop_loss: Decimal
    tp1: Optional[Decimal] = None
    tp2: Optional[Decimal] = None
    tp3: Optional[Decimal] = None

    def take_profits(self) -> list[tuple[OrderLeg, Decimal]]:
        levels = [(OrderLeg.TP1, self.tp1), (OrderLeg.TP2, self.tp2), (OrderLeg.TP3, self.tp3)]
        return [(leg, price) for leg, price in levels if price is not None]


@dataclass(frozen=True)
class SizeAdjustment:
    quantity: Decimal
    notional: Decimal
    was_adjusted: bool


@dataclass
class LegResult:
    """Outcome of one order leg: an order id, or the reason it is missing."""
    leg: OrderLeg
    order_id: Optional[str] = None
    error: Optional[str] = None
    price: Optional[Decimal] = None
    quantity: Optional[Decimal] = None

    @property
    def ok(self) -> bool:
        return self.order_id is not None


@dataclass(frozen=True)
class AdmissionResult:
    """Result of admit_and_execute()."""
    accepted: bool
    position_id: Optional[str] = None
    rejection_reason: Optional[str] = None


@dataclass
class JobSummary:
    """Counts returned by every operator job."""
    checked: int = 0
    updated: int = 0
    created: int = 0
    deleted: int = 0
    skipped: int = 0

    def as_dict(self) -> dict:
        return {
            "checked": self.checked,
            "updated": self.updated,
            "created": self.created,
            "deleted": self.deleted,
            "skipped": self.skipped,
        }

    def merge(self, other: "JobSummary") -> "JobSummary":
        return JobSummary(
            checked=self.checked + other.checked,
            updated=self.updated + other.updated,
            created=self.created + other.created,
            deleted=self.deleted + other.deleted,
            skipped=self.skipped + other.skipped,
        )
