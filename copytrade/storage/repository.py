"""
Persistence functions for signals, positions, settings and audit events.

Provides repository pattern for clean data access. All queries live here;
callers work with the dataclasses in copytrade.domain.models.
"""
from sqlalchemy import Column, String, Numeric, DateTime, Integer, Index, JSON, text, func
from sqlalchemy.exc import IntegrityError
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Dict, Tuple, Any
import json

from copytrade.storage.db import Base, get_db
from copytrade.domain.models import (
    CloseReason,
    Position,
    PositionStatus,
    Side,
    Signal,
    SignalStatus,
    utc_now,
)
from copytrade.domain.settings import AdminSettings, UserSettings
from copytrade.exceptions import DuplicatePositionError

ADMIN_SETTINGS_OWNER = "__admin__"


class PositionModel(Base):
    """ORM model for the position ledger."""
    __tablename__ = "positions"
    __table_args__ = (
        # At most one open position per (user, symbol, side)
        Index(
            "uq_positions_open_user_symbol_side",
            "user_id", "symbol", "side",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
        Index("idx_positions_user_status", "user_id", "status"),
        Index("idx_positions_user_closed_at", "user_id", "closed_at"),
    )

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    status = Column(String, nullable=False, default=PositionStatus.OPEN.value)

    entry_price = Column(Numeric(precision=20, scale=8), nullable=False)
    quantity = Column(Numeric(precision=20, scale=8), nullable=False)
    leverage = Column(Integer, nullable=False)

    sl_price = Column(Numeric(precision=20, scale=8), nullable=True)
    sl_order_id = Column(String, nullable=True)
    tp1_price = Column(Numeric(precision=20, scale=8), nullable=True)
    tp1_quantity = Column(Numeric(precision=20, scale=8), nullable=True)
    tp1_order_id = Column(String, nullable=True)
    tp2_price = Column(Numeric(precision=20, scale=8), nullable=True)
    tp2_quantity = Column(Numeric(precision=20, scale=8), nullable=True)
    tp2_order_id = Column(String, nullable=True)
    tp3_price = Column(Numeric(precision=20, scale=8), nullable=True)
    tp3_quantity = Column(Numeric(precision=20, scale=8), nullable=True)
    tp3_order_id = Column(String, nullable=True)

    close_price = Column(Numeric(precision=20, scale=8), nullable=True)
    close_reason = Column(String, nullable=True)
    realized_pnl = Column(Numeric(precision=20, scale=8), nullable=True)

    opened_at = Column(DateTime, nullable=False)
    closed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=lambda: datetime.now(timezone.utc).replace(tzinfo=None))

    signal_id = Column(String, nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)


class SignalModel(Base):
    """ORM model for ingested signals and their processing outcome."""
    __tablename__ = "signals"
    __table_args__ = (
        Index("uq_signals_idempotency_key", "idempotency_key", unique=True),
        Index("idx_signals_user_time", "user_id", "timestamp"),
    )

    id = Column(String, primary_key=True)
    idempotency_key = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    price = Column(Numeric(precision=20, scale=8), nullable=False)
    timestamp = Column(DateTime, nullable=False)

    sl_price = Column(Numeric(precision=20, scale=8), nullable=True)
    tp1_price = Column(Numeric(precision=20, scale=8), nullable=True)
    tp2_price = Column(Numeric(precision=20, scale=8), nullable=True)
    tp3_price = Column(Numeric(precision=20, scale=8), nullable=True)
    atr = Column(Numeric(precision=20, scale=8), nullable=True)
    strength = Column(Numeric(precision=6, scale=4), nullable=False, default=0)
    leverage = Column(Integer, nullable=True)
    volume_ratio = Column(Numeric(precision=12, scale=4), nullable=True)
    tier = Column(String, nullable=True)
    mode = Column(String, nullable=True)
    technical = Column(JSON, nullable=False, default=dict)

    status = Column(String, nullable=False, default=SignalStatus.PENDING.value)
    error_message = Column(String, nullable=True)
    position_id = Column(String, nullable=True)
    latency_ms = Column(Integer, nullable=True)
    processed_at = Column(DateTime, nullable=True)


class SettingsModel(Base):
    """Stored settings records: one admin default row plus one row per user."""
    __tablename__ = "settings"

    owner = Column(String, primary_key=True)  # user id, or ADMIN_SETTINGS_OWNER
    payload = Column(JSON, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class SystemEventModel(Base):
    """ORM model for audit events (rejections, corrections, deletions)."""
    __tablename__ = "system_events"
    __table_args__ = (
        Index('idx_event_type_time', 'event_type', 'timestamp'),
        Index('idx_event_user_time', 'user_id', 'timestamp'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, nullable=False)
    event_type = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    user_id = Column(String, nullable=True)
    details = Column(String, nullable=False)  # JSON string


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------

def _naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Store UTC as naive datetimes (portable across SQLite and Postgres)."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _aware_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)


def _dec(value) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def _json_default(obj):
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "value"):  # Enum
        return obj.value
    raise TypeError(f"Not JSON serializable: {type(obj)!r}")


def _jsonable(data: Dict) -> Dict:
    """Round-trip through json so the JSON column only ever sees plain types."""
    return json.loads(json.dumps(data or {}, default=_json_default))


def _position_from_model(pm: PositionModel) -> Position:
    return Position(
        id=pm.id,
        user_id=pm.user_id,
        symbol=pm.symbol,
        side=Side(pm.side),
        status=PositionStatus(pm.status),
        entry_price=_dec(pm.entry_price),
        quantity=_dec(pm.quantity),
        leverage=int(pm.leverage),
        sl_price=_dec(pm.sl_price),
        sl_order_id=pm.sl_order_id,
        tp1_price=_dec(pm.tp1_price),
        tp1_quantity=_dec(pm.tp1_quantity),
        tp1_order_id=pm.tp1_order_id,
        tp2_price=_dec(pm.tp2_price),
        tp2_quantity=_dec(pm.tp2_quantity),
        tp2_order_id=pm.tp2_order_id,
        tp3_price=_dec(pm.tp3_price),
        tp3_quantity=_dec(pm.tp3_quantity),
        tp3_order_id=pm.tp3_order_id,
        close_price=_dec(pm.close_price),
        close_reason=CloseReason(pm.close_reason) if pm.close_reason else None,
        realized_pnl=_dec(pm.realized_pnl),
        opened_at=_aware_utc(pm.opened_at),
        closed_at=_aware_utc(pm.closed_at),
        signal_id=pm.signal_id,
        metadata=dict(pm.meta or {}),
    )


def _copy_position_fields(pm: PositionModel, position: Position) -> None:
    pm.user_id = position.user_id
    pm.symbol = position.symbol
    pm.side = position.side.value
    pm.status = position.status.value
    pm.entry_price = position.entry_price
    pm.quantity = position.quantity
    pm.leverage = position.leverage
    pm.sl_price = position.sl_price
    pm.sl_order_id = position.sl_order_id
    pm.tp1_price = position.tp1_price
    pm.tp1_quantity = position.tp1_quantity
    pm.tp1_order_id = position.tp1_order_id
    pm.tp2_price = position.tp2_price
    pm.tp2_quantity = position.tp2_quantity
    pm.tp2_order_id = position.tp2_order_id
    pm.tp3_price = position.tp3_price
    pm.tp3_quantity = position.tp3_quantity
    pm.tp3_order_id = position.tp3_order_id
    pm.close_price = position.close_price
    pm.close_reason = position.close_reason.value if position.close_reason else None
    pm.realized_pnl = position.realized_pnl
    pm.opened_at = _naive_utc(position.opened_at)
    pm.closed_at = _naive_utc(position.closed_at)
    pm.signal_id = position.signal_id
    pm.meta = _jsonable(position.metadata)
    pm.updated_at = _naive_utc(utc_now())


def _signal_from_model(sm: SignalModel) -> Signal:
    return Signal(
        id=sm.id,
        user_id=sm.user_id,
        symbol=sm.symbol,
        side=Side(sm.side),
        price=_dec(sm.price),
        timestamp=_aware_utc(sm.timestamp),
        sl_price=_dec(sm.sl_price),
        tp1_price=_dec(sm.tp1_price),
        tp2_price=_dec(sm.tp2_price),
        tp3_price=_dec(sm.tp3_price),
        atr=_dec(sm.atr),
        strength=_dec(sm.strength) if sm.strength is not None else Decimal("0"),
        leverage=sm.leverage,
        volume_ratio=_dec(sm.volume_ratio),
        tier=sm.tier,
        mode=sm.mode,
        technical=dict(sm.technical or {}),
    )


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

def register_signal(signal: Signal) -> Tuple[str, SignalStatus, bool]:
    """
    Store a signal unless one with the same idempotency key exists.

    Returns:
        (stored signal id, stored status, created) - a re-delivered alert
        returns the original row's id and status with created=False.
    """
    existing = _find_signal_by_key(signal.idempotency_key)
    if existing is not None:
        return existing[0], existing[1], False

    db = get_db()
    try:
        with db.get_session() as session:
            session.add(_signal_model(signal))
    except IntegrityError:
        # Lost a race against a concurrent delivery of the same alert
        existing = _find_signal_by_key(signal.idempotency_key)
        if existing is None:
            raise
        return existing[0], existing[1], False
    return signal.id, SignalStatus.PENDING, True


def _find_signal_by_key(idempotency_key: str) -> Optional[Tuple[str, SignalStatus]]:
    db = get_db()
    with db.get_session() as session:
        sm = session.query(SignalModel).filter(SignalModel.idempotency_key == idempotency_key).first()
        return (sm.id, SignalStatus(sm.status)) if sm else None


def _signal_model(signal: Signal) -> SignalModel:
    return SignalModel(
        id=signal.id,
        idempotency_key=signal.idempotency_key,
        user_id=signal.user_id,
        symbol=signal.symbol,
        side=signal.side.value,
        price=signal.price,
        timestamp=_naive_utc(signal.timestamp),
        sl_price=signal.sl_price,
        tp1_price=signal.tp1_price,
        tp2_price=signal.tp2_price,
        tp3_price=signal.tp3_price,
        atr=signal.atr,
        strength=signal.strength,
        leverage=signal.leverage,
        volume_ratio=signal.volume_ratio,
        tier=signal.tier,
        mode=signal.mode,
        technical=_jsonable(signal.technical),
        status=SignalStatus.PENDING.value,
    )


def mark_signal(
    signal_id: str,
    status: SignalStatus,
    *,
    error_message: Optional[str] = None,
    position_id: Optional[str] = None,
    latency_ms: Optional[int] = None,
) -> None:
    """Record the processing outcome of a signal."""
    db = get_db()
    with db.get_session() as session:
        sm = session.query(SignalModel).filter(SignalModel.id == signal_id).first()
        if sm is None:
            raise KeyError(f"Signal {signal_id} not found")
        sm.status = status.value
        sm.error_message = error_message
        if position_id is not None:
            sm.position_id = position_id
        if latency_ms is not None:
            sm.latency_ms = latency_ms
        sm.processed_at = _naive_utc(utc_now())


def get_signal_status(signal_id: str) -> Optional[Dict[str, Any]]:
    """Status row for one signal, or None."""
    db = get_db()
    with db.get_session() as session:
        sm = session.query(SignalModel).filter(SignalModel.id == signal_id).first()
        if sm is None:
            return None
        return {
            "status": SignalStatus(sm.status),
            "error_message": sm.error_message,
            "position_id": sm.position_id,
            "latency_ms": sm.latency_ms,
        }


def get_unlinked_signals(user_id: str, since: Optional[datetime] = None) -> List[Signal]:
    """Signals of a user that are not yet linked to any position."""
    db = get_db()
    with db.get_session() as session:
        query = session.query(SignalModel).filter(
            SignalModel.user_id == user_id,
            SignalModel.position_id.is_(None),
        )
        if since is not None:
            query = query.filter(SignalModel.timestamp >= _naive_utc(since))
        return [_signal_from_model(sm) for sm in query.order_by(SignalModel.timestamp).all()]


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------

def insert_position(position: Position) -> None:
    """
    Insert a new position.

    Raises:
        DuplicatePositionError: an open position already exists for
            (user, symbol, side); enforced by the partial unique index
    """
    db = get_db()
    try:
        with db.get_session() as session:
            pm = PositionModel(id=position.id)
            _copy_position_fields(pm, position)
            session.add(pm)
    except IntegrityError as e:
        if position.status == PositionStatus.OPEN:
            raise DuplicatePositionError(position.user_id, position.symbol, position.side.value) from e
        raise


def update_position(position: Position) -> None:
    """Overwrite a stored position with the given state."""
    db = get_db()
    with db.get_session() as session:
        pm = session.query(PositionModel).filter(PositionModel.id == position.id).first()
        if pm is None:
            raise KeyError(f"Position {position.id} not found")
        _copy_position_fields(pm, position)


def delete_position(position_id: str) -> None:
    """Delete a position (reconciliation only)."""
    db = get_db()
    with db.get_session() as session:
        session.query(PositionModel).filter(PositionModel.id == position_id).delete()


def get_position(position_id: str) -> Optional[Position]:
    db = get_db()
    with db.get_session() as session:
        pm = session.query(PositionModel).filter(PositionModel.id == position_id).first()
        return _position_from_model(pm) if pm else None


def get_open_positions(user_id: str) -> List[Position]:
    """Open positions of a user, oldest first."""
    db = get_db()
    with db.get_session() as session:
        rows = session.query(PositionModel).filter(
            PositionModel.user_id == user_id,
            PositionModel.status == PositionStatus.OPEN.value,
        ).order_by(PositionModel.opened_at).all()
        return [_position_from_model(pm) for pm in rows]


def count_open_positions(user_id: str) -> int:
    db = get_db()
    with db.get_session() as session:
        return session.query(PositionModel).filter(
            PositionModel.user_id == user_id,
            PositionModel.status == PositionStatus.OPEN.value,
        ).count()


def get_today_realized_pnl(user_id: str, now: Optional[datetime] = None) -> Decimal:
    """Sum of realized P&L of the user's positions closed since 00:00 UTC."""
    now = now or utc_now()
    day_start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    db = get_db()
    with db.get_session() as session:
        total = session.query(func.coalesce(func.sum(PositionModel.realized_pnl), 0)).filter(
            PositionModel.user_id == user_id,
            PositionModel.status == PositionStatus.CLOSED.value,
            PositionModel.closed_at >= _naive_utc(day_start),
        ).scalar()
    return Decimal(str(total or 0))


def get_closed_positions(
    user_id: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> List[Position]:
    """Closed positions, optionally scoped to a user and a closed_at window."""
    db = get_db()
    with db.get_session() as session:
        query = session.query(PositionModel).filter(PositionModel.status == PositionStatus.CLOSED.value)
        if user_id is not None:
            query = query.filter(PositionModel.user_id == user_id)
        if since is not None:
            query = query.filter(PositionModel.closed_at >= _naive_utc(since))
        if until is not None:
            query = query.filter(PositionModel.closed_at <= _naive_utc(until))
        return [_position_from_model(pm) for pm in query.order_by(PositionModel.closed_at).all()]


def get_closed_positions_without_signal(user_id: Optional[str] = None) -> List[Position]:
    """Closed positions with no originating signal recorded."""
    db = get_db()
    with db.get_session() as session:
        query = session.query(PositionModel).filter(
            PositionModel.status == PositionStatus.CLOSED.value,
            PositionModel.signal_id.is_(None),
        )
        if user_id is not None:
            query = query.filter(PositionModel.user_id == user_id)
        return [_position_from_model(pm) for pm in query.order_by(PositionModel.opened_at).all()]


def link_position_to_signal(position: Position, signal_id: str) -> None:
    """
    Bidirectional link: position.signal_id and signal.position_id, one transaction.
    The position's metadata is written as given.
    """
    db = get_db()
    with db.get_session() as session:
        pm = session.query(PositionModel).filter(PositionModel.id == position.id).first()
        sm = session.query(SignalModel).filter(SignalModel.id == signal_id).first()
        if pm is None or sm is None:
            raise KeyError(f"Cannot link position {position.id} to signal {signal_id}")
        pm.signal_id = signal_id
        pm.meta = _jsonable(position.metadata)
        pm.updated_at = _naive_utc(utc_now())
        sm.position_id = position.id


def list_user_ids() -> List[str]:
    """Users with stored settings or positions."""
    db = get_db()
    with db.get_session() as session:
        from_settings = {
            owner for (owner,) in session.query(SettingsModel.owner).all()
            if owner != ADMIN_SETTINGS_OWNER
        }
        from_positions = {uid for (uid,) in session.query(PositionModel.user_id).distinct().all()}
    return sorted(from_settings | from_positions)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

def save_admin_settings(settings: AdminSettings) -> None:
    _save_settings(ADMIN_SETTINGS_OWNER, settings.model_dump(mode="json"))


def save_user_settings(settings: UserSettings) -> None:
    _save_settings(settings.user_id, settings.model_dump(mode="json", exclude_none=True))


def _save_settings(owner: str, payload: Dict) -> None:
    db = get_db()
    with db.get_session() as session:
        row = session.query(SettingsModel).filter(SettingsModel.owner == owner).first()
        if row is None:
            session.add(SettingsModel(owner=owner, payload=payload, updated_at=_naive_utc(utc_now())))
        else:
            row.payload = payload
            row.updated_at = _naive_utc(utc_now())


def load_admin_settings() -> AdminSettings:
    """Admin defaults; the built-in defaults when no admin row exists."""
    payload = _load_settings(ADMIN_SETTINGS_OWNER)
    return AdminSettings(**payload) if payload is not None else AdminSettings()


def load_user_settings(user_id: str) -> Optional[UserSettings]:
    payload = _load_settings(user_id)
    if payload is None:
        return None
    return UserSettings(**{**payload, "user_id": user_id})


def _load_settings(owner: str) -> Optional[Dict]:
    db = get_db()
    with db.get_session() as session:
        row = session.query(SettingsModel).filter(SettingsModel.owner == owner).first()
        return dict(row.payload) if row else None


# ---------------------------------------------------------------------------
# Audit events
# ---------------------------------------------------------------------------

def record_event(
    event_type: str,
    symbol: str,
    details: Dict,
    user_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> None:
    """
    Record an audit event.

    Args:
        event_type: Type of event (e.g. SIGNAL_REJECTED, RECONCILE_UNVERIFIED_DELETED)
        symbol: Related symbol
        details: Dictionary of details (JSON serialized)
        user_id: Owning user, if any
        timestamp: Optional explicit timestamp
    """
    db = get_db()
    with db.get_session() as session:
        session.add(SystemEventModel(
            timestamp=_naive_utc(timestamp or utc_now()),
            event_type=event_type,
            symbol=symbol,
            user_id=user_id,
            details=json.dumps(details, default=_json_default),
        ))


def get_recent_events(limit: int = 50, event_type: Optional[str] = None) -> List[Dict]:
    """Most recent audit events, newest first."""
    db = get_db()
    with db.get_session() as session:
        query = session.query(SystemEventModel)
        if event_type:
            query = query.filter(SystemEventModel.event_type == event_type)
        rows = query.order_by(SystemEventModel.timestamp.desc(), SystemEventModel.id.desc()).limit(limit).all()
        return [
            {
                "timestamp": _aware_utc(row.timestamp),
                "event_type": row.event_type,
                "symbol": row.symbol,
                "user_id": row.user_id,
                "details": json.loads(row.details),
            }
            for row in rows
        ]
