"""
Auditable position corrections.

Every change the reconciler or a repair job makes to a stored position goes
through ``apply_correction``. It writes only fields whose value actually
differs and appends an entry to ``metadata["corrections"]`` recording the old
and new value of each. A correction with nothing to change is a no-op and
leaves no trace, which is what makes repeated reconciliation runs converge.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from copytrade.domain.models import Position, utc_now

CORRECTABLE_FIELDS = frozenset({
    "entry_price",
    "quantity",
    "leverage",
    "status",
    "close_price",
    "close_reason",
    "realized_pnl",
    "opened_at",
    "closed_at",
    "sl_price",
    "tp1_price",
    "tp2_price",
    "tp3_price",
    "signal_id",
})


def _same(old: Any, new: Any) -> bool:
    if old is None or new is None:
        return old is new
    if isinstance(old, Decimal) or isinstance(new, Decimal):
        return Decimal(str(old)) == Decimal(str(new))
    if isinstance(old, datetime) and isinstance(new, datetime):
        return old.replace(microsecond=0) == new.replace(microsecond=0)
    return old == new


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def apply_correction(
    position: Position,
    changes: dict[str, Any],
    *,
    source: str,
    at: Optional[datetime] = None,
    flags: Optional[dict[str, Any]] = None,
) -> dict[str, tuple[Any, Any]]:
    """
    Apply field changes to a position and log them in its metadata.

    Args:
        position: Position to mutate in place
        changes: field name -> new value
        source: Who made the change (e.g. "reconcile", "repair_quantity")
        at: Correction timestamp (defaults to now)
        flags: Metadata keys to set alongside a non-empty correction

    Returns:
        field -> (old, new) for every field that actually changed
    """
    unknown = set(changes) - CORRECTABLE_FIELDS
    if unknown:
        raise ValueError(f"Not correctable: {sorted(unknown)}")

    applied: dict[str, tuple[Any, Any]] = {}
    for name, new_value in changes.items():
        old_value = getattr(position, name)
        if _same(old_value, new_value):
            continue
        setattr(position, name, new_value)
        applied[name] = (old_value, new_value)

    if not applied:
        return applied

    metadata = dict(position.metadata or {})
    history = list(metadata.get("corrections", []))
    history.append({
        "at": (at or utc_now()).isoformat(),
        "source": source,
        "fields": {k: {"old": _jsonable(o), "new": _jsonable(n)} for k, (o, n) in applied.items()},
    })
    metadata["corrections"] = history
    if flags:
        metadata.update(flags)
    position.metadata = metadata
    return applied
