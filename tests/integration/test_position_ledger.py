"""
Storage constraints and the orphan-linking job against SQLite.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from copytrade.config.config import Config
from copytrade.domain.models import CloseReason, Position, PositionStatus, Side, SignalStatus, utc_now
from copytrade.domain.settings import AdminSettings, SettingsMode, UserSettings
from copytrade.exceptions import DuplicatePositionError
from copytrade.services import operator_jobs
from copytrade.storage.repository import (
    count_open_positions,
    get_position,
    get_today_realized_pnl,
    get_unlinked_signals,
    insert_position,
    list_user_ids,
    load_admin_settings,
    load_user_settings,
    mark_signal,
    register_signal,
    save_admin_settings,
    save_user_settings,
    update_position,
)
from tests.helpers import make_signal


def _position(status=PositionStatus.OPEN, **overrides) -> Position:
    values = dict(
        user_id="user-1",
        symbol="BTCUSDT",
        side=Side.LONG,
        entry_price=Decimal("100000"),
        quantity=Decimal("0.001"),
        leverage=10,
        opened_at=utc_now() - timedelta(hours=1),
        status=status,
    )
    values.update(overrides)
    return Position(**values)


def test_second_open_position_same_symbol_side_rejected(sqlite_db):
    insert_position(_position())
    with pytest.raises(DuplicatePositionError):
        insert_position(_position())
    assert count_open_positions("user-1") == 1


def test_other_side_user_or_closed_rows_allowed(sqlite_db):
    insert_position(_position())
    insert_position(_position(side=Side.SHORT))
    insert_position(_position(user_id="user-2"))
    insert_position(_position(status=PositionStatus.CLOSED, closed_at=utc_now()))
    assert count_open_positions("user-1") == 2


def test_closing_frees_the_slot(sqlite_db):
    position = _position()
    insert_position(position)
    position.status = PositionStatus.CLOSED
    position.closed_at = utc_now()
    update_position(position)

    insert_position(_position())

    assert count_open_positions("user-1") == 1


def test_register_signal_is_idempotent(sqlite_db):
    signal_id, status, created = register_signal(make_signal())
    again_id, again_status, again_created = register_signal(make_signal())

    assert created and not again_created
    assert again_id == signal_id
    assert status == again_status == SignalStatus.PENDING


def test_today_pnl_only_counts_today(sqlite_db):
    now = utc_now()
    insert_position(_position(status=PositionStatus.CLOSED, realized_pnl=Decimal("-120"), closed_at=now))
    insert_position(_position(
        status=PositionStatus.CLOSED,
        realized_pnl=Decimal("-900"),
        closed_at=now - timedelta(days=2),
    ))
    assert get_today_realized_pnl("user-1", now=now) == Decimal("-120")


def test_settings_round_trip(sqlite_db):
    save_admin_settings(AdminSettings(max_open_positions=7))
    save_user_settings(UserSettings(user_id="user-9", money_mode=SettingsMode.CUSTOM, default_leverage=5))

    assert load_admin_settings().max_open_positions == 7
    user = load_user_settings("user-9")
    assert user.money_mode == SettingsMode.CUSTOM
    assert user.default_leverage == 5
    assert user.max_open_positions is None
    assert load_user_settings("nobody") is None
    assert "user-9" in list_user_ids()


def test_link_orphans_links_both_sides(sqlite_db):
    opened_at = utc_now().replace(microsecond=0) - timedelta(hours=5)
    signal = make_signal(timestamp=opened_at - timedelta(minutes=2), price="100400", tier="A", mode="swing")
    register_signal(signal)
    mark_signal(signal.id, SignalStatus.FAILED, error_message="entry timeout")
    orphan = _position(
        status=PositionStatus.CLOSED,
        opened_at=opened_at,
        close_price=Decimal("103000"),
        close_reason=CloseReason.IMPORTED,
        closed_at=opened_at + timedelta(hours=1),
    )
    insert_position(orphan)

    first = operator_jobs.link_orphans("user-1", config=Config())
    second = operator_jobs.link_orphans("user-1", config=Config())

    assert first.as_dict() == {"checked": 1, "updated": 1, "created": 0, "deleted": 0, "skipped": 0}
    assert second.checked == 0
    stored = get_position(orphan.id)
    assert stored.signal_id == signal.id
    assert stored.metadata["tier"] == "A"
    assert stored.metadata["match_quality"]["time_diff_seconds"] == 120.0
    assert get_unlinked_signals("user-1") == []


def test_link_orphans_leaves_distant_positions(sqlite_db):
    opened_at = utc_now().replace(microsecond=0) - timedelta(hours=5)
    register_signal(make_signal(timestamp=opened_at - timedelta(minutes=30)))
    insert_position(_position(
        status=PositionStatus.CLOSED,
        opened_at=opened_at,
        close_price=Decimal("103000"),
        closed_at=opened_at + timedelta(hours=1),
    ))

    summary = operator_jobs.link_orphans(config=Config())

    assert summary.updated == 0
    assert summary.skipped == 1
    assert len(get_unlinked_signals("user-1")) == 1
