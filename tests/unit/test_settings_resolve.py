"""
Tests for resolving user settings against the admin defaults.
"""
from decimal import Decimal

import pytest

from copytrade.domain.settings import (
    FILTER_FIELDS,
    SIZING_FIELDS,
    AdminSettings,
    SettingsMode,
    UserSettings,
    resolve,
)
from copytrade.exceptions import SettingsResolutionError


@pytest.fixture
def admin():
    return AdminSettings(max_open_positions=5, default_leverage=20, simple_sl_percent=Decimal("2"))


def test_copy_admin_takes_every_admin_value(admin):
    user = UserSettings(user_id="u1", max_open_positions=1, default_leverage=3)
    effective = resolve(user, admin)

    assert effective.max_open_positions == 5
    assert effective.default_leverage == 20
    assert effective.user_id == "u1"
    assert set(effective.sources.values()) == {"admin"}


def test_custom_group_uses_user_values(admin):
    user = UserSettings(
        user_id="u1",
        money_mode=SettingsMode.CUSTOM,
        max_open_positions=1,
        simple_sl_percent=Decimal("4"),
    )
    effective = resolve(user, admin)

    assert effective.max_open_positions == 1
    assert effective.sources["max_open_positions"] == "user"
    # sltp group is still copy_admin
    assert effective.simple_sl_percent == Decimal("2")
    assert effective.sources["simple_sl_percent"] == "admin"


def test_custom_group_falls_back_per_field(admin):
    user = UserSettings(user_id="u1", money_mode=SettingsMode.CUSTOM, max_open_positions=2)
    effective = resolve(user, admin)

    assert effective.max_open_positions == 2
    assert effective.default_leverage == 20
    assert effective.sources["default_leverage"] == "admin"


def test_groups_are_independent(admin):
    user = UserSettings(
        user_id="u1",
        tier_mode=SettingsMode.CUSTOM,
        filter_by_tier=True,
        excluded_tiers=["C"],
        max_open_positions=9,
    )
    effective = resolve(user, admin)

    assert effective.filter_by_tier is True
    assert effective.excluded_tiers == ["C"]
    assert effective.max_open_positions == 5
    assert all(effective.sources[f] == "user" for f in ("filter_by_tier", "excluded_tiers"))


def test_sources_cover_every_governed_field(admin):
    effective = resolve(UserSettings(user_id="u1"), admin)
    for name in SIZING_FIELDS + FILTER_FIELDS:
        assert name in effective.sources


def test_bot_active_always_comes_from_user(admin):
    effective = resolve(UserSettings(user_id="u1", bot_active=False), admin)
    assert effective.bot_active is False


def test_unresolvable_merge_raises(admin):
    user = UserSettings(
        user_id="u1",
        sltp_mode=SettingsMode.CUSTOM,
        tp1_close_percent=Decimal("80"),
        tp2_close_percent=Decimal("80"),
    )
    with pytest.raises(SettingsResolutionError):
        resolve(user, admin)


def test_snapshot_is_json_friendly(admin):
    snapshot = resolve(UserSettings(user_id="u1"), admin).snapshot()
    assert snapshot["max_open_positions"] == 5
    assert snapshot["simple_sl_percent"] == "2"
