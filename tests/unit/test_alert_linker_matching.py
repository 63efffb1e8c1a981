"""
Tests for linking orphaned closed positions to their originating alerts.
"""
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from copytrade.config.config import LinkingConfig
from copytrade.domain.models import CloseReason, Position, PositionStatus, Side
from copytrade.reconciliation.alert_linker import AlertLinker, price_diff_percent
from tests.helpers import NOW, make_signal

MODULE = "copytrade.reconciliation.alert_linker"


def _orphan(opened_at=NOW, entry="100000", symbol="BTCUSDT", side=Side.LONG, user_id="user-1") -> Position:
    return Position(
        user_id=user_id,
        symbol=symbol,
        side=side,
        entry_price=Decimal(entry),
        quantity=Decimal("0.001"),
        leverage=10,
        opened_at=opened_at,
        status=PositionStatus.CLOSED,
        close_price=Decimal("103000"),
        close_reason=CloseReason.IMPORTED,
        closed_at=opened_at + timedelta(hours=1),
    )


@pytest.fixture
def linker():
    return AlertLinker(LinkingConfig(), event_recorder=MagicMock())


class TestDistance:
    def test_candidate_within_tolerances(self, linker):
        signal = make_signal(symbol="BTCUSDT.P", price="100500", timestamp=NOW - timedelta(minutes=2))
        assert linker.distance(_orphan(), signal) == 120.0

    def test_side_must_agree(self, linker):
        assert linker.distance(_orphan(), make_signal(side=Side.SHORT)) is None

    def test_price_outside_tolerance(self, linker):
        assert linker.distance(_orphan(), make_signal(price="102500")) is None

    def test_time_outside_tolerance(self, linker):
        assert linker.distance(_orphan(), make_signal(timestamp=NOW + timedelta(minutes=11))) is None


def test_price_diff_percent():
    assert price_diff_percent(Decimal("100000"), Decimal("101000")) == Decimal("1")


def test_orphans_link_to_nearest_signals(linker):
    first = _orphan(opened_at=NOW)
    second = _orphan(opened_at=NOW + timedelta(minutes=6))
    near_first = make_signal(timestamp=NOW + timedelta(minutes=1))
    near_second = make_signal(timestamp=NOW + timedelta(minutes=5))

    with patch(f"{MODULE}.get_closed_positions_without_signal", return_value=[first, second]), \
         patch(f"{MODULE}.get_unlinked_signals", return_value=[near_second, near_first]) as get_signals, \
         patch(f"{MODULE}.link_position_to_signal") as link:
        summary = linker.link_orphans("user-1")

    assert summary.as_dict() == {"checked": 2, "updated": 2, "created": 0, "deleted": 0, "skipped": 0}
    assert first.signal_id == near_first.id
    assert second.signal_id == near_second.id
    assert link.call_count == 2
    assert get_signals.call_args[1]["since"] == NOW - timedelta(minutes=10)
    quality = first.metadata["match_quality"]
    assert quality["time_diff_seconds"] == 60.0
    assert quality["price_diff_percent"] == "0.0000"
    assert first.metadata["corrections"][0]["source"] == "link_orphans"


def test_signal_links_at_most_once(linker):
    a = _orphan(opened_at=NOW)
    b = _orphan(opened_at=NOW + timedelta(minutes=1))
    only = make_signal(timestamp=NOW + timedelta(minutes=1))

    with patch(f"{MODULE}.get_closed_positions_without_signal", return_value=[a, b]), \
         patch(f"{MODULE}.get_unlinked_signals", return_value=[only]), \
         patch(f"{MODULE}.link_position_to_signal"):
        summary = linker.link_orphans()

    assert summary.updated == 1
    assert summary.skipped == 1
    assert b.signal_id == only.id
    assert a.signal_id is None


def test_orphans_grouped_per_user(linker):
    mine = _orphan(user_id="user-1")
    theirs = _orphan(user_id="user-2")

    with patch(f"{MODULE}.get_closed_positions_without_signal", return_value=[theirs, mine]), \
         patch(f"{MODULE}.get_unlinked_signals", return_value=[]) as get_signals, \
         patch(f"{MODULE}.link_position_to_signal"):
        summary = linker.link_orphans()

    assert summary.skipped == 2
    assert [c[0][0] for c in get_signals.call_args_list] == ["user-1", "user-2"]
