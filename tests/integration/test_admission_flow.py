"""
End-to-end signal admission against an in-memory SQLite ledger and a fake exchange.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from copytrade.domain.models import (
    CloseReason,
    Position,
    PositionStatus,
    Side,
    SignalStatus,
    utc_now,
)
from copytrade.domain.settings import EffectiveSettings, SettingsMode, UserSettings
from copytrade.exceptions import APIError
from copytrade.services.trading_service import admit_and_execute, admit_for_user
from copytrade.storage.repository import (
    get_position,
    get_recent_events,
    get_signal_status,
    insert_position,
    save_user_settings,
)
from tests.helpers import make_signal


def _open_position(symbol: str, user_id: str = "user-1", side: Side = Side.LONG) -> Position:
    return Position(
        user_id=user_id,
        symbol=symbol,
        side=side,
        entry_price=Decimal("10"),
        quantity=Decimal("10"),
        leverage=10,
        opened_at=utc_now() - timedelta(hours=1),
    )


def _settings(**overrides) -> EffectiveSettings:
    return EffectiveSettings(user_id="user-1", **overrides)


@pytest.mark.asyncio
async def test_admitted_signal_opens_bracketed_position(sqlite_db, fake_exchange):
    signal = make_signal()

    result = await admit_and_execute(signal, _settings(), adapter=fake_exchange)

    assert result.accepted
    position = get_position(result.position_id)
    assert position.status == PositionStatus.OPEN
    assert position.quantity == Decimal("0.001")
    assert position.sl_order_id == "stop-0"
    assert position.tp1_order_id == "profit-1"
    assert position.signal_id == signal.id
    assert position.metadata["original_quantity"] == "0.001"
    status = get_signal_status(signal.id)
    assert status["status"] == SignalStatus.EXECUTED
    assert status["position_id"] == position.id
    assert status["latency_ms"] is not None


@pytest.mark.asyncio
async def test_max_open_positions_rejects_without_exchange_call(sqlite_db, fake_exchange):
    for symbol in ("ETHUSDT", "SOLUSDT", "XRPUSDT"):
        insert_position(_open_position(symbol))
    signal = make_signal()

    result = await admit_and_execute(signal, _settings(max_open_positions=3), adapter=fake_exchange)

    assert not result.accepted
    assert result.rejection_reason == "max open positions reached"
    assert fake_exchange.calls == []
    status = get_signal_status(signal.id)
    assert status["status"] == SignalStatus.REJECTED
    assert status["error_message"] == "max open positions reached"
    events = get_recent_events(event_type="SIGNAL_REJECTED")
    assert events[0]["details"]["reason"] == "max open positions reached"


@pytest.mark.asyncio
async def test_redelivered_alert_is_answered_without_second_order(sqlite_db, fake_exchange):
    signal = make_signal()
    redelivered = make_signal()  # same user, symbol, side and timestamp; new id

    first = await admit_and_execute(signal, _settings(), adapter=fake_exchange)
    second = await admit_and_execute(redelivered, _settings(), adapter=fake_exchange)

    assert first.accepted
    assert not second.accepted
    assert second.rejection_reason == "already executed"
    assert fake_exchange.count("place_order") == 1


@pytest.mark.asyncio
async def test_failed_signal_retried_when_duplicate_handling_off(sqlite_db, fake_exchange):
    settings = _settings(duplicate_alert_handling=False)
    fake_exchange.fail_entry = APIError("insufficient margin")
    failed = await admit_and_execute(make_signal(), settings, adapter=fake_exchange)

    fake_exchange.fail_entry = None
    retried = await admit_and_execute(make_signal(), settings, adapter=fake_exchange)

    assert not failed.accepted
    assert failed.rejection_reason == "insufficient margin"
    assert retried.accepted
    assert fake_exchange.count("place_order") == 2


@pytest.mark.asyncio
async def test_failed_signal_not_retried_by_default(sqlite_db, fake_exchange):
    fake_exchange.fail_entry = APIError("insufficient margin")
    signal = make_signal()
    await admit_and_execute(signal, _settings(), adapter=fake_exchange)

    fake_exchange.fail_entry = None
    again = await admit_and_execute(make_signal(), _settings(), adapter=fake_exchange)

    assert again.rejection_reason == "already executed"
    status = get_signal_status(signal.id)
    assert status["status"] == SignalStatus.FAILED
    assert status["error_message"] == "insufficient margin"


@pytest.mark.asyncio
async def test_same_symbol_and_side_already_open(sqlite_db, fake_exchange):
    insert_position(_open_position("BTCUSDT"))

    result = await admit_and_execute(make_signal(symbol="BTCUSDT.P"), _settings(), adapter=fake_exchange)

    assert not result.accepted
    assert result.rejection_reason == "position already open"
    assert fake_exchange.count("place_order") == 0


@pytest.mark.asyncio
async def test_daily_loss_limit_blocks_new_entries(sqlite_db, fake_exchange):
    now = utc_now()
    loser = _open_position("ETHUSDT")
    loser.status = PositionStatus.CLOSED
    loser.close_price = Decimal("9")
    loser.close_reason = CloseReason.SL_HIT
    loser.realized_pnl = Decimal("-500")
    loser.closed_at = now
    insert_position(loser)

    result = await admit_and_execute(make_signal(), _settings(daily_loss_limit=Decimal("500")), adapter=fake_exchange)

    assert result.rejection_reason == "daily loss limit reached"
    assert fake_exchange.calls == []


@pytest.mark.asyncio
async def test_percent_balance_sizing_fetches_equity_once(sqlite_db, fake_exchange):
    settings = _settings(position_sizing_type="percent_balance", position_size_value=Decimal("2"))

    result = await admit_and_execute(make_signal(), settings, adapter=fake_exchange)

    assert result.accepted
    assert get_position(result.position_id).quantity == Decimal("0.002")
    assert fake_exchange.count("get_account") == 1


@pytest.mark.asyncio
async def test_admit_for_user_uses_stored_settings(sqlite_db, fake_exchange):
    save_user_settings(UserSettings(user_id="user-1", money_mode=SettingsMode.CUSTOM, max_open_positions=1))
    insert_position(_open_position("ETHUSDT"))

    result = await admit_for_user(make_signal(), adapter=fake_exchange)

    assert result.rejection_reason == "max open positions reached"


@pytest.mark.asyncio
async def test_inactive_bot(sqlite_db, fake_exchange):
    save_user_settings(UserSettings(user_id="user-1", bot_active=False))

    result = await admit_for_user(make_signal(), adapter=fake_exchange)

    assert result.rejection_reason == "bot inactive"
    assert fake_exchange.calls == []
