"""
Tests for inferring the close reason from the close price.
"""
from decimal import Decimal

import pytest

from copytrade.domain.models import CloseReason, Position, Side
from copytrade.reconciliation.close_reason import infer_close_reason, pnl_from_prices
from tests.helpers import NOW


def _long():
    return Position(
        user_id="u1",
        symbol="BTCUSDT",
        side=Side.LONG,
        entry_price=Decimal("100000"),
        quantity=Decimal("0.001"),
        leverage=10,
        opened_at=NOW,
        sl_price=Decimal("98500"),
        tp1_price=Decimal("103000"),
        tp2_price=Decimal("104500"),
        tp3_price=Decimal("106000"),
    )


def _short():
    return Position(
        user_id="u1",
        symbol="BTCUSDT",
        side=Side.SHORT,
        entry_price=Decimal("100000"),
        quantity=Decimal("0.001"),
        leverage=10,
        opened_at=NOW,
        sl_price=Decimal("101500"),
        tp1_price=Decimal("97000"),
        tp2_price=Decimal("95500"),
    )


@pytest.mark.parametrize("close_price,reason", [
    ("98400", CloseReason.SL_HIT),
    ("98900", CloseReason.SL_HIT),    # within 0.5% above the stop
    ("102600", CloseReason.TP1_HIT),  # within 0.5% below TP1
    ("104500", CloseReason.TP2_HIT),
    ("107000", CloseReason.TP3_HIT),
    ("101000", CloseReason.TP_HIT),   # profit short of any level
    ("99500", CloseReason.SL_HIT),    # loss short of the stop
])
def test_long(close_price, reason):
    assert infer_close_reason(_long(), Decimal(close_price)) == reason


@pytest.mark.parametrize("close_price,reason", [
    ("101500", CloseReason.SL_HIT),
    ("101100", CloseReason.SL_HIT),
    ("97000", CloseReason.TP1_HIT),
    ("95000", CloseReason.TP2_HIT),
    ("98500", CloseReason.TP_HIT),
    ("100500", CloseReason.SL_HIT),
])
def test_short(close_price, reason):
    assert infer_close_reason(_short(), Decimal(close_price)) == reason


def test_zero_tolerance_requires_exact_level():
    assert infer_close_reason(_long(), Decimal("102900"), Decimal("0")) == CloseReason.TP_HIT


def test_without_levels_falls_back_to_pnl_sign():
    position = _long()
    position.sl_price = position.tp1_price = position.tp2_price = position.tp3_price = None
    assert infer_close_reason(position, Decimal("100001")) == CloseReason.TP_HIT
    assert infer_close_reason(position, Decimal("99999")) == CloseReason.SL_HIT


def test_pnl_from_prices():
    assert pnl_from_prices(Side.LONG, Decimal("100"), Decimal("110"), Decimal("2")) == Decimal("20")
    assert pnl_from_prices(Side.SHORT, Decimal("100"), Decimal("110"), Decimal("2")) == Decimal("-20")
