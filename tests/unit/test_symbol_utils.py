"""
Unit tests for copytrade.data.symbol_utils.

Locks normalize_symbol() as the single place where alert, exchange and ccxt
spellings of a perpetual contract collapse to one key.
"""
import pytest

from copytrade.data.symbol_utils import normalize_symbol, same_symbol


class TestNormalizeSymbol:
    @pytest.mark.parametrize(
        "raw",
        ["BTCUSDT", "btcusdt", "BTCUSDT.P", "btcusdt.p", "BTCUSDTPERP", "BTC/USDT:USDT", "BTC-USDT", "BTC_USDT", " BTCUSDT "],
    )
    def test_spellings_collapse_to_one_key(self, raw) -> None:
        assert normalize_symbol(raw) == "BTCUSDT"

    def test_empty_input(self) -> None:
        assert normalize_symbol(None) == ""
        assert normalize_symbol("") == ""


class TestSameSymbol:
    def test_alert_and_exchange_spelling_match(self) -> None:
        assert same_symbol("ETHUSDT.P", "ETH/USDT:USDT")

    def test_different_markets(self) -> None:
        assert not same_symbol("ETHUSDT", "ETCUSDT")

    def test_blank_never_matches(self) -> None:
        assert not same_symbol(None, None)
        assert not same_symbol("", "BTCUSDT")
