"""
Tests for position sizing, stop-loss / take-profit levels and overlays.
"""
from decimal import Decimal

import pytest

from copytrade.domain.models import OrderLeg, Side
from copytrade.domain.settings import EffectiveSettings
from copytrade.exceptions import ValidationError
from copytrade.execution.sltp_calculator import (
    apply_overlays,
    breakeven_price,
    calculate_levels,
    close_quantities,
    is_high_volatility,
    position_size,
)
from tests.helpers import make_signal


def _settings(**overrides) -> EffectiveSettings:
    return EffectiveSettings(**overrides)


class TestRiskRewardLevels:
    def test_long_signal_levels(self):
        settings = _settings(
            calculator_type="risk_reward",
            sl_method="percent_entry",
            simple_sl_percent=Decimal("1.5"),
            tp1_rr_ratio=Decimal("2.0"),
        )
        levels = calculate_levels(make_signal(), settings, Decimal("0.001"), 10)

        assert levels.stop_loss == Decimal("98500")
        assert levels.tp1 == Decimal("103000")
        assert levels.tp2 == Decimal("103750")
        assert levels.tp3 == Decimal("105250")

    def test_short_signal_is_mirrored(self):
        settings = _settings(
            calculator_type="risk_reward",
            simple_sl_percent=Decimal("1.5"),
            tp1_rr_ratio=Decimal("2.0"),
        )
        levels = calculate_levels(make_signal(side=Side.SHORT), settings, Decimal("0.001"), 10)

        assert levels.stop_loss == Decimal("101500")
        assert levels.tp1 == Decimal("97000")
        assert levels.tp1 > levels.tp2 > levels.tp3

    @pytest.mark.parametrize("side", [Side.LONG, Side.SHORT])
    @pytest.mark.parametrize("calculator", ["simple", "risk_reward", "atr"])
    def test_levels_are_ordered(self, side, calculator):
        signal = make_signal(side=side, atr=Decimal("800"))
        levels = calculate_levels(signal, _settings(calculator_type=calculator), Decimal("0.001"), 10)

        prices = [levels.stop_loss, signal.price, levels.tp1, levels.tp2, levels.tp3]
        if side == Side.SHORT:
            prices.reverse()
        assert prices == sorted(prices)


class TestStopLossMethods:
    def test_percent_margin(self):
        settings = _settings(sl_method="percent_margin", rr_sl_percent_margin=Decimal("20"))
        levels = calculate_levels(make_signal(), settings, Decimal("0.001"), 10)
        # margin 10 USDT, 20% of it is 2 USDT over 0.001 BTC
        assert levels.stop_loss == Decimal("98000")

    def test_fixed_usdt(self):
        settings = _settings(sl_method="fixed_usdt", sl_fixed_usdt=Decimal("50"))
        levels = calculate_levels(make_signal(), settings, Decimal("0.01"), 10)
        assert levels.stop_loss == Decimal("95000")

    def test_atr_based(self):
        settings = _settings(sl_method="atr_based", atr_sl_multiplier=Decimal("1.5"))
        levels = calculate_levels(make_signal(atr=Decimal("1000")), settings, Decimal("0.001"), 10)
        assert levels.stop_loss == Decimal("98500")

    def test_atr_based_without_atr_falls_back_to_percent_entry(self):
        settings = _settings(sl_method="atr_based", simple_sl_percent=Decimal("2"))
        levels = calculate_levels(make_signal(), settings, Decimal("0.001"), 10)
        assert levels.stop_loss == Decimal("98000")

    def test_stop_beyond_zero_rejected(self):
        settings = _settings(sl_method="fixed_usdt", sl_fixed_usdt=Decimal("50"))
        with pytest.raises(ValidationError):
            calculate_levels(make_signal(symbol="DOGEUSDT", price="100"), settings, Decimal("0.1"), 10)

    def test_short_target_beyond_zero_rejected(self):
        settings = _settings(simple_tp1_percent=Decimal("60"))
        with pytest.raises(ValidationError):
            calculate_levels(make_signal(side=Side.SHORT), settings, Decimal("0.001"), 10)

    def test_short_target_pushed_beyond_zero_by_overlay_rejected(self):
        settings = _settings(simple_tp1_percent=Decimal("45"), adaptive_tp_spacing=True)
        signal = make_signal(side=Side.SHORT, volume_ratio=Decimal("2"))
        with pytest.raises(ValidationError):
            calculate_levels(signal, settings, Decimal("0.001"), 10)

    def test_short_targets_above_zero_accepted(self):
        settings = _settings(simple_tp1_percent=Decimal("30"))
        levels = calculate_levels(make_signal(side=Side.SHORT), settings, Decimal("0.001"), 10)
        assert (levels.tp1, levels.tp2, levels.tp3) == (Decimal("70000"), Decimal("55000"), Decimal("40000"))


class TestTakeProfitStrategies:
    def test_simple_defaults_space_tp2_and_tp3(self):
        levels = calculate_levels(make_signal(), _settings(), Decimal("0.001"), 10)
        assert (levels.tp1, levels.tp2, levels.tp3) == (
            Decimal("103000"), Decimal("104500"), Decimal("106000"),
        )

    def test_atr_multipliers(self):
        settings = _settings(calculator_type="atr", atr_tp_multiplier=Decimal("2"))
        levels = calculate_levels(make_signal(atr=Decimal("1000")), settings, Decimal("0.001"), 10)
        assert (levels.tp1, levels.tp2, levels.tp3) == (
            Decimal("102000"), Decimal("103000"), Decimal("104000"),
        )

    def test_tp_levels_limits_output(self):
        levels = calculate_levels(make_signal(), _settings(tp_levels=1), Decimal("0.001"), 10)
        assert levels.tp1 is not None
        assert levels.tp2 is None
        assert levels.tp3 is None
        assert levels.take_profits() == [(OrderLeg.TP1, Decimal("103000"))]


class TestOverlays:
    TPS = [Decimal("103000"), Decimal("104500"), None]

    def test_disabled_overlays_leave_levels_alone(self):
        assert apply_overlays(make_signal(), _settings(), self.TPS) == self.TPS

    def test_high_volatility_widens(self):
        signal = make_signal(volume_ratio=Decimal("2"))
        assert is_high_volatility(signal)
        tps = apply_overlays(signal, _settings(adaptive_tp_spacing=True), self.TPS)
        assert tps[0] == Decimal("103900")
        assert tps[2] is None

    def test_atr_ratio_counts_as_high_volatility(self):
        assert is_high_volatility(make_signal(atr=Decimal("1500")))
        assert not is_high_volatility(make_signal(atr=Decimal("500")))

    def test_weak_adaptive_rr_tightens(self):
        signal = make_signal(strength=Decimal("0.1"))
        tps = apply_overlays(signal, _settings(adaptive_rr=True), self.TPS)
        assert tps[0] == Decimal("102400")

    def test_overlays_compose_in_order(self):
        signal = make_signal(strength=Decimal("0.8"))
        settings = _settings(adaptive_tp_spacing=True, momentum_based_tp=True, adaptive_rr=True)
        tps = apply_overlays(signal, settings, self.TPS)
        # low volatility 0.9, strong momentum 1.2, very strong rr 1.5
        assert tps[0] == Decimal("104860")

    def test_short_overlay_stays_on_profit_side(self):
        signal = make_signal(side=Side.SHORT, strength=Decimal("0.8"))
        tps = apply_overlays(signal, _settings(momentum_based_tp=True), [Decimal("97000"), None, None])
        assert tps[0] == Decimal("96400")


class TestPositionSize:
    def test_fixed_usdt(self):
        result = position_size(make_signal(), _settings(position_size_value=Decimal("100")))
        assert result.quantity == Decimal("0.001")
        assert not result.was_adjusted

    def test_fixed_usdt_raised_to_minimum(self):
        result = position_size(make_signal(), _settings(position_size_value=Decimal("50")))
        assert result.was_adjusted
        assert result.notional == Decimal("80")

    def test_percent_balance(self):
        settings = _settings(position_sizing_type="percent_balance", position_size_value=Decimal("1"))
        result = position_size(make_signal(), settings, equity=Decimal("10000"))
        assert result.quantity == Decimal("0.001")

    def test_percent_balance_needs_equity(self):
        settings = _settings(position_sizing_type="percent_balance")
        with pytest.raises(ValidationError):
            position_size(make_signal(), settings)


class TestCloseQuantities:
    def test_partial_close(self):
        quantities = close_quantities(Decimal("1"), _settings())
        assert quantities == {
            OrderLeg.TP1: Decimal("0.5"),
            OrderLeg.TP2: Decimal("0.3"),
            OrderLeg.TP3: Decimal("0.2"),
        }

    def test_main_tp_only(self):
        quantities = close_quantities(Decimal("1"), _settings(tp_strategy="main_tp_only"))
        assert quantities[OrderLeg.TP1] == Decimal("1")
        assert quantities[OrderLeg.TP2] == 0
        assert quantities[OrderLeg.TP3] == 0


class TestBreakeven:
    def test_fee_aware_long(self):
        assert breakeven_price(Decimal("100000"), Side.LONG, True, Decimal("0.12")) == Decimal("100120")

    def test_fee_aware_short(self):
        assert breakeven_price(Decimal("100000"), Side.SHORT, True, Decimal("0.12")) == Decimal("99880")

    def test_plain(self):
        assert breakeven_price(Decimal("100000"), Side.LONG, False, Decimal("0.12")) == Decimal("100000")


class TestSettingsValidation:
    def test_close_fractions_over_100_rejected(self):
        with pytest.raises(ValueError):
            _settings(tp1_close_percent=Decimal("60"), tp2_close_percent=Decimal("30"))

    def test_non_increasing_rr_rejected(self):
        with pytest.raises(ValueError):
            _settings(tp1_rr_ratio=Decimal("3"), tp2_rr_ratio=Decimal("2.5"))
