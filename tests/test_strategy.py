"""
Tests for indicator helpers and the EMA-cross signal source.
"""

import pytest

from execbot.core.models import Candle
from execbot.strategy.ema_cross import EmaCrossConfig, EmaCrossStrategy
from execbot.strategy.indicators import ema_series, rsi, trend_snapshot
from execbot.strategy.signals import Direction, Signal


def candles_from(closes):
    return [
        Candle(open_time_ms=i * 300_000, open=c, high=c + 0.5, low=c - 0.5, close=c, volume=1.0)
        for i, c in enumerate(closes)
    ]


class TestIndicators:
    def test_ema_of_constant_is_constant(self):
        assert ema_series([5.0] * 10, 3) == [5.0] * 10

    def test_ema_moves_toward_new_values(self):
        out = ema_series([10.0, 20.0], 3)
        assert out == [10.0, 15.0]

    def test_ema_empty(self):
        assert ema_series([], 9) == []

    def test_rsi_bounds(self):
        rising = [float(i) for i in range(30)]
        falling = list(reversed(rising))
        assert rsi(rising, 14) == 100.0
        assert rsi(falling, 14) == pytest.approx(0.0)
        assert rsi([1.0] * 30, 14) == 50.0

    def test_rsi_needs_history(self):
        assert rsi([1.0] * 14, 14) is None

    def test_trend_snapshot_none_on_short_history(self):
        assert trend_snapshot(candles_from([100.0] * 20), fast=9, slow=21) is None

    def test_trend_snapshot_values(self):
        closes = [100.0 + i for i in range(30)]
        snap = trend_snapshot(candles_from(closes))
        assert snap.close == 129.0
        assert snap.fast_ema > snap.slow_ema
        assert snap.rsi == 100.0


class TestEmaCross:
    def test_warming_up(self):
        signal = EmaCrossStrategy().evaluate("BTCUSDT", candles_from([100.0] * 5), None)
        assert signal == Signal.none("warming_up")

    def test_long_on_upward_cross(self):
        closes = [110.0 - i * 0.5 for i in range(30)] + [150.0]
        candles = candles_from(closes)
        trend = trend_snapshot(candles)
        signal = EmaCrossStrategy(EmaCrossConfig(rsi_long_min=0)).evaluate("BTCUSDT", candles, trend)
        assert signal.direction is Direction.LONG
        assert signal.entry_price == 150.0
        assert signal.stop_loss == pytest.approx(149.0)

    def test_short_on_downward_cross(self):
        closes = [90.0 + i * 0.5 for i in range(30)] + [50.0]
        candles = candles_from(closes)
        trend = trend_snapshot(candles)
        signal = EmaCrossStrategy(EmaCrossConfig(rsi_short_max=100)).evaluate("BTCUSDT", candles, trend)
        assert signal.direction is Direction.SHORT
        assert signal.stop_loss == pytest.approx(51.0)

    def test_short_disabled(self):
        closes = [90.0 + i * 0.5 for i in range(30)] + [50.0]
        candles = candles_from(closes)
        strategy = EmaCrossStrategy(EmaCrossConfig(rsi_short_max=100, allow_short=False))
        assert not strategy.evaluate("BTCUSDT", candles, trend_snapshot(candles)).is_directional

    def test_no_cross_no_signal(self):
        closes = [100.0 + i for i in range(30)]
        candles = candles_from(closes)
        assert not EmaCrossStrategy().evaluate("BTCUSDT", candles, trend_snapshot(candles)).is_directional
