"""
Strategy package: signal types consumed by the order lifecycle, indicator
helpers, and a reference EMA-cross signal source.
"""

from execbot.strategy.signals import Direction, Signal, SignalSource, TrendSnapshot
from execbot.strategy.indicators import ema_series, rsi, trend_snapshot
from execbot.strategy.ema_cross import EmaCrossConfig, EmaCrossStrategy

__all__ = [
    "Direction",
    "Signal",
    "SignalSource",
    "TrendSnapshot",
    "ema_series",
    "rsi",
    "trend_snapshot",
    "EmaCrossConfig",
    "EmaCrossStrategy",
]
