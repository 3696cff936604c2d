"""
EmaCrossStrategy: minimal trend-following signal source.

Goes LONG when the fast EMA crosses above the slow EMA with RSI confirming,
SHORT on the mirror cross. Stop loss sits one average candle range beyond
the entry. Exists so the process runs end to end; real strategies plug in
through the SignalSource protocol.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from execbot.core.models import Candle
from execbot.strategy.indicators import ema_series
from execbot.strategy.signals import Direction, Signal, TrendSnapshot


@dataclass
class EmaCrossConfig:
    fast: int = 9
    slow: int = 21
    rsi_long_min: float = 52.0
    rsi_short_max: float = 48.0
    stop_range_candles: int = 14
    allow_short: bool = True


class EmaCrossStrategy:
    def __init__(self, config: Optional[EmaCrossConfig] = None) -> None:
        self.config = config or EmaCrossConfig()

    def evaluate(self, symbol: str, candles: List[Candle], trend: Optional[TrendSnapshot]) -> Signal:
        cfg = self.config
        if trend is None or len(candles) < cfg.slow + 2:
            return Signal.none("warming_up")

        closes = [c.close for c in candles]
        fast = ema_series(closes, cfg.fast)
        slow = ema_series(closes, cfg.slow)
        crossed_up = fast[-2] <= slow[-2] and fast[-1] > slow[-1]
        crossed_down = fast[-2] >= slow[-2] and fast[-1] < slow[-1]

        recent = candles[-cfg.stop_range_candles:]
        avg_range = sum(c.high - c.low for c in recent) / len(recent)

        if crossed_up and trend.rsi >= cfg.rsi_long_min:
            return Signal(
                direction=Direction.LONG,
                entry_price=trend.close,
                stop_loss=trend.close - avg_range,
                reason=f"ema{cfg.fast}>ema{cfg.slow} rsi={trend.rsi:.1f}",
            )
        if cfg.allow_short and crossed_down and trend.rsi <= cfg.rsi_short_max:
            return Signal(
                direction=Direction.SHORT,
                entry_price=trend.close,
                stop_loss=trend.close + avg_range,
                reason=f"ema{cfg.fast}<ema{cfg.slow} rsi={trend.rsi:.1f}",
            )
        return Signal.none()
