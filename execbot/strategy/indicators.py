"""
Indicator helpers over closed candles (EMA, Wilder RSI).
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from execbot.core.models import Candle
from execbot.strategy.signals import TrendSnapshot


def ema_series(values: Sequence[float], length: int) -> List[float]:
    if not values or length <= 0:
        return []
    alpha = 2 / (length + 1)
    out = [values[0]]
    for value in values[1:]:
        out.append(alpha * value + (1 - alpha) * out[-1])
    return out


def rsi(values: Sequence[float], length: int = 14) -> Optional[float]:
    if len(values) <= length:
        return None
    gains = losses = 0.0
    for prev, cur in zip(values[:length], values[1:length + 1]):
        change = cur - prev
        gains += max(change, 0.0)
        losses += max(-change, 0.0)
    avg_gain = gains / length
    avg_loss = losses / length
    for prev, cur in zip(values[length:], values[length + 1:]):
        change = cur - prev
        avg_gain = (avg_gain * (length - 1) + max(change, 0.0)) / length
        avg_loss = (avg_loss * (length - 1) + max(-change, 0.0)) / length
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def trend_snapshot(
    candles: Sequence[Candle],
    fast: int = 9,
    slow: int = 21,
    rsi_length: int = 14,
) -> Optional[TrendSnapshot]:
    """None until there is enough history for the slow average and RSI."""
    closes = [c.close for c in candles]
    if len(closes) < max(slow, rsi_length + 1):
        return None
    momentum = rsi(closes, rsi_length)
    if momentum is None:
        return None
    return TrendSnapshot(
        close=closes[-1],
        fast_ema=ema_series(closes, fast)[-1],
        slow_ema=ema_series(closes, slow)[-1],
        rsi=momentum,
    )
