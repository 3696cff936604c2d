"""
Strategy-facing types.

The lifecycle consumes a Signal per tick and treats it as advisory: it never
waits for one, and a missing signal is the same as Direction.NONE.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol

from execbot.core.models import Candle


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    NONE = "NONE"

    @property
    def entry_side(self) -> str:
        return "BUY" if self is Direction.LONG else "SELL"

    def opposes(self, is_long: bool) -> bool:
        return (self is Direction.SHORT and is_long) or (self is Direction.LONG and not is_long)


@dataclass(frozen=True)
class Signal:
    direction: Direction = Direction.NONE
    entry_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    reason: str = ""

    @property
    def is_directional(self) -> bool:
        return self.direction is not Direction.NONE

    @classmethod
    def none(cls, reason: str = "") -> "Signal":
        return cls(direction=Direction.NONE, reason=reason)


@dataclass(frozen=True)
class TrendSnapshot:
    """Indicator values at the last closed candle, used for the trend-break exit."""
    close: float
    fast_ema: float
    slow_ema: float
    rsi: float


class SignalSource(Protocol):
    def evaluate(self, symbol: str, candles: List[Candle], trend: Optional[TrendSnapshot]) -> Signal:
        ...
