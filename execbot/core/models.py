"""
Venue-observed value types.

These are read-only projections of what the venue reported; the bot never
builds an Order or Position speculatively, only OrderRequest payloads.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class InstrumentRules:
    """Legal increments for one instrument, as parsed from exchange info."""
    symbol: str
    price_step: float
    qty_step: float
    min_qty: float
    min_notional: float


@dataclass(frozen=True)
class Order:
    order_id: str
    symbol: str
    side: str  # BUY / SELL
    type: str  # LIMIT, STOP_MARKET, ...
    price: float
    quantity: float
    executed_quantity: float = 0.0
    status: str = "NEW"
    trigger_price: float = 0.0
    created_at_ms: int = 0
    client_order_id: str = ""
    reduce_only: bool = False

    @property
    def remaining(self) -> float:
        return max(0.0, self.quantity - self.executed_quantity)

    @property
    def is_open(self) -> bool:
        return self.status in ("NEW", "PARTIALLY_FILLED")

    @property
    def is_conditional(self) -> bool:
        """Stop or take-profit trigger order rather than a resting limit."""
        kind = self.type.upper()
        return "STOP" in kind or "TAKE_PROFIT" in kind


@dataclass(frozen=True)
class Position:
    symbol: str
    signed_quantity: float
    entry_price: float = 0.0
    mark_price: float = 0.0
    last_updated_ms: int = 0

    @property
    def is_flat(self) -> bool:
        return self.signed_quantity == 0

    @property
    def is_long(self) -> bool:
        return self.signed_quantity > 0

    @property
    def is_short(self) -> bool:
        return self.signed_quantity < 0

    @classmethod
    def flat(cls, symbol: str) -> "Position":
        return cls(symbol=symbol, signed_quantity=0.0)


@dataclass(frozen=True)
class Candle:
    open_time_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time_ms: int = 0


@dataclass(frozen=True)
class BookTicker:
    symbol: str
    bid: float
    ask: float

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2.0


@dataclass(frozen=True)
class IncomeRecord:
    symbol: str
    income_type: str  # REALIZED_PNL, COMMISSION, FUNDING_FEE, ...
    income: float
    asset: str = "USDT"
    time_ms: int = 0


@dataclass
class NetPnl:
    """Income totals over a window. Commission and funding arrive signed."""
    symbol: str
    realized: float = 0.0
    commission: float = 0.0
    funding: float = 0.0

    @property
    def net(self) -> float:
        return self.realized + self.commission + self.funding

    def add(self, record: IncomeRecord) -> None:
        kind = record.income_type.upper()
        if kind == "REALIZED_PNL":
            self.realized += record.income
        elif kind == "COMMISSION":
            self.commission += record.income
        elif kind == "FUNDING_FEE":
            self.funding += record.income


@dataclass
class OrderRequest:
    """Payload for a limit order, used by single and bulk placement."""
    symbol: str
    side: str
    quantity: float
    price: float
    reduce_only: bool = False
    post_only: bool = True
    client_order_id: Optional[str] = None
