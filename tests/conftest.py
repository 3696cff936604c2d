"""
Pytest configuration and fixtures.
Adds the repo root to the Python path so tests can import execbot.
"""

import itertools
import sys
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Add the repo root to sys.path
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from execbot.core.errors import VenueRejection  # noqa: E402
from execbot.core.models import Candle, InstrumentRules, NetPnl, Order, OrderRequest, Position  # noqa: E402


class FakeClock:
    """Manually advanced wall clock in seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeVenue:
    """
    In-memory stand-in for VenueClient.

    Orders rest until cancelled or filled with fill(); the position only
    changes when a test says so.
    """

    def __init__(self, symbol: str = "BTCUSDT", price: float = 100.0):
        self.symbol = symbol
        self.price = price
        self.position = Position.flat(symbol)
        self.orders: Dict[str, Order] = {}
        self.placed: List[OrderRequest] = []
        self.placed_at_price: List[float] = []
        self.stops: List[Order] = []
        self.cancelled: List[str] = []
        self.candles: List[Candle] = []
        self.net_pnl = NetPnl(symbol=symbol)
        self.place_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self._ids = itertools.count(1)

    # --- reads ---
    async def get_last_price(self, symbol: str) -> float:
        return self.price

    async def get_position(self, symbol: str) -> Position:
        return self.position

    async def get_open_orders(self, symbol: str) -> List[Order]:
        return list(self.orders.values())

    async def get_recent_candles(self, symbol: str, interval: str = "5m", limit: int = 200) -> List[Candle]:
        return list(self.candles)

    async def get_net_pnl(self, symbol: str, since_ms: int) -> NetPnl:
        return self.net_pnl

    # --- mutations ---
    async def place_limit_order(self, request: OrderRequest) -> Order:
        if self.place_error is not None:
            error, self.place_error = self.place_error, None
            raise error
        n = next(self._ids)
        order = Order(
            order_id=str(n),
            symbol=request.symbol,
            side=request.side,
            type="LIMIT",
            price=request.price,
            quantity=request.quantity,
            created_at_ms=n,
            reduce_only=request.reduce_only,
        )
        self.orders[order.order_id] = order
        self.placed.append(request)
        self.placed_at_price.append(self.price)
        return order

    async def place_stop_order(self, symbol: str, side: str, trigger_price: float,
                               order_type: str = "STOP_MARKET") -> Order:
        if self.place_error is not None:
            error, self.place_error = self.place_error, None
            raise error
        n = next(self._ids)
        order = Order(
            order_id=str(n), symbol=symbol, side=side, type=order_type, price=0.0, quantity=0.0,
            trigger_price=trigger_price, created_at_ms=n, reduce_only=True,
        )
        self.orders[order.order_id] = order
        self.stops.append(order)
        return order

    async def cancel_order(self, symbol: str, order_id: str) -> Optional[Order]:
        if self.cancel_error is not None:
            error, self.cancel_error = self.cancel_error, None
            raise error
        self.cancelled.append(order_id)
        order = self.orders.pop(order_id, None)
        if order is None:
            return None
        return replace(order, status="CANCELED")

    async def cancel_batch_orders(self, symbol: str, order_ids) -> int:
        count = 0
        for oid in order_ids:
            if self.orders.pop(oid, None) is not None:
                self.cancelled.append(oid)
                count += 1
        return count

    # --- test helpers ---
    def add_order(self, order: Order) -> None:
        self.orders[order.order_id] = order

    def fill(self, order_id: str, qty: Optional[float] = None) -> None:
        """Fill an order fully (removing it) or partially, moving the position."""
        order = self.orders[order_id]
        filled = order.remaining if qty is None else qty
        signed = filled if order.side == "BUY" else -filled
        self.position = Position(self.symbol, self.position.signed_quantity + signed,
                                 entry_price=order.price, mark_price=self.price)
        if qty is None or filled >= order.remaining:
            del self.orders[order_id]
        else:
            self.orders[order_id] = replace(order, executed_quantity=order.executed_quantity + filled,
                                            status="PARTIALLY_FILLED")

    def set_position(self, qty: float, entry: float = 100.0) -> None:
        self.position = Position(self.symbol, qty, entry_price=entry, mark_price=self.price)


class FakeRulesCache:
    def __init__(self, rules: InstrumentRules):
        self._rules = rules
        self.lookups = 0

    async def rules(self, symbol: str) -> InstrumentRules:
        self.lookups += 1
        return self._rules


@pytest.fixture
def rules() -> InstrumentRules:
    return InstrumentRules(symbol="BTCUSDT", price_step=0.1, qty_step=0.001, min_qty=0.001, min_notional=5.0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def venue() -> FakeVenue:
    return FakeVenue()


@pytest.fixture
def rules_cache(rules) -> FakeRulesCache:
    return FakeRulesCache(rules)
