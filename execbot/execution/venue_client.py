"""
VenueClient: typed wrappers over the USD-M futures REST endpoints.

Parses raw payloads into core models and raises StaleDataError for shapes
it does not recognise. In paper mode every mutating call is answered with a
simulated acknowledgment and never reaches the venue; simulated orders are
kept in a local book and reported by get_open_orders next to the real ones,
so a paper entry rests and gets chased like a live one.
"""

from __future__ import annotations

import itertools
import json
import logging
import secrets
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence, Union

from execbot.core.errors import StaleDataError, VenueRejection
from execbot.core.models import (
    BookTicker,
    Candle,
    IncomeRecord,
    NetPnl,
    Order,
    OrderRequest,
    Position,
)
from execbot.execution.gateway import SignedRequestGateway
from execbot.infra.clock import now_ms
from execbot.infra.signing import format_value

log = logging.getLogger("execbot")

BATCH_LIMIT = 5
UNKNOWN_ORDER_CODE = -2011
PNL_INCOME_TYPES = ("REALIZED_PNL", "COMMISSION", "FUNDING_FEE")


def new_client_order_id(symbol: str) -> str:
    return f"eb-{symbol[:8].lower()}-{secrets.token_hex(6)}"


def _f(data: Dict[str, Any], key: str, default: Optional[float] = None) -> float:
    raw = data.get(key, default)
    if raw is None:
        raise StaleDataError(f"missing field {key!r}")
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise StaleDataError(f"field {key!r} not numeric: {raw!r}") from exc


def parse_order(data: Any) -> Order:
    if not isinstance(data, dict) or "orderId" not in data:
        raise StaleDataError(f"unexpected order payload: {data!r}")
    return Order(
        order_id=str(data["orderId"]),
        symbol=str(data.get("symbol", "")),
        side=str(data.get("side", "")).upper(),
        type=str(data.get("type", data.get("origType", "LIMIT"))),
        price=_f(data, "price", 0.0),
        quantity=_f(data, "origQty", 0.0),
        executed_quantity=_f(data, "executedQty", 0.0),
        status=str(data.get("status", "NEW")),
        trigger_price=_f(data, "stopPrice", 0.0),
        created_at_ms=int(data.get("time", data.get("updateTime", 0)) or 0),
        client_order_id=str(data.get("clientOrderId", "")),
        reduce_only=bool(data.get("reduceOnly", False)) or bool(data.get("closePosition", False)),
    )


def parse_candle(row: Any) -> Candle:
    if not isinstance(row, (list, tuple)) or len(row) < 6:
        raise StaleDataError(f"unexpected kline row: {row!r}")
    try:
        return Candle(
            open_time_ms=int(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
            close_time_ms=int(row[6]) if len(row) > 6 else 0,
        )
    except (TypeError, ValueError) as exc:
        raise StaleDataError(f"unparseable kline row: {row!r}") from exc


class VenueClient:
    """
    Usage:
        client = VenueClient(gateway, paper_mode=False)
        position = await client.get_position("BTCUSDT")
        order = await client.place_limit_order(OrderRequest("BTCUSDT", "BUY", 0.01, 60000.0))
    """

    def __init__(self, gateway: SignedRequestGateway, paper_mode: bool = False) -> None:
        self.gateway = gateway
        self.paper_mode = paper_mode
        self._paper_ids = itertools.count(1)
        # symbol -> order_id -> simulated resting order
        self._paper_orders: Dict[str, Dict[str, Order]] = {}

    # ------------------------------------------------------------------
    # Unsigned market data
    # ------------------------------------------------------------------

    async def get_recent_candles(self, symbol: str, interval: str = "5m", limit: int = 200) -> List[Candle]:
        body = await self.gateway.call(
            "GET", "/fapi/v1/klines",
            {"symbol": symbol, "interval": interval, "limit": limit},
            signed=False,
        )
        if not isinstance(body, list):
            raise StaleDataError(f"klines for {symbol}: expected list, got {type(body).__name__}")
        return [parse_candle(row) for row in body]

    async def get_book_ticker(self, symbol: str) -> BookTicker:
        body = await self.gateway.call("GET", "/fapi/v1/ticker/bookTicker", {"symbol": symbol}, signed=False)
        if not isinstance(body, dict):
            raise StaleDataError(f"bookTicker for {symbol}: {body!r}")
        return BookTicker(symbol=symbol, bid=_f(body, "bidPrice"), ask=_f(body, "askPrice"))

    async def get_last_price(self, symbol: str) -> float:
        body = await self.gateway.call("GET", "/fapi/v1/ticker/price", {"symbol": symbol}, signed=False)
        if not isinstance(body, dict):
            raise StaleDataError(f"ticker price for {symbol}: {body!r}")
        price = _f(body, "price")
        if price <= 0:
            raise StaleDataError(f"non-positive price for {symbol}: {price}")
        return price

    async def get_exchange_info(self) -> Dict[str, Any]:
        body = await self.gateway.call("GET", "/fapi/v1/exchangeInfo", signed=False)
        if not isinstance(body, dict) or not isinstance(body.get("symbols"), list):
            raise StaleDataError("exchangeInfo without a symbols list")
        return body

    # ------------------------------------------------------------------
    # Signed account reads
    # ------------------------------------------------------------------

    async def get_position(self, symbol: str) -> Position:
        body = await self.gateway.call("GET", "/fapi/v2/positionRisk", {"symbol": symbol})
        if not isinstance(body, list):
            raise StaleDataError(f"positionRisk for {symbol}: expected list")
        # One-way mode: a single BOTH row; hedge mode rows are netted.
        signed_qty = 0.0
        entry = mark = 0.0
        updated = 0
        for row in body:
            if not isinstance(row, dict) or row.get("symbol") != symbol:
                continue
            qty = _f(row, "positionAmt")
            signed_qty += qty
            if qty != 0:
                entry = _f(row, "entryPrice", 0.0)
            mark = _f(row, "markPrice", 0.0) or mark
            updated = max(updated, int(row.get("updateTime", 0) or 0))
        return Position(
            symbol=symbol,
            signed_quantity=signed_qty,
            entry_price=entry,
            mark_price=mark,
            last_updated_ms=updated or now_ms(),
        )

    async def get_open_orders(self, symbol: str) -> List[Order]:
        body = await self.gateway.call("GET", "/fapi/v1/openOrders", {"symbol": symbol})
        if not isinstance(body, list):
            raise StaleDataError(f"openOrders for {symbol}: expected list")
        orders = [parse_order(row) for row in body]
        if self.paper_mode:
            orders.extend(self._paper_orders.get(symbol, {}).values())
        return orders

    async def get_income(
        self,
        symbol: str,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
        limit: int = 1000,
    ) -> List[IncomeRecord]:
        body = await self.gateway.call(
            "GET", "/fapi/v1/income",
            {"symbol": symbol, "startTime": start_ms, "endTime": end_ms, "limit": limit},
        )
        if not isinstance(body, list):
            raise StaleDataError(f"income for {symbol}: expected list")
        records = []
        for row in body:
            if not isinstance(row, dict):
                raise StaleDataError(f"unexpected income row: {row!r}")
            records.append(IncomeRecord(
                symbol=str(row.get("symbol", symbol)),
                income_type=str(row.get("incomeType", "")),
                income=_f(row, "income"),
                asset=str(row.get("asset", "USDT")),
                time_ms=int(row.get("time", 0) or 0),
            ))
        return records

    async def get_net_pnl(self, symbol: str, since_ms: int) -> NetPnl:
        pnl = NetPnl(symbol=symbol)
        for record in await self.get_income(symbol, start_ms=since_ms):
            if record.income_type.upper() in PNL_INCOME_TYPES:
                pnl.add(record)
        return pnl

    # ------------------------------------------------------------------
    # Signed mutations
    # ------------------------------------------------------------------

    async def place_limit_order(self, request: OrderRequest) -> Order:
        client_id = request.client_order_id or new_client_order_id(request.symbol)
        if self.paper_mode:
            return self._paper_ack(request, client_id)
        body = await self.gateway.call("POST", "/fapi/v1/order", self._order_params(request, client_id))
        return parse_order(body)

    async def place_stop_order(
        self, symbol: str, side: str, trigger_price: float, order_type: str = "STOP_MARKET",
    ) -> Order:
        """
        Venue-side protective trigger (STOP_MARKET or TAKE_PROFIT_MARKET) that
        closes the whole position at mark price. Fills as taker when hit.
        """
        client_id = new_client_order_id(symbol)
        if self.paper_mode:
            request = OrderRequest(symbol, side, 0.0, 0.0, reduce_only=True, post_only=False)
            return self._paper_ack(request, client_id, order_type=order_type, trigger_price=trigger_price)
        body = await self.gateway.call("POST", "/fapi/v1/order", {
            "symbol": symbol,
            "side": side.upper(),
            "type": order_type,
            "stopPrice": float(trigger_price),
            "closePosition": True,
            "workingType": "MARK_PRICE",
            "newClientOrderId": client_id,
        })
        return parse_order(body)

    async def place_batch_orders(self, requests: Sequence[OrderRequest]) -> List[Union[Order, VenueRejection]]:
        """Bulk placement; per-order rejections come back in place of the Order."""
        results: List[Union[Order, VenueRejection]] = []
        for start in range(0, len(requests), BATCH_LIMIT):
            chunk = requests[start:start + BATCH_LIMIT]
            ids = [r.client_order_id or new_client_order_id(r.symbol) for r in chunk]
            if self.paper_mode:
                results.extend(self._paper_ack(r, cid) for r, cid in zip(chunk, ids))
                continue
            payload = [
                {k: format_value(v) for k, v in self._order_params(r, cid).items() if v is not None}
                for r, cid in zip(chunk, ids)
            ]
            body = await self.gateway.call(
                "POST", "/fapi/v1/batchOrders",
                {"batchOrders": json.dumps(payload, separators=(",", ":"))},
            )
            if not isinstance(body, list):
                raise StaleDataError("batchOrders: expected list")
            for row in body:
                if isinstance(row, dict) and "code" in row and "orderId" not in row:
                    results.append(VenueRejection(400, json.dumps(row), "POST", "/fapi/v1/batchOrders"))
                else:
                    results.append(parse_order(row))
        return results

    async def cancel_order(self, symbol: str, order_id: str) -> Optional[Order]:
        """Cancel one order. Returns None if the venue no longer knows it."""
        if self.paper_mode:
            log.info(json.dumps({"event": "paper_ack", "symbol": symbol, "op": "cancel", "order_id": order_id}))
            order = self._paper_orders.get(symbol, {}).pop(order_id, None)
            return None if order is None else replace(order, status="CANCELED")
        try:
            body = await self.gateway.call("DELETE", "/fapi/v1/order", {"symbol": symbol, "orderId": order_id})
        except VenueRejection as exc:
            if exc.code == UNKNOWN_ORDER_CODE:
                return None
            raise
        return parse_order(body)

    async def cancel_batch_orders(self, symbol: str, order_ids: Sequence[str]) -> int:
        """Bulk cancel. Returns how many the venue confirmed."""
        if self.paper_mode:
            log.info(json.dumps({"event": "paper_ack", "symbol": symbol, "op": "cancel_batch", "count": len(order_ids)}))
            book = self._paper_orders.get(symbol, {})
            for order_id in order_ids:
                book.pop(order_id, None)
            return len(order_ids)
        confirmed = 0
        for start in range(0, len(order_ids), BATCH_LIMIT * 2):
            chunk = [int(oid) for oid in order_ids[start:start + BATCH_LIMIT * 2]]
            body = await self.gateway.call(
                "DELETE", "/fapi/v1/batchOrders",
                {"symbol": symbol, "orderIdList": json.dumps(chunk, separators=(",", ":"))},
            )
            if not isinstance(body, list):
                raise StaleDataError("batch cancel: expected list")
            confirmed += sum(1 for row in body if isinstance(row, dict) and "orderId" in row)
        return confirmed

    async def cancel_all_orders(self, symbol: str) -> None:
        if self.paper_mode:
            log.info(json.dumps({"event": "paper_ack", "symbol": symbol, "op": "cancel_all"}))
            self._paper_orders.pop(symbol, None)
            return
        await self.gateway.call("DELETE", "/fapi/v1/allOpenOrders", {"symbol": symbol})

    # ------------------------------------------------------------------

    @staticmethod
    def _order_params(request: OrderRequest, client_id: str) -> Dict[str, Any]:
        return {
            "symbol": request.symbol,
            "side": request.side.upper(),
            "type": "LIMIT",
            "timeInForce": "GTX" if request.post_only else "GTC",
            "quantity": float(request.quantity),
            "price": float(request.price),
            "reduceOnly": True if request.reduce_only else None,
            "newClientOrderId": client_id,
        }

    def _paper_ack(
        self, request: OrderRequest, client_id: str, order_type: str = "LIMIT", trigger_price: float = 0.0,
    ) -> Order:
        order = Order(
            order_id=f"paper-{next(self._paper_ids)}",
            symbol=request.symbol,
            side=request.side.upper(),
            type=order_type,
            price=request.price,
            quantity=request.quantity,
            status="NEW",
            trigger_price=trigger_price,
            created_at_ms=now_ms(),
            client_order_id=client_id,
            reduce_only=request.reduce_only,
        )
        self._paper_orders.setdefault(request.symbol, {})[order.order_id] = order
        log.info(json.dumps({
            "event": "paper_ack", "symbol": request.symbol, "op": "place",
            "side": order.side, "qty": order.quantity, "px": order.price, "order_id": order.order_id,
        }))
        return order
