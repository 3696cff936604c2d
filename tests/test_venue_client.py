"""
Tests for VenueClient payload building and parsing against a mock transport.
"""

import json
from typing import Any, Callable, Dict, List
from urllib.parse import parse_qsl
from unittest.mock import AsyncMock

import httpx
import pytest

from execbot.core.errors import StaleDataError, VenueRejection
from execbot.core.models import OrderRequest
from execbot.execution.gateway import GatewayConfig, SignedRequestGateway
from execbot.execution.venue_client import VenueClient
from execbot.infra.clock import ServerClock


class Recorder:
    """Route table for MockTransport keyed by (method, path)."""

    def __init__(self, routes: Dict[tuple, Callable[[httpx.Request], httpx.Response]]):
        self.routes = routes
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            raise AssertionError(f"unexpected {request.method} {request.url.path}")
        return route(request)

    def params(self, index: int = -1) -> Dict[str, Any]:
        return dict(parse_qsl(self.requests[index].url.query.decode()))


def make_client(routes, paper_mode=False):
    recorder = Recorder(routes)
    http = httpx.AsyncClient(transport=httpx.MockTransport(recorder), base_url="https://venue.test")
    clock = ServerClock(local_ms=lambda: 1_700_000_000_000)
    clock.set_offset(0)
    gateway = SignedRequestGateway("k", "s", GatewayConfig(), client=http, clock=clock, sleep=AsyncMock())
    return VenueClient(gateway, paper_mode=paper_mode), recorder, http


def order_row(order_id=1, side="BUY", price="100.0", qty="0.250", executed="0", status="NEW", reduce_only=False):
    return {
        "orderId": order_id, "symbol": "BTCUSDT", "side": side, "type": "LIMIT", "price": price,
        "origQty": qty, "executedQty": executed, "status": status, "stopPrice": "0",
        "time": 1_700_000_000_000 + order_id, "clientOrderId": f"c{order_id}", "reduceOnly": reduce_only,
    }


class TestReads:
    @pytest.mark.asyncio
    async def test_position_nets_rows_for_symbol(self):
        rows = [
            {"symbol": "BTCUSDT", "positionAmt": "0.300", "entryPrice": "100", "markPrice": "101",
             "updateTime": 5, "positionSide": "LONG"},
            {"symbol": "BTCUSDT", "positionAmt": "-0.100", "entryPrice": "102", "markPrice": "101",
             "updateTime": 7, "positionSide": "SHORT"},
            {"symbol": "ETHUSDT", "positionAmt": "5", "entryPrice": "2000", "markPrice": "2000"},
        ]
        client, recorder, http = make_client({("GET", "/fapi/v2/positionRisk"): lambda r: httpx.Response(200, json=rows)})
        position = await client.get_position("BTCUSDT")
        await http.aclose()
        assert position.signed_quantity == pytest.approx(0.2)
        assert position.mark_price == pytest.approx(101.0)
        assert position.last_updated_ms == 7
        assert recorder.params()["symbol"] == "BTCUSDT"

    @pytest.mark.asyncio
    async def test_flat_position(self):
        rows = [{"symbol": "BTCUSDT", "positionAmt": "0", "entryPrice": "0", "markPrice": "100"}]
        client, _, http = make_client({("GET", "/fapi/v2/positionRisk"): lambda r: httpx.Response(200, json=rows)})
        position = await client.get_position("BTCUSDT")
        await http.aclose()
        assert position.is_flat

    @pytest.mark.asyncio
    async def test_open_orders_parsed(self):
        rows = [order_row(1), order_row(2, side="SELL", reduce_only=True, executed="0.1", status="PARTIALLY_FILLED")]
        client, _, http = make_client({("GET", "/fapi/v1/openOrders"): lambda r: httpx.Response(200, json=rows)})
        orders = await client.get_open_orders("BTCUSDT")
        await http.aclose()
        assert [o.order_id for o in orders] == ["1", "2"]
        assert orders[1].reduce_only
        assert orders[1].remaining == pytest.approx(0.15)
        assert all(o.is_open for o in orders)

    @pytest.mark.asyncio
    async def test_unexpected_shape_is_stale(self):
        client, _, http = make_client({("GET", "/fapi/v1/openOrders"): lambda r: httpx.Response(200, json={"x": 1})})
        with pytest.raises(StaleDataError):
            await client.get_open_orders("BTCUSDT")
        await http.aclose()

    @pytest.mark.asyncio
    async def test_candles_and_price(self):
        klines = [[1, "100", "101", "99", "100.5", "10", 2], [3, "100.5", "102", "100", "101.5", "12", 4]]
        client, recorder, http = make_client({
            ("GET", "/fapi/v1/klines"): lambda r: httpx.Response(200, json=klines),
            ("GET", "/fapi/v1/ticker/price"): lambda r: httpx.Response(200, json={"price": "101.5"}),
        })
        candles = await client.get_recent_candles("BTCUSDT", "5m", 2)
        price = await client.get_last_price("BTCUSDT")
        await http.aclose()
        assert [c.close for c in candles] == [100.5, 101.5]
        assert price == 101.5
        assert recorder.params(0) == {"interval": "5m", "limit": "2", "symbol": "BTCUSDT"}

    @pytest.mark.asyncio
    async def test_book_ticker(self):
        body = {"symbol": "BTCUSDT", "bidPrice": "100.1", "bidQty": "3", "askPrice": "100.2", "askQty": "1"}
        client, recorder, http = make_client({("GET", "/fapi/v1/ticker/bookTicker"): lambda r: httpx.Response(200, json=body)})
        ticker = await client.get_book_ticker("BTCUSDT")
        await http.aclose()
        assert (ticker.bid, ticker.ask) == (100.1, 100.2)
        assert ticker.mid == pytest.approx(100.15)
        assert "signature" not in recorder.requests[0].url.query.decode()

    @pytest.mark.asyncio
    async def test_net_pnl_sums_income(self):
        income = [
            {"symbol": "BTCUSDT", "incomeType": "REALIZED_PNL", "income": "5.0", "asset": "USDT", "time": 1},
            {"symbol": "BTCUSDT", "incomeType": "COMMISSION", "income": "-0.4", "asset": "USDT", "time": 2},
            {"symbol": "BTCUSDT", "incomeType": "FUNDING_FEE", "income": "-0.1", "asset": "USDT", "time": 3},
            {"symbol": "BTCUSDT", "incomeType": "TRANSFER", "income": "100", "asset": "USDT", "time": 4},
        ]
        client, recorder, http = make_client({("GET", "/fapi/v1/income"): lambda r: httpx.Response(200, json=income)})
        pnl = await client.get_net_pnl("BTCUSDT", since_ms=123)
        await http.aclose()
        assert pnl.net == pytest.approx(4.5)
        assert pnl.commission == pytest.approx(-0.4)
        assert recorder.params()["startTime"] == "123"
        assert "endTime" not in recorder.params()


class TestMutations:
    @pytest.mark.asyncio
    async def test_limit_order_is_post_only(self):
        client, recorder, http = make_client({
            ("POST", "/fapi/v1/order"): lambda r: httpx.Response(200, json=order_row(9)),
        })
        order = await client.place_limit_order(OrderRequest("BTCUSDT", "buy", 0.25, 99.9))
        await http.aclose()
        params = recorder.params()
        assert params["timeInForce"] == "GTX"
        assert params["type"] == "LIMIT"
        assert params["side"] == "BUY"
        assert params["quantity"] == "0.25"
        assert params["price"] == "99.9"
        assert "reduceOnly" not in params
        assert params["newClientOrderId"].startswith("eb-")
        assert order.order_id == "9"

    @pytest.mark.asyncio
    async def test_reduce_only_flag_sent(self):
        client, recorder, http = make_client({
            ("POST", "/fapi/v1/order"): lambda r: httpx.Response(200, json=order_row(9, side="SELL", reduce_only=True)),
        })
        await client.place_limit_order(OrderRequest("BTCUSDT", "SELL", 0.25, 100.1, reduce_only=True))
        await http.aclose()
        assert recorder.params()["reduceOnly"] == "true"

    @pytest.mark.asyncio
    async def test_protective_stop_closes_position(self):
        row = dict(order_row(11, side="SELL"), type="STOP_MARKET", price="0", origQty="0",
                   stopPrice="97.5", reduceOnly=True, closePosition=True)
        client, recorder, http = make_client({
            ("POST", "/fapi/v1/order"): lambda r: httpx.Response(200, json=row),
        })
        order = await client.place_stop_order("BTCUSDT", "sell", 97.5)
        await http.aclose()
        params = recorder.params()
        assert params["type"] == "STOP_MARKET"
        assert params["side"] == "SELL"
        assert params["stopPrice"] == "97.5"
        assert params["closePosition"] == "true"
        assert params["workingType"] == "MARK_PRICE"
        assert "timeInForce" not in params and "quantity" not in params
        assert order.is_conditional and order.reduce_only
        assert order.trigger_price == 97.5

    @pytest.mark.asyncio
    async def test_cancel_unknown_order_returns_none(self):
        body = {"code": -2011, "msg": "Unknown order sent."}
        client, _, http = make_client({("DELETE", "/fapi/v1/order"): lambda r: httpx.Response(400, json=body)})
        assert await client.cancel_order("BTCUSDT", "42") is None
        await http.aclose()

    @pytest.mark.asyncio
    async def test_cancel_other_rejection_raises(self):
        body = {"code": -1021, "msg": "Timestamp outside recvWindow"}
        client, _, http = make_client({("DELETE", "/fapi/v1/order"): lambda r: httpx.Response(400, json=body)})
        with pytest.raises(VenueRejection):
            await client.cancel_order("BTCUSDT", "42")
        await http.aclose()

    @pytest.mark.asyncio
    async def test_batch_orders_mix_results(self):
        rows = [order_row(1), {"code": -2010, "msg": "would match"}]
        client, recorder, http = make_client({("POST", "/fapi/v1/batchOrders"): lambda r: httpx.Response(200, json=rows)})
        results = await client.place_batch_orders([
            OrderRequest("BTCUSDT", "BUY", 0.1, 99.0),
            OrderRequest("BTCUSDT", "BUY", 0.1, 101.0),
        ])
        await http.aclose()
        assert results[0].order_id == "1"
        assert isinstance(results[1], VenueRejection)
        assert results[1].code == -2010
        sent = json.loads(recorder.params()["batchOrders"])
        assert [o["price"] for o in sent] == ["99", "101"]

    @pytest.mark.asyncio
    async def test_batch_cancel_chunks(self):
        def handler(request):
            ids = json.loads(dict(parse_qsl(request.url.query.decode()))["orderIdList"])
            return httpx.Response(200, json=[{"orderId": i} for i in ids])

        client, recorder, http = make_client({("DELETE", "/fapi/v1/batchOrders"): handler})
        count = await client.cancel_batch_orders("BTCUSDT", [str(i) for i in range(1, 13)])
        await http.aclose()
        assert count == 12
        assert len(recorder.requests) == 2


class TestPaperMode:
    @pytest.mark.asyncio
    async def test_mutations_never_reach_venue(self):
        client, recorder, http = make_client({}, paper_mode=True)
        first = await client.place_limit_order(OrderRequest("BTCUSDT", "BUY", 0.25, 99.9))
        second = await client.place_limit_order(OrderRequest("BTCUSDT", "SELL", 0.25, 100.1, reduce_only=True))
        cancelled = await client.cancel_order("BTCUSDT", first.order_id)
        count = await client.cancel_batch_orders("BTCUSDT", ["1", "2"])
        await client.cancel_all_orders("BTCUSDT")
        await http.aclose()
        assert first.order_id == "paper-1"
        assert second.order_id == "paper-2"
        assert second.reduce_only
        assert cancelled.status == "CANCELED"
        assert count == 2
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_simulated_orders_rest_in_open_orders(self):
        venue_side = [order_row(7)]
        client, recorder, http = make_client(
            {("GET", "/fapi/v1/openOrders"): lambda r: httpx.Response(200, json=venue_side)},
            paper_mode=True,
        )
        entry = await client.place_limit_order(OrderRequest("BTCUSDT", "BUY", 0.25, 99.9))
        stop = await client.place_stop_order("BTCUSDT", "SELL", 97.0)
        listed = await client.get_open_orders("BTCUSDT")
        assert [o.order_id for o in listed] == ["7", entry.order_id, stop.order_id]
        assert stop.type == "STOP_MARKET" and stop.trigger_price == 97.0

        await client.cancel_order("BTCUSDT", entry.order_id)
        assert await client.cancel_order("BTCUSDT", entry.order_id) is None
        await client.cancel_all_orders("BTCUSDT")
        listed = await client.get_open_orders("BTCUSDT")
        await http.aclose()
        assert [o.order_id for o in listed] == ["7"]
        assert all(r.method == "GET" for r in recorder.requests)
