"""
Tests for request canonicalisation, HMAC signing and the venue clock.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from execbot.infra.clock import ServerClock
from execbot.infra.signing import HmacSigner, SignedRequest, canonical_query, format_value, normalize_params

# Published USD-M futures signing example
DOC_SECRET = "NhqPtmdSJYdKjVHjA7PZj4Mge3R5YNiP1e3UZjInClVN65XAbvqqM6A7H5fATj0j"
DOC_PAYLOAD = (
    "symbol=LTCBTC&side=BUY&type=LIMIT&timeInForce=GTC&quantity=1&price=0.1"
    "&recvWindow=5000&timestamp=1499827319559"
)
DOC_SIGNATURE = "c8db56825ae71d6d79447849e617115f4a920fa2acdcab2b053c4b2838bd6b71"


class TestSigning:
    def test_hmac_matches_published_vector(self):
        assert HmacSigner(DOC_SECRET).sign(DOC_PAYLOAD) == DOC_SIGNATURE

    def test_format_value(self):
        assert format_value(True) == "true"
        assert format_value(False) == "false"
        assert format_value(5) == "5"
        assert format_value(1e-05) == "0.00001"
        assert format_value(0.25) == "0.25"
        assert format_value(100.0) == "100"

    def test_normalize_sorts_and_drops_none(self):
        params = normalize_params({"symbol": "BTCUSDT", "limit": 5, "startTime": None, "interval": "5m"})
        assert params == (("interval", "5m"), ("limit", "5"), ("symbol", "BTCUSDT"))

    def test_build_appends_timestamp_and_window(self):
        signer = HmacSigner("secret")
        req = SignedRequest.build(
            "get", "/fapi/v2/positionRisk", {"symbol": "BTCUSDT", "timestamp": 1},
            timestamp_ms=1_700_000_000_000, signer=signer, recv_window_ms=5000,
        )
        assert req.method == "GET"
        keys = [k for k, _ in req.params]
        assert keys == sorted(keys)
        assert dict(req.params)["timestamp"] == "1700000000000"
        assert dict(req.params)["recvWindow"] == "5000"
        assert req.signature == signer.sign(canonical_query(req.params))
        assert req.url.endswith(f"&signature={req.signature}")

    def test_same_logical_request_same_signature(self):
        signer = HmacSigner("secret")
        a = SignedRequest.build("GET", "/x", {"b": 1, "a": 2}, 10, signer, 5000)
        b = SignedRequest.build("GET", "/x", [("a", 2), ("b", 1)], 10, signer, 5000)
        assert a.signature == b.signature
        assert a.url == b.url

    def test_unsigned_has_no_signature(self):
        req = SignedRequest.unsigned("GET", "/fapi/v1/ticker/price", {"symbol": "BTCUSDT"})
        assert req.url == "/fapi/v1/ticker/price?symbol=BTCUSDT"


class TestServerClock:
    @pytest.mark.asyncio
    async def test_timestamp_is_local_minus_offset(self):
        clock = ServerClock(local_ms=lambda: 1_000_000)
        clock.set_offset(250)
        assert await clock.timestamp_ms() == 1_000_000 - 250

    @pytest.mark.asyncio
    async def test_sync_measures_offset(self):
        fetch = AsyncMock(return_value=9_000)
        clock = ServerClock(fetch_server_time=fetch, local_ms=lambda: 10_000)
        assert clock.is_stale()
        assert await clock.timestamp_ms() == 9_000
        assert clock.offset_ms == 1_000
        fetch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_sync_keeps_previous_offset(self):
        fetch = AsyncMock(side_effect=RuntimeError("down"))
        clock = ServerClock(fetch_server_time=fetch, local_ms=lambda: 10_000)
        clock.set_offset(50)
        assert await clock.sync() is False
        assert clock.offset_ms == 50
        assert not clock.is_stale()

    @pytest.mark.asyncio
    async def test_concurrent_callers_trigger_one_sync(self):
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0)
            return 5_000

        clock = ServerClock(fetch_server_time=fetch, local_ms=lambda: 5_000)
        stamps = await asyncio.gather(*(clock.timestamp_ms() for _ in range(5)))
        assert calls == 1
        assert set(stamps) == {5_000}

    @pytest.mark.asyncio
    async def test_resync_after_interval(self):
        now = [0]
        fetch = AsyncMock(return_value=0)
        clock = ServerClock(fetch_server_time=fetch, sync_interval_sec=300, local_ms=lambda: now[0])
        await clock.timestamp_ms()
        now[0] = 299_000
        await clock.timestamp_ms()
        assert fetch.await_count == 1
        now[0] = 301_000
        await clock.timestamp_ms()
        assert fetch.await_count == 2
