"""
SignedRequestGateway: authenticated, clock-corrected HTTP access to the venue.

Every venue call in the process goes through one gateway instance:

    call(method, path, params, signed) -> body        raises on failure
    call_result(...)                   -> CallResult  never raises

Signed calls are stamped with timestamp = local_now - offset_ms and a
recvWindow, canonicalised, HMAC-signed and sent with the API key header.
Only GET requests are retried, and only on transport failures; a venue
rejection or any mutating call is surfaced on the first failure.

Rate-limit responses are classified (RateLimitedError) but never retried
here. The minutes-long backoff is the caller's policy.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Optional, Tuple

import httpx

from execbot.core.errors import (
    ExecBotError,
    RateLimitedError,
    StaleDataError,
    TransportError,
    VenueError,
    VenueRejection,
)
from execbot.infra.clock import ServerClock
from execbot.infra.signing import HmacSigner, SignedRequest

log = logging.getLogger("execbot")

API_KEY_HEADER = "X-MBX-APIKEY"
RATE_LIMIT_STATUSES = frozenset({418, 429})
_RATE_LIMIT_CODE_RE = re.compile(r'"code"\s*:\s*-1003\b')
_RATE_LIMIT_PHRASES = ("too many requests", "banned until")


def is_rate_limited(status: Optional[int], body: Optional[str]) -> bool:
    """True when a failed response means the venue is throttling us."""
    if status in RATE_LIMIT_STATUSES:
        return True
    if not body:
        return False
    if _RATE_LIMIT_CODE_RE.search(body):
        return True
    lowered = body.lower()
    return any(phrase in lowered for phrase in _RATE_LIMIT_PHRASES)


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitedError):
        return True
    if isinstance(exc, VenueError):
        return is_rate_limited(exc.status, exc.body)
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """Linear backoff: sleep attempt * backoff_step_sec between attempts."""
    max_attempts: int = 3
    backoff_step_sec: float = 0.5

    def delay(self, attempt: int) -> float:
        return attempt * self.backoff_step_sec


NO_RETRY = RetryPolicy(max_attempts=1)


class CallOutcome(Enum):
    OK = auto()
    TRANSPORT_ERROR = auto()
    VENUE_ERROR = auto()


@dataclass
class CallResult:
    """Typed result of a (possibly retried) venue call."""
    outcome: CallOutcome
    body: Any = None
    status: Optional[int] = None
    error: Optional[ExecBotError] = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.outcome is CallOutcome.OK

    @property
    def rate_limited(self) -> bool:
        return self.error is not None and is_rate_limit_error(self.error)

    def unwrap(self) -> Any:
        if self.ok:
            return self.body
        assert self.error is not None
        raise self.error


@dataclass
class GatewayConfig:
    """Configuration for SignedRequestGateway."""
    base_url: str = "https://fapi.binance.com"
    recv_window_ms: int = 5000
    timeout_sec: float = 10.0
    time_sync_interval_sec: float = 300.0
    time_path: str = "/fapi/v1/time"
    read_retry: RetryPolicy = field(default_factory=RetryPolicy)
    log_event_callback: Optional[Callable[..., None]] = None


class SignedRequestGateway:
    """
    Usage:
        gateway = SignedRequestGateway(api_key, api_secret, GatewayConfig(base_url=...))
        body = await gateway.call("GET", "/fapi/v2/positionRisk", {"symbol": "BTCUSDT"})
        await gateway.close()
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        config: Optional[GatewayConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[ServerClock] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or GatewayConfig()
        self._api_key = api_key
        self._signer = HmacSigner(api_secret)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.config.base_url.rstrip("/"),
            timeout=self.config.timeout_sec,
        )
        self.clock = clock or ServerClock(sync_interval_sec=self.config.time_sync_interval_sec)
        self.clock.bind_source(self.server_time)
        self._sleep = sleep
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.warning(json.dumps({"event": event, **kwargs}))

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def server_time(self) -> int:
        body = await self.call("GET", self.config.time_path, signed=False, retry=NO_RETRY)
        try:
            return int(body["serverTime"])
        except (KeyError, TypeError, ValueError) as exc:
            raise StaleDataError(f"unexpected time payload: {body!r}") from exc

    async def call(
        self,
        method: str,
        path: str,
        params: Any = None,
        signed: bool = True,
        retry: Optional[RetryPolicy] = None,
    ) -> Any:
        result = await self.call_result(method, path, params, signed=signed, retry=retry)
        return result.unwrap()

    async def call_result(
        self,
        method: str,
        path: str,
        params: Any = None,
        signed: bool = True,
        retry: Optional[RetryPolicy] = None,
    ) -> CallResult:
        method = method.upper()
        policy = retry or self.config.read_retry
        # Mutating calls are never replayed: a lost ack could mean a live order.
        attempts = max(1, policy.max_attempts) if method == "GET" else 1

        for attempt in range(1, attempts + 1):
            try:
                status, body = await self._send_once(method, path, params, signed)
                return CallResult(CallOutcome.OK, body=body, status=status, attempts=attempt)
            except TransportError as exc:
                if attempt >= attempts:
                    return CallResult(CallOutcome.TRANSPORT_ERROR, error=exc, attempts=attempt)
                delay = policy.delay(attempt)
                self._log_event("gateway_retry", method=method, path=path, attempt=attempt,
                                delay_sec=delay, error=str(exc))
                await self._sleep(delay)
            except VenueError as exc:
                return CallResult(CallOutcome.VENUE_ERROR, status=exc.status, error=exc, attempts=attempt)
            except StaleDataError as exc:
                return CallResult(CallOutcome.VENUE_ERROR, error=exc, attempts=attempt)
        raise AssertionError("unreachable")  # pragma: no cover

    async def _build(self, method: str, path: str, params: Any, signed: bool) -> SignedRequest:
        if not signed:
            return SignedRequest.unsigned(method, path, params)
        timestamp = await self.clock.timestamp_ms()
        return SignedRequest.build(
            method, path, params, timestamp, self._signer,
            recv_window_ms=self.config.recv_window_ms,
        )

    async def _send_once(self, method: str, path: str, params: Any, signed: bool) -> Tuple[int, Any]:
        request = await self._build(method, path, params, signed)
        headers = {API_KEY_HEADER: self._api_key} if signed else {}
        try:
            resp = await self._client.request(request.method, request.url, headers=headers)
        except httpx.TransportError as exc:
            raise TransportError(str(exc) or type(exc).__name__, method, path) from exc

        if resp.status_code >= 400:
            text = resp.text
            if is_rate_limited(resp.status_code, text):
                raise RateLimitedError(resp.status_code, text, method, path)
            raise VenueRejection(resp.status_code, text, method, path)

        try:
            return resp.status_code, resp.json()
        except ValueError as exc:
            raise StaleDataError(f"{method} {path}: non-JSON body {resp.text[:200]!r}") from exc
