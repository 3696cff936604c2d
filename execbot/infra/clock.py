"""
Venue clock offset tracking.

Signed requests must carry a timestamp within recvWindow of the venue's
clock. ServerClock keeps offset_ms = local_now - venue_now and refreshes it
when older than sync_interval_sec. One instance per gateway; tests inject
a fixed offset with set_offset().
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Optional

log = logging.getLogger("execbot")

ServerTimeSource = Callable[[], Awaitable[int]]


def now_ms() -> int:
    return int(time.time() * 1000)


class ServerClock:
    """
    Process-wide clock offset for one venue connection.

    Reads are lock-free once synced; the lock only serialises the
    check-stale-then-resync sequence so concurrent workers trigger at most
    one time request.
    """

    def __init__(
        self,
        fetch_server_time: Optional[ServerTimeSource] = None,
        sync_interval_sec: float = 300.0,
        local_ms: Callable[[], int] = now_ms,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> None:
        self._fetch = fetch_server_time
        self.sync_interval_sec = sync_interval_sec
        self._local_ms = local_ms
        self.offset_ms: int = 0
        self.last_synced_ms: Optional[int] = None
        self._lock = asyncio.Lock()
        self._log_event = log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if event.endswith("failed") else logging.DEBUG
        log.log(level, json.dumps({"event": event, **kwargs}))

    def bind_source(self, fetch_server_time: ServerTimeSource) -> None:
        """Attach the venue time endpoint if none was injected."""
        if self._fetch is None:
            self._fetch = fetch_server_time

    def set_offset(self, offset_ms: int) -> None:
        """Pin the offset and mark it fresh."""
        self.offset_ms = int(offset_ms)
        self.last_synced_ms = self._local_ms()

    def is_stale(self) -> bool:
        if self.last_synced_ms is None:
            return True
        return self._local_ms() - self.last_synced_ms > self.sync_interval_sec * 1000

    async def sync(self) -> bool:
        """Force a resync. Returns True when the venue answered."""
        async with self._lock:
            return await self._sync_locked()

    async def timestamp_ms(self) -> int:
        """Venue-aligned timestamp, resyncing first when the offset is stale."""
        if self.is_stale():
            async with self._lock:
                # Another worker may have refreshed while we waited.
                if self.is_stale():
                    await self._sync_locked()
        return self._local_ms() - self.offset_ms

    async def _sync_locked(self) -> bool:
        if self._fetch is None:
            self.last_synced_ms = self._local_ms()
            return False
        before = self._local_ms()
        try:
            server_ms = int(await self._fetch())
        except Exception as exc:
            # Keep the last offset; still advance last_synced_ms so an
            # unreachable time endpoint is not hammered on every request.
            self.last_synced_ms = self._local_ms()
            self._log_event("time_sync_failed", error=str(exc), offset_ms=self.offset_ms)
            return False
        after = self._local_ms()
        local = before + (after - before) // 2
        self.offset_ms = local - server_ms
        self.last_synced_ms = after
        self._log_event("time_synced", offset_ms=self.offset_ms, rtt_ms=after - before)
        return True
