"""
Operator notifications over a webhook (Slack or generic JSON).

Delivery is best effort: failures are logged and swallowed so a broken
webhook can never affect trading state. Without a URL, messages are only
logged.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import aiohttp

logger = logging.getLogger("execbot")


@dataclass
class NotifierConfig:
    """Configuration for operator notifications."""
    webhook_url: Optional[str] = None
    webhook_type: str = "slack"  # slack, generic
    enabled: bool = True
    timeout_sec: float = 10.0
    retries: int = 1
    bot_name: str = "execbot"
    default_cooldown_sec: float = 300.0


class Notifier:
    """
    Usage:
        notifier = Notifier(NotifierConfig(webhook_url=url))
        await notifier.send("BTCUSDT entry placed 0.01 @ 60000")
        await notifier.notify_once("rate_limit:worker", "Rate limited, backing off 120s")
        await notifier.close()
    """

    def __init__(
        self,
        config: Optional[NotifierConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or NotifierConfig()
        self._clock = clock
        self._last_sent: Dict[str, float] = {}
        self._session: Optional[aiohttp.ClientSession] = None
        self.sent_count = 0
        self.suppressed_count = 0

    def _format(self, message: str) -> Dict[str, Any]:
        if self.config.webhook_type == "slack":
            return {"username": self.config.bot_name, "text": message}
        return {"source": self.config.bot_name, "message": message, "timestamp_ms": int(self._clock() * 1000)}

    async def send(self, message: str) -> bool:
        """Deliver one message. Never raises."""
        logger.info(json.dumps({"event": "notify", "message": message}))
        if not self.config.enabled or not self.config.webhook_url:
            return False
        ok = await self._http_post(self._format(message))
        if ok:
            self.sent_count += 1
        return ok

    async def notify_once(self, key: str, message: str, cooldown_sec: Optional[float] = None) -> bool:
        """Send unless the same key was sent within the cooldown window."""
        cooldown = self.config.default_cooldown_sec if cooldown_sec is None else cooldown_sec
        now = self._clock()
        last = self._last_sent.get(key)
        if last is not None and now - last < cooldown:
            self.suppressed_count += 1
            return False
        self._last_sent[key] = now
        await self.send(message)
        return True

    async def _http_post(self, payload: Dict[str, Any]) -> bool:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.config.timeout_sec))
        for attempt in range(self.config.retries + 1):
            try:
                async with self._session.post(self.config.webhook_url, json=payload) as resp:
                    if resp.status < 300:
                        return True
                    logger.warning(json.dumps({"event": "notify_failed", "status": resp.status}))
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.warning(json.dumps({"event": "notify_failed", "attempt": attempt + 1, "error": str(exc)}))
            if attempt < self.config.retries:
                await asyncio.sleep(1 * (attempt + 1))
        return False

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
