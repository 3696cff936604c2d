"""
RateLimitBackoff: "do not act before" gate for rate-limited components.

Adapted from the circuit-breaker pattern: instead of counting an error
streak, a single rate-limit classification trips the gate for a long fixed
window. Operator notifications are suppressed per gate for a cooldown so a
ban does not turn into a notification storm.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from execbot.monitoring.metrics import ExecMetrics
    from execbot.monitoring.notifier import Notifier

log = logging.getLogger("execbot")


@dataclass
class BackoffConfig:
    """Configuration for rate-limit backoff."""
    backoff_sec: float = 120.0
    notify_cooldown_sec: float = 300.0


class RateLimitBackoff:
    """
    Thread-safe for single-threaded asyncio usage (no internal locks).

    Usage:
        gate = RateLimitBackoff("worker:BTCUSDT", BackoffConfig(), notifier)
        if gate.is_active:
            ...skip this tick...
        except RateLimitedError as exc:
            await gate.trip(exc)
    """

    def __init__(
        self,
        name: str,
        config: Optional[BackoffConfig] = None,
        notifier: Optional["Notifier"] = None,
        metrics: Optional["ExecMetrics"] = None,
        clock: Callable[[], float] = time.time,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.name = name
        self.config = config or BackoffConfig()
        self.notifier = notifier
        self.metrics = metrics
        self._clock = clock
        self._not_before: float = 0.0
        self.trip_count: int = 0
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.warning(json.dumps({"event": event, "component": self.name, **kwargs}))

    @property
    def not_before(self) -> float:
        return self._not_before

    @property
    def is_active(self) -> bool:
        return self._clock() < self._not_before

    @property
    def remaining(self) -> float:
        return max(0.0, self._not_before - self._clock())

    async def trip(self, error: Exception, notify: bool = True) -> None:
        """Extend the gate by backoff_sec from now and notify at most once per cooldown."""
        self._not_before = max(self._not_before, self._clock() + self.config.backoff_sec)
        self.trip_count += 1
        self._log_event("rate_limited_backoff", backoff_sec=self.config.backoff_sec,
                        trip_count=self.trip_count, error=str(error)[:300])
        if self.metrics:
            self.metrics.rate_limited.labels(component=self.name).inc()
        if notify and self.notifier is not None:
            await self.notifier.notify_once(
                f"rate_limit:{self.name}",
                f"{self.name}: venue rate limit, pausing {int(self.config.backoff_sec)}s",
                cooldown_sec=self.config.notify_cooldown_sec,
            )
