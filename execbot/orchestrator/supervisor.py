"""
WorkerSupervisor: one isolated worker task per instrument plus reconciliation.

Responsibilities:
- Run every InstrumentWorker and the ReconciliationService concurrently
- Keep one worker's failure away from the others (each tick is wrapped,
  and a crashed loop is restarted)
- Apply the long rate-limit backoff to every component when the venue
  throttles, with a single operator notification per cooldown
- Cooperative shutdown: stop() sets an event checked between calls, an
  in-flight order submission always completes

Per-tick flow (InstrumentWorker.run_once):
1. Skip if the backoff gate is active
2. Apply the latest pending AttachEvent from reconciliation
3. Read last price, position, open orders; refresh candles when due
4. Ask the strategy for a signal
5. lifecycle.tick(signal, snapshot)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, TYPE_CHECKING

from execbot.core.errors import ExecBotError, RateLimitedError, StaleDataError
from execbot.core.models import Candle
from execbot.core.utils import wait_for_stop
from execbot.execution.order_lifecycle import AttachEvent, TickAction, TickSnapshot
from execbot.strategy.indicators import trend_snapshot

if TYPE_CHECKING:
    from execbot.execution.order_lifecycle import OrderLifecycle
    from execbot.execution.reconciliation_service import ReconciliationService
    from execbot.execution.venue_client import VenueClient
    from execbot.monitoring.metrics import ExecMetrics
    from execbot.monitoring.notifier import Notifier
    from execbot.risk.backoff import RateLimitBackoff
    from execbot.strategy.signals import SignalSource

log = logging.getLogger("execbot")

RateLimitHandler = Callable[[Exception], Awaitable[None]]


@dataclass
class WorkerConfig:
    """Configuration for InstrumentWorker."""
    tick_interval_sec: float = 5.0
    candle_interval: str = "5m"
    candle_limit: int = 120
    candle_refresh_sec: float = 30.0
    trend_fast: int = 9
    trend_slow: int = 21
    rsi_length: int = 14
    log_event_callback: Optional[Callable[..., None]] = None


@dataclass
class WorkerTickResult:
    """Outcome of one worker tick."""
    symbol: str
    ran: bool
    action: TickAction = TickAction.NONE
    skipped_reason: Optional[str] = None
    error: Optional[str] = None
    rate_limited: bool = False


class InstrumentWorker:
    """Drives one OrderLifecycle on a fixed cadence."""

    def __init__(
        self,
        symbol: str,
        client: "VenueClient",
        lifecycle: "OrderLifecycle",
        strategy: "SignalSource",
        backoff: "RateLimitBackoff",
        config: Optional[WorkerConfig] = None,
        metrics: Optional["ExecMetrics"] = None,
        on_rate_limited: Optional[RateLimitHandler] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.symbol = symbol
        self.client = client
        self.lifecycle = lifecycle
        self.strategy = strategy
        self.backoff = backoff
        self.config = config or WorkerConfig()
        self.metrics = metrics
        self._on_rate_limited = on_rate_limited
        self._clock = clock

        self._pending_attach: Optional[AttachEvent] = None
        self._candles: List[Candle] = []
        self._candles_at: float = 0.0
        self.ticks: int = 0

        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.DEBUG if event in ("tick_done", "tick_stopped") else logging.WARNING
        log.log(level, json.dumps({"event": event, "symbol": self.symbol, **kwargs}, default=str))

    def post_attach(self, event: AttachEvent) -> None:
        """Called by reconciliation. Only the latest truth is kept."""
        self._pending_attach = event

    async def run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            started = self._clock()
            await self.run_once(stop_event)
            if stop_event.is_set():
                break
            if self.backoff.is_active:
                delay = self.backoff.remaining
            else:
                delay = self.config.tick_interval_sec - (self._clock() - started)
            await wait_for_stop(stop_event, delay)

    async def run_once(self, stop_event: Optional[asyncio.Event] = None) -> WorkerTickResult:
        """
        One tick. Never raises for venue or strategy failures.

        With a stop_event, the tick returns at the next suspension point once
        it is set: no attach and no lifecycle step (so no new order) after stop.
        An in-flight venue call still completes.
        """
        if self.backoff.is_active:
            self._log_event("tick_skipped_backoff", remaining_sec=round(self.backoff.remaining, 1))
            return WorkerTickResult(self.symbol, ran=False, skipped_reason="backoff")

        started = self._clock()
        self.ticks += 1
        try:
            if self._stopping(stop_event):
                return self._stopped()
            event, self._pending_attach = self._pending_attach, None
            if event is not None:
                await self.lifecycle.attach(event)
                if self._stopping(stop_event):
                    return self._stopped()
            snapshot = await self._snapshot(stop_event)
            if snapshot is None or self._stopping(stop_event):
                return self._stopped()
            signal = self.strategy.evaluate(self.symbol, self._candles, snapshot.trend)
            result = await self.lifecycle.tick(signal, snapshot)
        except RateLimitedError as exc:
            await self._handle_rate_limit(exc)
            return WorkerTickResult(self.symbol, ran=True, error=str(exc), rate_limited=True)
        except StaleDataError as exc:
            self._log_event("tick_no_data", error=str(exc))
            self._count_error(exc)
            return WorkerTickResult(self.symbol, ran=True, error=str(exc))
        except ExecBotError as exc:
            self._log_event("tick_error", error=str(exc), error_type=type(exc).__name__)
            self._count_error(exc)
            return WorkerTickResult(self.symbol, ran=True, error=str(exc))
        except Exception as exc:
            log.exception(json.dumps({"event": "tick_crashed", "symbol": self.symbol, "error": str(exc)}))
            self._count_error(exc)
            return WorkerTickResult(self.symbol, ran=True, error=str(exc))

        if self.metrics:
            self.metrics.tick_duration_ms.labels(symbol=self.symbol).observe((self._clock() - started) * 1000)
        self._log_event("tick_done", phase=result.phase.name, actions=[a.name for a in result.actions])
        return WorkerTickResult(self.symbol, ran=True, action=result.action)

    @staticmethod
    def _stopping(stop_event: Optional[asyncio.Event]) -> bool:
        return stop_event is not None and stop_event.is_set()

    def _stopped(self) -> WorkerTickResult:
        self._log_event("tick_stopped")
        return WorkerTickResult(self.symbol, ran=True, skipped_reason="stopping")

    async def _snapshot(self, stop_event: Optional[asyncio.Event] = None) -> Optional[TickSnapshot]:
        """Venue reads for one tick; None when stop was requested between reads."""
        cfg = self.config
        price = await self.client.get_last_price(self.symbol)
        if self._stopping(stop_event):
            return None
        position = await self.client.get_position(self.symbol)
        if self._stopping(stop_event):
            return None
        orders = await self.client.get_open_orders(self.symbol)
        if self._stopping(stop_event):
            return None

        now = self._clock()
        if not self._candles or now - self._candles_at >= cfg.candle_refresh_sec:
            candles = await self.client.get_recent_candles(self.symbol, cfg.candle_interval, cfg.candle_limit)
            # Drop the still-forming candle.
            self._candles = candles[:-1] if len(candles) > 1 else candles
            self._candles_at = now
        trend = trend_snapshot(self._candles, cfg.trend_fast, cfg.trend_slow, cfg.rsi_length)
        return TickSnapshot(price=price, position=position, open_orders=orders, trend=trend)

    async def _handle_rate_limit(self, exc: Exception) -> None:
        if self._on_rate_limited is not None:
            await self._on_rate_limited(exc)
        else:
            await self.backoff.trip(exc)

    def _count_error(self, exc: Exception) -> None:
        if self.metrics:
            self.metrics.tick_errors.labels(symbol=self.symbol, error_type=type(exc).__name__).inc()


@dataclass
class SupervisorConfig:
    """Configuration for WorkerSupervisor."""
    notify_cooldown_sec: float = 300.0
    restart_delay_sec: float = 5.0
    startup_reconcile: bool = True


class WorkerSupervisor:
    """
    Usage:
        supervisor = WorkerSupervisor(workers, reconciliation, reconcile_backoff, notifier)
        run_task = asyncio.create_task(supervisor.run())
        ...
        supervisor.stop()
        await run_task
    """

    def __init__(
        self,
        workers: List[InstrumentWorker],
        reconciliation: "ReconciliationService",
        reconcile_backoff: "RateLimitBackoff",
        notifier: Optional["Notifier"] = None,
        config: Optional[SupervisorConfig] = None,
    ) -> None:
        self.workers = workers
        self.reconciliation = reconciliation
        self.reconcile_backoff = reconcile_backoff
        self.notifier = notifier
        self.config = config or SupervisorConfig()
        self._stop = asyncio.Event()
        self.restarts: int = 0
        for worker in workers:
            worker._on_rate_limited = self.on_rate_limited

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    async def on_rate_limited(self, exc: Exception) -> None:
        """
        Venue limits are per account/IP: every worker and the reconciliation
        loop back off together, and the operator hears about it once.
        """
        for worker in self.workers:
            await worker.backoff.trip(exc, notify=False)
        await self.reconcile_backoff.trip(exc, notify=False)
        if self.notifier is not None:
            await self.notifier.notify_once(
                "rate_limit",
                f"venue rate limit hit ({exc}); pausing all symbols for "
                f"{int(self.reconcile_backoff.config.backoff_sec)}s",
                cooldown_sec=self.config.notify_cooldown_sec,
            )

    async def run(self) -> None:
        symbols = [w.symbol for w in self.workers]
        log.info(json.dumps({"event": "supervisor_start", "symbols": symbols}))

        if self.config.startup_reconcile:
            try:
                await self.reconciliation.reconcile_once(self._stop)
            except RateLimitedError as exc:
                await self.on_rate_limited(exc)
            except Exception as exc:
                log.warning(json.dumps({"event": "startup_reconcile_error", "error": str(exc)}))

        async with asyncio.TaskGroup() as tg:
            for worker in self.workers:
                tg.create_task(self._supervise(f"worker:{worker.symbol}", worker.run), name=worker.symbol)
            tg.create_task(self._supervise("reconcile", self._run_reconciliation), name="reconcile")

        log.info(json.dumps({"event": "supervisor_stopped", "restarts": self.restarts}))

    async def _run_reconciliation(self, stop_event: asyncio.Event) -> None:
        await self.reconciliation.run(stop_event, self.reconcile_backoff, self.on_rate_limited)

    async def _supervise(self, name: str, loop_fn: Callable[[asyncio.Event], Awaitable[None]]) -> None:
        """Run a loop until stop; restart it if it ever escapes with an exception."""
        while not self._stop.is_set():
            try:
                await loop_fn(self._stop)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.restarts += 1
                log.error(json.dumps({"event": "loop_crashed", "component": name, "error": str(exc)}))
                if self.notifier is not None:
                    await self.notifier.notify_once(f"crash:{name}", f"{name} crashed: {exc}; restarting")
                await wait_for_stop(self._stop, self.config.restart_delay_sec)
