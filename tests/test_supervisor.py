"""
Tests for InstrumentWorker and WorkerSupervisor.

Tests cover:
- Per-tick flow (attach, snapshot, signal, lifecycle)
- Error containment per worker
- Shared rate-limit backoff across all components
- Loop restart and cooperative shutdown
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeRulesCache, FakeVenue
from execbot.core.errors import RateLimitedError, StaleDataError
from execbot.core.models import Candle, InstrumentRules, Position
from execbot.execution.order_lifecycle import (
    AttachEvent,
    LifecycleConfig,
    LifecyclePhase,
    OrderLifecycle,
    TickAction,
)
from execbot.execution.reconciliation_service import ReconciliationService
from execbot.monitoring.metrics import ExecMetrics
from execbot.orchestrator.supervisor import (
    InstrumentWorker,
    SupervisorConfig,
    WorkerConfig,
    WorkerSupervisor,
)
from execbot.risk.backoff import BackoffConfig, RateLimitBackoff
from execbot.strategy.signals import Direction, Signal


def make_strategy(signal=None):
    strategy = MagicMock()
    strategy.evaluate = MagicMock(return_value=signal or Signal.none())
    return strategy


def make_worker(venue, rules_cache, clock, strategy=None, metrics=None, **overrides):
    lifecycle = OrderLifecycle(venue.symbol, venue, rules_cache, LifecycleConfig(),
                               capital=lambda: 1000.0, clock=clock)
    backoff = RateLimitBackoff(f"worker:{venue.symbol}", BackoffConfig(backoff_sec=120), clock=clock)
    return InstrumentWorker(
        venue.symbol, venue, lifecycle, strategy or make_strategy(), backoff,
        config=WorkerConfig(**overrides), metrics=metrics, clock=clock,
    )


def make_candles(n=30, start=100.0):
    return [
        Candle(open_time_ms=i * 300_000, open=start + i * 0.1, high=start + i * 0.1 + 0.5,
               low=start + i * 0.1 - 0.5, close=start + (i + 1) * 0.1, volume=10.0)
        for i in range(n)
    ]


def make_notifier():
    notifier = MagicMock()
    notifier.send = AsyncMock(return_value=True)
    notifier.notify_once = AsyncMock(return_value=True)
    return notifier


class TestWorkerTick:
    @pytest.mark.asyncio
    async def test_signal_flows_into_lifecycle(self, venue, rules_cache, clock):
        strategy = make_strategy(Signal(Direction.LONG, reason="cross"))
        metrics = ExecMetrics()
        worker = make_worker(venue, rules_cache, clock, strategy, metrics=metrics)

        result = await worker.run_once()

        assert result.ran
        assert result.action is TickAction.ENTRY_SUBMITTED
        assert worker.lifecycle.phase is LifecyclePhase.ENTRY_PENDING
        assert worker.ticks == 1
        assert metrics.get_registry().get_sample_value(
            "tick_duration_ms_count", {"symbol": "BTCUSDT"}) == 1.0

    @pytest.mark.asyncio
    async def test_candles_drop_forming_bar_and_refresh_on_schedule(self, venue, rules_cache, clock):
        candles = make_candles(30)
        venue.get_recent_candles = AsyncMock(return_value=candles)
        strategy = make_strategy()
        worker = make_worker(venue, rules_cache, clock, strategy, candle_refresh_sec=30)

        await worker.run_once()
        seen_candles, seen_trend = strategy.evaluate.call_args.args[1:]
        assert len(seen_candles) == 29
        assert seen_candles[-1] == candles[-2]
        assert seen_trend is not None
        assert seen_trend.close == candles[-2].close

        clock.advance(10)
        await worker.run_once()
        assert venue.get_recent_candles.await_count == 1
        clock.advance(25)
        await worker.run_once()
        assert venue.get_recent_candles.await_count == 2

    @pytest.mark.asyncio
    async def test_pending_attach_applied_before_tick(self, venue, rules_cache, clock):
        venue.set_position(0.25)
        worker = make_worker(venue, rules_cache, clock)
        worker.post_attach(AttachEvent(Position.flat("BTCUSDT"), [], price=100.0, observed_at=clock()))
        worker.post_attach(AttachEvent(venue.position, [], price=100.0, observed_at=clock()))

        result = await worker.run_once()

        assert worker._pending_attach is None
        assert worker.lifecycle.phase is LifecyclePhase.IN_POSITION
        assert result.action is TickAction.NONE
        assert venue.placed == []

    @pytest.mark.asyncio
    async def test_strategy_crash_is_contained(self, venue, rules_cache, clock):
        strategy = make_strategy()
        strategy.evaluate.side_effect = ValueError("bad indicator")
        metrics = ExecMetrics()
        worker = make_worker(venue, rules_cache, clock, strategy, metrics=metrics)

        result = await worker.run_once()

        assert result.ran
        assert "bad indicator" in result.error
        assert metrics.get_registry().get_sample_value(
            "tick_errors_total", {"symbol": "BTCUSDT", "error_type": "ValueError"}) == 1.0

    @pytest.mark.asyncio
    async def test_stale_data_is_reported(self, venue, rules_cache, clock):
        venue.get_open_orders = AsyncMock(side_effect=StaleDataError("unexpected shape"))
        worker = make_worker(venue, rules_cache, clock)
        result = await worker.run_once()
        assert result.error == "unexpected shape"
        assert not result.rate_limited

    @pytest.mark.asyncio
    async def test_rate_limit_trips_own_gate_when_unsupervised(self, venue, rules_cache, clock):
        venue.get_last_price = AsyncMock(side_effect=RateLimitedError(429, "", "GET", "/fapi/v1/ticker/price"))
        worker = make_worker(venue, rules_cache, clock)

        result = await worker.run_once()
        assert result.rate_limited
        assert worker.backoff.is_active

        skipped = await worker.run_once()
        assert not skipped.ran
        assert skipped.skipped_reason == "backoff"
        clock.advance(121)
        venue.get_last_price = AsyncMock(return_value=100.0)
        assert (await worker.run_once()).ran

    @pytest.mark.asyncio
    async def test_stop_between_reads_submits_nothing(self, venue, rules_cache, clock):
        strategy = make_strategy(Signal(Direction.LONG, reason="cross"))
        worker = make_worker(venue, rules_cache, clock, strategy)
        stop = asyncio.Event()
        read_orders = venue.get_open_orders

        async def orders_then_stop(symbol):
            stop.set()
            return await read_orders(symbol)

        venue.get_open_orders = orders_then_stop
        await worker.run(stop)

        assert venue.placed == []
        strategy.evaluate.assert_not_called()
        assert worker.lifecycle.phase is LifecyclePhase.IDLE

    @pytest.mark.asyncio
    async def test_stopped_tick_leaves_attach_pending(self, venue, rules_cache, clock):
        venue.set_position(0.25)
        worker = make_worker(venue, rules_cache, clock)
        event = AttachEvent(venue.position, [], price=100.0, observed_at=clock())
        worker.post_attach(event)
        stop = asyncio.Event()
        stop.set()

        result = await worker.run_once(stop)

        assert result.skipped_reason == "stopping"
        assert worker._pending_attach is event
        assert worker.lifecycle.phase is LifecyclePhase.IDLE


class TestSupervisor:
    def _build(self, clock, symbols=("BTCUSDT", "ETHUSDT"), notifier=None, **config):
        venues, workers = {}, []
        for symbol in symbols:
            venue = FakeVenue(symbol)
            rules = FakeRulesCache(InstrumentRules(
                symbol=symbol, price_step=0.1, qty_step=0.001, min_qty=0.001, min_notional=5.0))
            venues[symbol] = venue
            workers.append(make_worker(venue, rules, clock, tick_interval_sec=0.01))
        reconciliation = ReconciliationService(
            venues[symbols[0]], {w.symbol: w.post_attach for w in workers}, clock=clock, sleep=AsyncMock(),
        )
        reconcile_backoff = RateLimitBackoff("reconcile", BackoffConfig(backoff_sec=120), clock=clock)
        supervisor = WorkerSupervisor(
            workers, reconciliation, reconcile_backoff, notifier=notifier,
            config=SupervisorConfig(restart_delay_sec=0, **config),
        )
        return supervisor, workers, venues

    @pytest.mark.asyncio
    async def test_rate_limit_pauses_everything_with_one_notification(self, clock):
        notifier = make_notifier()
        supervisor, workers, venues = self._build(clock, notifier=notifier)
        venues["BTCUSDT"].get_last_price = AsyncMock(
            side_effect=RateLimitedError(418, "IP banned until 1", "GET", "/fapi/v1/ticker/price"))

        result = await workers[0].run_once()
        assert result.rate_limited
        assert all(w.backoff.is_active for w in workers)
        assert supervisor.reconcile_backoff.is_active

        eth = await workers[1].run_once()
        assert eth.skipped_reason == "backoff"
        assert venues["ETHUSDT"].placed == []

        notifier.notify_once.assert_awaited_once()
        assert notifier.notify_once.await_args.args[0] == "rate_limit"

    @pytest.mark.asyncio
    async def test_run_until_stop(self, clock):
        supervisor, workers, _ = self._build(clock)
        ticks = []

        def evaluate(symbol, candles, trend):
            ticks.append(symbol)
            if len(ticks) >= 6:
                supervisor.stop()
            return Signal.none()

        for worker in workers:
            worker.strategy.evaluate = evaluate

        await asyncio.wait_for(supervisor.run(), timeout=5)
        assert supervisor.stopping
        assert supervisor.reconciliation.passes == 1
        assert {"BTCUSDT", "ETHUSDT"} <= set(ticks)

    @pytest.mark.asyncio
    async def test_crashed_loop_restarts(self, clock):
        notifier = make_notifier()
        supervisor, workers, _ = self._build(clock, symbols=("BTCUSDT",), notifier=notifier,
                                             startup_reconcile=False)
        calls = []

        async def flaky_run(stop_event):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            supervisor.stop()

        workers[0].run = flaky_run
        await asyncio.wait_for(supervisor.run(), timeout=5)

        assert len(calls) == 2
        assert supervisor.restarts == 1
        notifier.notify_once.assert_awaited_once()
        assert notifier.notify_once.await_args.args[0] == "crash:worker:BTCUSDT"

    @pytest.mark.asyncio
    async def test_startup_reconcile_rate_limit_trips_gates(self, clock):
        supervisor, workers, venues = self._build(clock, symbols=("BTCUSDT",))
        venues["BTCUSDT"].get_position = AsyncMock(side_effect=RateLimitedError(429, "", "GET", "/x"))
        asyncio.get_running_loop().call_later(0.05, supervisor.stop)

        await asyncio.wait_for(supervisor.run(), timeout=5)

        assert workers[0].backoff.is_active
        assert workers[0].ticks == 0
