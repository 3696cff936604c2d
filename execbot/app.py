"""
Wiring of per-instrument workers, reconciliation and supervision.
"""

from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional

from execbot.config.config import Settings
from execbot.config.instrument_config import apply_overrides, load_instrument_overrides, unknown_keys
from execbot.execution.order_lifecycle import LifecycleConfig, OrderLifecycle
from execbot.execution.reconciliation_service import AttachSink, ReconciliationConfig, ReconciliationService
from execbot.execution.rules_cache import InstrumentRulesCache
from execbot.execution.venue_client import VenueClient
from execbot.monitoring.metrics import ExecMetrics
from execbot.monitoring.notifier import Notifier
from execbot.orchestrator.supervisor import InstrumentWorker, SupervisorConfig, WorkerConfig, WorkerSupervisor
from execbot.risk.backoff import BackoffConfig, RateLimitBackoff
from execbot.risk.daily_pnl import DailyPnlConfig, DailyPnlGuard
from execbot.strategy.ema_cross import EmaCrossStrategy
from execbot.strategy.signals import SignalSource

log = logging.getLogger("execbot")


def lifecycle_config(cfg: Settings) -> LifecycleConfig:
    return LifecycleConfig(
        allocation_pct=cfg.allocation_pct,
        risk_pct=cfg.risk_pct,
        entry_maker_offset_pct=cfg.entry_maker_offset_pct,
        entry_min_maker_offset_pct=cfg.entry_min_maker_offset_pct,
        entry_max_chase_pct=cfg.entry_max_chase_pct,
        entry_reprice_sec=cfg.entry_reprice_sec,
        entry_max_reprices=cfg.entry_max_reprices,
        entry_stale_grace_sec=cfg.stale_order_grace_sec,
        exit_maker_offset_pct=cfg.exit_maker_offset_pct,
        exit_min_maker_offset_pct=cfg.exit_min_maker_offset_pct,
        exit_max_chase_pct=cfg.exit_max_chase_pct,
        exit_reprice_sec=cfg.exit_reprice_sec,
        exit_max_reprices=cfg.exit_max_reprices,
        exit_stale_grace_sec=cfg.stale_order_grace_sec,
        trail_initial_buffer_pct=cfg.trail_initial_buffer_pct,
        trail_activation_pct=cfg.trail_activation_pct,
        trail_distance_pct=cfg.trail_distance_pct,
        soft_stop_pct=cfg.soft_stop_pct,
        trend_break_tol_pct=cfg.trend_break_tol_pct,
        momentum_weak_rsi=cfg.momentum_weak_rsi,
        protective_stop=cfg.protective_stop,
        min_seconds_between_actions=cfg.min_seconds_between_actions,
        min_position_notional=cfg.min_position_notional,
    )


def daily_pnl_config(cfg: Settings) -> DailyPnlConfig:
    return DailyPnlConfig(
        enabled=cfg.daily_cooldown_enabled,
        loss_threshold_pct=cfg.daily_loss_pct,
        profit_threshold_pct=cfg.daily_profit_pct,
        loss_cooldown_sec=cfg.daily_loss_cooldown_sec,
        profit_cooldown_sec=cfg.daily_profit_cooldown_sec,
    )


def worker_config(cfg: Settings) -> WorkerConfig:
    return WorkerConfig(
        tick_interval_sec=cfg.tick_interval_sec,
        candle_interval=cfg.candle_interval,
        candle_refresh_sec=cfg.candle_refresh_sec,
    )


def build_supervisor(
    cfg: Settings,
    client: VenueClient,
    rules_cache: InstrumentRulesCache,
    notifier: Optional[Notifier] = None,
    metrics: Optional[ExecMetrics] = None,
    strategy: Optional[SignalSource] = None,
) -> WorkerSupervisor:
    """One worker per symbol, each with its own lifecycle and backoff gate, sharing one daily PnL guard."""
    overrides = load_instrument_overrides(cfg.instrument_config_path)
    strategy = strategy or EmaCrossStrategy()
    backoff_cfg = BackoffConfig(backoff_sec=cfg.rate_limit_backoff_sec, notify_cooldown_sec=cfg.notify_cooldown_sec)
    base_lifecycle = lifecycle_config(cfg)
    base_worker = worker_config(cfg)
    daily_pnl = DailyPnlGuard(lambda: cfg.total_capital, daily_pnl_config(cfg), notifier, metrics)

    workers: List[InstrumentWorker] = []
    for symbol in cfg.symbols:
        per_symbol = overrides.get(symbol, {})
        ignored = unknown_keys(per_symbol, base_lifecycle, base_worker)
        if ignored:
            log.warning(json.dumps({"event": "instrument_override_ignored", "symbol": symbol, "keys": ignored}))
        lifecycle = OrderLifecycle(
            symbol,
            client,
            rules_cache,
            config=apply_overrides(base_lifecycle, per_symbol),
            capital=lambda: cfg.total_capital,
            notifier=notifier,
            metrics=metrics,
            entry_gate=daily_pnl.entry_block_reason,
        )
        workers.append(InstrumentWorker(
            symbol,
            client,
            lifecycle,
            strategy,
            RateLimitBackoff(f"worker:{symbol}", backoff_cfg, notifier, metrics),
            config=apply_overrides(base_worker, per_symbol),
            metrics=metrics,
        ))

    sinks: Dict[str, AttachSink] = {w.symbol: w.post_attach for w in workers}
    reconciliation = ReconciliationService(
        client,
        sinks,
        notifier=notifier,
        config=ReconciliationConfig(
            interval_sec=cfg.reconcile_interval_sec,
            close_confirm_delay_sec=cfg.close_confirm_delay_sec,
        ),
        daily_pnl=daily_pnl,
    )
    return WorkerSupervisor(
        workers,
        reconciliation,
        RateLimitBackoff("reconcile", backoff_cfg, notifier, metrics),
        notifier=notifier,
        config=SupervisorConfig(notify_cooldown_sec=cfg.notify_cooldown_sec),
    )
