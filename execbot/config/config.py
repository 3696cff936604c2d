"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List

from dotenv import load_dotenv

load_dotenv()


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    # Venue access
    api_key: str | None
    api_secret: str | None
    base_url: str
    recv_window_ms: int
    http_timeout: float
    time_sync_interval_sec: float
    paper_mode: bool
    symbols: List[str]
    # Sizing
    total_capital: float
    allocation_pct: float
    risk_pct: float
    # Entry / exit quoting
    entry_maker_offset_pct: float
    entry_min_maker_offset_pct: float
    entry_max_chase_pct: float
    entry_reprice_sec: float
    entry_max_reprices: int
    exit_maker_offset_pct: float
    exit_min_maker_offset_pct: float
    exit_max_chase_pct: float
    exit_reprice_sec: float
    exit_max_reprices: int
    stale_order_grace_sec: float
    # Trailing stop and triggers
    trail_initial_buffer_pct: float
    trail_activation_pct: float
    trail_distance_pct: float
    soft_stop_pct: float
    trend_break_tol_pct: float
    momentum_weak_rsi: float
    protective_stop: bool
    min_seconds_between_actions: float
    min_position_notional: float
    # Daily PnL cooldown
    daily_cooldown_enabled: bool
    daily_loss_pct: float
    daily_profit_pct: float
    daily_loss_cooldown_sec: float
    daily_profit_cooldown_sec: float
    # Cadence
    tick_interval_sec: float
    candle_interval: str
    candle_refresh_sec: float
    reconcile_interval_sec: float
    close_confirm_delay_sec: float
    rate_limit_backoff_sec: float
    notify_cooldown_sec: float
    # Observability
    metrics_port: int
    log_level: str
    log_file: str | None
    alert_webhook_url: str | None
    alert_webhook_type: str  # slack, generic
    alert_enabled: bool
    instrument_config_path: str

    def dump(self) -> dict:
        """Return a dict of settings for logging, secrets masked."""
        data = self.__dict__.copy()
        for key in ("api_key", "api_secret"):
            if data.get(key):
                data[key] = "***"
        return data

    @staticmethod
    def _symbols() -> List[str]:
        raw = os.getenv("EXEC_SYMBOLS")
        if not raw:
            return [os.getenv("EXEC_SYMBOL", "BTCUSDT")]
        return [s.strip().upper() for s in raw.split(",") if s.strip()]

    @classmethod
    def load(cls) -> "Settings":
        cfg = cls(
            api_key=os.getenv("EXEC_API_KEY"),
            api_secret=os.getenv("EXEC_API_SECRET"),
            base_url=os.getenv("EXEC_BASE_URL", "https://fapi.binance.com"),
            recv_window_ms=_int_env("EXEC_RECV_WINDOW_MS", 5000),
            http_timeout=_float_env("EXEC_HTTP_TIMEOUT", 10.0),
            time_sync_interval_sec=_float_env("EXEC_TIME_SYNC_SEC", 300.0),
            paper_mode=env_bool("EXEC_PAPER_MODE", True),
            symbols=cls._symbols(),
            total_capital=_float_env("EXEC_TOTAL_CAPITAL", 1000.0),
            allocation_pct=_float_env("EXEC_ALLOCATION_PCT", 10.0),
            risk_pct=_float_env("EXEC_RISK_PCT", 25.0),
            entry_maker_offset_pct=_float_env("EXEC_ENTRY_MAKER_OFFSET_PCT", 0.001),
            entry_min_maker_offset_pct=_float_env("EXEC_ENTRY_MIN_MAKER_OFFSET_PCT", 0.0005),
            entry_max_chase_pct=_float_env("EXEC_ENTRY_MAX_CHASE_PCT", 0.003),
            entry_reprice_sec=_float_env("EXEC_ENTRY_REPRICE_SEC", 20.0),
            entry_max_reprices=_int_env("EXEC_ENTRY_MAX_REPRICES", 5),
            exit_maker_offset_pct=_float_env("EXEC_EXIT_MAKER_OFFSET_PCT", 0.0005),
            exit_min_maker_offset_pct=_float_env("EXEC_EXIT_MIN_MAKER_OFFSET_PCT", 0.0001),
            exit_max_chase_pct=_float_env("EXEC_EXIT_MAX_CHASE_PCT", 0.003),
            exit_reprice_sec=_float_env("EXEC_EXIT_REPRICE_SEC", 15.0),
            exit_max_reprices=_int_env("EXEC_EXIT_MAX_REPRICES", 5),
            stale_order_grace_sec=_float_env("EXEC_STALE_ORDER_GRACE_SEC", 10.0),
            trail_initial_buffer_pct=_float_env("EXEC_TRAIL_INITIAL_BUFFER_PCT", 0.03),
            trail_activation_pct=_float_env("EXEC_TRAIL_ACTIVATION_PCT", 0.004),
            trail_distance_pct=_float_env("EXEC_TRAIL_DISTANCE_PCT", 0.006),
            soft_stop_pct=_float_env("EXEC_SOFT_STOP_PCT", 0.015),
            trend_break_tol_pct=_float_env("EXEC_TREND_BREAK_TOL_PCT", 0.0004),
            momentum_weak_rsi=_float_env("EXEC_MOMENTUM_WEAK_RSI", 44.0),
            protective_stop=env_bool("EXEC_PROTECTIVE_STOP", True),
            min_seconds_between_actions=_float_env("EXEC_MIN_SECONDS_BETWEEN_ACTIONS", 5.0),
            min_position_notional=_float_env("EXEC_MIN_POSITION_NOTIONAL", 0.0),
            daily_cooldown_enabled=env_bool("EXEC_DAILY_COOLDOWN_ENABLED", True),
            daily_loss_pct=_float_env("EXEC_DAILY_LOSS_PCT", 0.03),
            daily_profit_pct=_float_env("EXEC_DAILY_PROFIT_PCT", 0.03),
            daily_loss_cooldown_sec=_float_env("EXEC_DAILY_LOSS_COOLDOWN_SEC", 3600.0),
            daily_profit_cooldown_sec=_float_env("EXEC_DAILY_PROFIT_COOLDOWN_SEC", 7200.0),
            tick_interval_sec=_float_env("EXEC_TICK_INTERVAL_SEC", 5.0),
            candle_interval=os.getenv("EXEC_CANDLE_INTERVAL", "5m"),
            candle_refresh_sec=_float_env("EXEC_CANDLE_REFRESH_SEC", 30.0),
            reconcile_interval_sec=_float_env("EXEC_RECONCILE_INTERVAL_SEC", 60.0),
            close_confirm_delay_sec=_float_env("EXEC_CLOSE_CONFIRM_DELAY_SEC", 3.0),
            rate_limit_backoff_sec=_float_env("EXEC_RATE_LIMIT_BACKOFF_SEC", 120.0),
            notify_cooldown_sec=_float_env("EXEC_NOTIFY_COOLDOWN_SEC", 300.0),
            metrics_port=_int_env("EXEC_METRICS_PORT", 9095),
            log_level=os.getenv("EXEC_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("EXEC_LOG_FILE", "execbot.log") or None,
            alert_webhook_url=os.getenv("EXEC_ALERT_WEBHOOK_URL"),
            alert_webhook_type=os.getenv("EXEC_ALERT_WEBHOOK_TYPE", "slack"),
            alert_enabled=env_bool("EXEC_ALERT_ENABLED", True),
            instrument_config_path=os.getenv("EXEC_INSTRUMENT_CONFIG", "configs/instruments.yaml"),
        )
        cfg._validate()
        return cfg

    def _validate(self) -> None:
        if not self.symbols:
            raise ValueError("EXEC_SYMBOLS must name at least one symbol")
        if not self.api_key or not self.api_secret:
            # Paper mode still reads positions and orders through signed endpoints.
            raise ValueError("EXEC_API_KEY and EXEC_API_SECRET are required")
        if self.total_capital <= 0:
            raise ValueError("EXEC_TOTAL_CAPITAL must be > 0")
        if not 0 < self.allocation_pct <= 100:
            raise ValueError("EXEC_ALLOCATION_PCT must be in (0, 100]")
        if self.risk_pct <= 0:
            raise ValueError("EXEC_RISK_PCT must be > 0")
        if self.entry_min_maker_offset_pct < 0 or self.exit_min_maker_offset_pct < 0:
            raise ValueError("Minimum maker offsets must be >= 0")
        if self.entry_max_reprices < 1 or self.exit_max_reprices < 1:
            raise ValueError("Max reprices must be >= 1")
        if self.trail_distance_pct <= 0 or self.trail_initial_buffer_pct <= 0:
            raise ValueError("Trail distances must be > 0")
        if self.trend_break_tol_pct < 0:
            raise ValueError("EXEC_TREND_BREAK_TOL_PCT must be >= 0")
        if not 0 < self.momentum_weak_rsi < 50:
            raise ValueError("EXEC_MOMENTUM_WEAK_RSI must be in (0, 50)")
        if self.daily_loss_pct <= 0 or self.daily_profit_pct <= 0:
            raise ValueError("EXEC_DAILY_LOSS_PCT and EXEC_DAILY_PROFIT_PCT must be > 0")
        if self.daily_loss_cooldown_sec < 0 or self.daily_profit_cooldown_sec < 0:
            raise ValueError("Daily cooldowns must be >= 0")
        if self.tick_interval_sec <= 0 or self.reconcile_interval_sec <= 0:
            raise ValueError("Loop intervals must be > 0")
        if self.recv_window_ms <= 0 or self.recv_window_ms > 60000:
            raise ValueError("EXEC_RECV_WINDOW_MS must be in (0, 60000]")
        if self.alert_webhook_type not in {"slack", "generic"}:
            raise ValueError("EXEC_ALERT_WEBHOOK_TYPE must be slack or generic")

        if self.reconcile_interval_sec < self.tick_interval_sec:
            logging.getLogger("execbot").warning(
                "EXEC_RECONCILE_INTERVAL_SEC is shorter than EXEC_TICK_INTERVAL_SEC; "
                "reconciliation repeats the same position/order reads as every tick"
            )
