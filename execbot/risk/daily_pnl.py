"""
DailyPnlGuard: per-UTC-day PnL tally with a loss/profit cooldown on new entries.

Every confirmed close is registered with its net PnL. When the day's total
reaches -loss_threshold_pct of the base capital, new entries are paused for
loss_cooldown_sec; at +profit_threshold_pct they are paused for
profit_cooldown_sec. Open positions keep being managed during a cooldown,
only the IDLE -> ENTRY_PENDING transition is gated.

A summary of the finished day is sent once, on the first cycle after the
UTC date rolls over.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from execbot.monitoring.metrics import ExecMetrics
    from execbot.monitoring.notifier import Notifier

log = logging.getLogger("execbot")


def utc_day(ts: float) -> date:
    return datetime.fromtimestamp(ts, tz=timezone.utc).date()


@dataclass
class DailyPnlConfig:
    """Configuration for DailyPnlGuard. Thresholds are fractions of base capital."""
    enabled: bool = True
    loss_threshold_pct: float = 0.03
    profit_threshold_pct: float = 0.03
    loss_cooldown_sec: float = 3600.0
    profit_cooldown_sec: float = 7200.0


@dataclass(frozen=True)
class ClosedTrade:
    symbol: str
    net_pnl: float
    closed_at: float


class DailyPnlGuard:
    """
    Usage:
        guard = DailyPnlGuard(lambda: 1000.0, DailyPnlConfig(), notifier)
        await guard.register_close(ClosedTrade("BTCUSDT", -12.5, time.time()))
        if guard.entry_block_reason():
            ...skip new entries...
        await guard.maybe_send_summary()   # once per reconcile pass
    """

    def __init__(
        self,
        base_capital: Callable[[], float],
        config: Optional[DailyPnlConfig] = None,
        notifier: Optional["Notifier"] = None,
        metrics: Optional["ExecMetrics"] = None,
        clock: Callable[[], float] = time.time,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._base_capital = base_capital
        self.config = config or DailyPnlConfig()
        self.notifier = notifier
        self.metrics = metrics
        self._clock = clock
        self._log_event = log_event or self._default_log

        self.trades: List[ClosedTrade] = []
        self.current_day: date = utc_day(clock())
        self._finished_days: List[date] = []
        self._cooldown_until: float = 0.0
        self.cooldown_kind: Optional[str] = None

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if event == "daily_cooldown_started" else logging.INFO
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    # ------------------------------------------------------------------

    def trades_on(self, day: date) -> List[ClosedTrade]:
        return [t for t in self.trades if utc_day(t.closed_at) == day]

    def day_pnl(self, day: Optional[date] = None) -> float:
        return sum(t.net_pnl for t in self.trades_on(day or self.current_day))

    @property
    def in_cooldown(self) -> bool:
        if self._cooldown_until and self._clock() >= self._cooldown_until:
            self._cooldown_until = 0.0
            self.cooldown_kind = None
        return self._cooldown_until > 0.0

    @property
    def cooldown_remaining(self) -> float:
        return max(0.0, self._cooldown_until - self._clock()) if self.in_cooldown else 0.0

    def entry_block_reason(self) -> Optional[str]:
        """Non-None while new entries are paused."""
        if not self.config.enabled or not self.in_cooldown:
            return None
        return f"daily_{self.cooldown_kind}_cooldown"

    # ------------------------------------------------------------------

    async def register_close(self, trade: ClosedTrade) -> None:
        self._roll_day()
        self.trades.append(trade)
        total = self.day_pnl()
        self._log_event("daily_pnl_updated", symbol=trade.symbol, trade_pnl=trade.net_pnl, day_pnl=total)
        if self.metrics:
            self.metrics.daily_pnl.set(total)
        await self._maybe_start_cooldown(total)

    async def _maybe_start_cooldown(self, total: float) -> None:
        cfg = self.config
        base = self._base_capital()
        if not cfg.enabled or base <= 0 or self.in_cooldown:
            return
        pct = total / base
        if pct <= -cfg.loss_threshold_pct:
            kind, duration = "loss", cfg.loss_cooldown_sec
        elif pct >= cfg.profit_threshold_pct:
            kind, duration = "profit", cfg.profit_cooldown_sec
        else:
            return
        self._cooldown_until = self._clock() + duration
        self.cooldown_kind = kind
        self._log_event("daily_cooldown_started", kind=kind, day_pnl=total, pct=round(pct * 100, 2),
                        duration_sec=duration)
        if self.metrics:
            self.metrics.daily_cooldowns.labels(kind=kind).inc()
        if self.notifier is not None:
            until = datetime.fromtimestamp(self._cooldown_until, tz=timezone.utc).strftime("%H:%M")
            await self.notifier.send(
                f"daily {kind} cooldown: {pct:+.2%} ({total:+.2f} on {base:.2f}), "
                f"no new entries for {duration / 3600:g}h, until {until} UTC"
            )

    # ------------------------------------------------------------------

    def summary_text(self, day: date) -> str:
        trades = self.trades_on(day)
        total = sum(t.net_pnl for t in trades)
        wins = sum(1 for t in trades if t.net_pnl > 0)
        losses = sum(1 for t in trades if t.net_pnl < 0)
        lines = [
            f"Daily PnL {day.isoformat()} (UTC)",
            f"Trades : {len(trades)} (W: {wins} / L: {losses})",
            f"Total  : {total:+.2f}",
        ]
        base = self._base_capital()
        if base > 0:
            lines.append(f"Return : {total / base:+.2%} on {base:.2f}")
        if self.in_cooldown:
            lines.append(f"Status : {self.cooldown_kind} cooldown, {self.cooldown_remaining / 60:.0f} min left")
        else:
            lines.append("Status : active")
        return "\n".join(lines)

    async def maybe_send_summary(self) -> bool:
        """Send a summary for each finished day with trades once the UTC date has rolled over."""
        self._roll_day()
        sent = False
        for day in self._finished_days:
            if not self.trades_on(day):
                continue
            self._log_event("daily_summary", day=day.isoformat(), day_pnl=self.day_pnl(day))
            if self.notifier is not None:
                await self.notifier.send(self.summary_text(day))
            sent = True
        if self._finished_days:
            self._finished_days = []
            self.trades = [t for t in self.trades if utc_day(t.closed_at) >= self.current_day]
        return sent

    def _roll_day(self) -> None:
        today = utc_day(self._clock())
        if today == self.current_day:
            return
        self._finished_days.append(self.current_day)
        self.current_day = today
        if self.metrics:
            self.metrics.daily_pnl.set(self.day_pnl())
