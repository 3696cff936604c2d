"""
ReconciliationService: periodic re-read of venue truth for every symbol.

The venue, not the bot, is authoritative. On each pass the service reads
every tracked symbol's position and open orders and posts the result as an
AttachEvent to that symbol's worker, which folds it into its lifecycle.
This is how a manually opened position, a position recovered after a
restart, or an order left behind by a crash ends up under management.

Architecture:
    The service never touches lifecycle state itself. Each worker owns its
    OrderLifecycle; the service only calls the worker's post_attach sink.

Close detection:
    A symbol seen open on a previous pass and flat now is re-read after a
    short delay. When the second read is also flat, leftover reduce-only
    orders are cancelled and the net PnL since the position was first seen
    is reported from income history.
    The net PnL is also fed to the DailyPnlGuard, which may pause new
    entries for the rest of a bad (or very good) day and sends the daily
    summary after the UTC date rolls over.

Runs at a slower cadence than worker ticks because it issues the same
position/order calls.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

from execbot.core.errors import ExecBotError, RateLimitedError
from execbot.core.models import Order, Position
from execbot.core.utils import wait_for_stop
from execbot.execution.order_lifecycle import AttachEvent
from execbot.risk.daily_pnl import ClosedTrade

if TYPE_CHECKING:
    from execbot.execution.venue_client import VenueClient
    from execbot.monitoring.notifier import Notifier
    from execbot.risk.backoff import RateLimitBackoff
    from execbot.risk.daily_pnl import DailyPnlGuard

log = logging.getLogger("execbot")

AttachSink = Callable[[AttachEvent], None]


@dataclass
class ReconciliationConfig:
    """Configuration for ReconciliationService."""
    interval_sec: float = 60.0
    close_confirm_delay_sec: float = 3.0
    attach_notify_throttle_sec: float = 120.0
    cancel_leftovers_on_close: bool = True
    log_event_callback: Optional[Callable[..., None]] = None


@dataclass
class SymbolReconcileResult:
    """Result of reconciling one symbol."""
    symbol: str
    success: bool
    position_qty: float = 0.0
    open_orders: int = 0
    attach_posted: bool = False
    close_confirmed: bool = False
    net_pnl: Optional[float] = None
    error: Optional[str] = None


@dataclass
class ReconcileResult:
    """Result of one full pass."""
    success: bool
    symbols: List[SymbolReconcileResult] = field(default_factory=list)
    rate_limited: bool = False
    skipped: bool = False


class ReconciliationService:
    """
    Usage:
        service = ReconciliationService(client, {"BTCUSDT": worker.post_attach}, notifier=notifier)
        await service.reconcile_once()          # startup recovery
        await service.run(stop_event, backoff)  # background loop
    """

    def __init__(
        self,
        client: "VenueClient",
        attach_sinks: Dict[str, AttachSink],
        notifier: Optional["Notifier"] = None,
        config: Optional[ReconciliationConfig] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        daily_pnl: Optional["DailyPnlGuard"] = None,
    ) -> None:
        self.client = client
        self.attach_sinks = attach_sinks
        self.notifier = notifier
        self.daily_pnl = daily_pnl
        self.config = config or ReconciliationConfig()
        self._clock = clock
        self._sleep = sleep

        # symbol -> ms timestamp when first seen open
        self._open_since_ms: Dict[str, int] = {}
        self._last_reconcile: float = 0.0
        self.passes: int = 0

        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        level = logging.WARNING if event.endswith("error") else logging.INFO
        log.log(level, json.dumps(payload, default=str))

    @property
    def symbols(self) -> List[str]:
        return list(self.attach_sinks)

    @property
    def is_reconcile_due(self) -> bool:
        return self._clock() - self._last_reconcile >= self.config.interval_sec

    async def run(self, stop_event: asyncio.Event, backoff: "RateLimitBackoff",
                  on_rate_limited: Optional[Callable[[Exception], Awaitable[None]]] = None) -> None:
        """Loop until stop_event is set. Never raises for venue failures."""
        while not stop_event.is_set():
            if backoff.is_active:
                self._log_event("reconcile_skipped_backoff", remaining_sec=round(backoff.remaining, 1))
                await wait_for_stop(stop_event, min(backoff.remaining, self.config.interval_sec))
                continue
            if self.is_reconcile_due:
                try:
                    await self.reconcile_once(stop_event)
                except RateLimitedError as exc:
                    if on_rate_limited is not None:
                        await on_rate_limited(exc)
                    else:
                        await backoff.trip(exc)
                except Exception as exc:
                    self._log_event("reconcile_error", error=str(exc), error_type=type(exc).__name__)
            await wait_for_stop(stop_event, max(1.0, self.config.interval_sec - (self._clock() - self._last_reconcile)))

    async def reconcile_once(self, stop_event: Optional[asyncio.Event] = None) -> ReconcileResult:
        """
        One pass over every tracked symbol.

        Per-symbol failures are isolated; RateLimitedError aborts the pass
        and propagates so the caller can back off.
        """
        self._last_reconcile = self._clock()
        self.passes += 1
        result = ReconcileResult(success=True)
        for symbol in self.symbols:
            if stop_event is not None and stop_event.is_set():
                result.skipped = True
                break
            try:
                sym_result = await self.reconcile_symbol(symbol)
            except RateLimitedError:
                result.success = False
                result.rate_limited = True
                raise
            except ExecBotError as exc:
                sym_result = SymbolReconcileResult(symbol=symbol, success=False, error=str(exc))
                self._log_event("reconcile_symbol_error", symbol=symbol, error=str(exc),
                                error_type=type(exc).__name__)
            result.symbols.append(sym_result)
            if not sym_result.success:
                result.success = False
        if self.daily_pnl is not None:
            await self.daily_pnl.maybe_send_summary()
        self._log_event("reconcile_done", symbols=len(result.symbols),
                        failed=sum(1 for r in result.symbols if not r.success))
        return result

    async def reconcile_symbol(self, symbol: str) -> SymbolReconcileResult:
        observed_at = self._clock()
        position = await self.client.get_position(symbol)
        orders = await self.client.get_open_orders(symbol)
        result = SymbolReconcileResult(
            symbol=symbol, success=True,
            position_qty=position.signed_quantity, open_orders=len(orders),
        )

        if not position.is_flat:
            if symbol not in self._open_since_ms:
                self._open_since_ms[symbol] = position.last_updated_ms or int(observed_at * 1000)
                if self.notifier is not None:
                    await self.notifier.notify_once(
                        f"attach:{symbol}",
                        f"[{symbol}] position {position.signed_quantity} @ {position.entry_price} seen by reconciliation",
                        cooldown_sec=self.config.attach_notify_throttle_sec,
                    )
        elif symbol in self._open_since_ms:
            confirmed = await self._confirm_closed(symbol, position)
            if confirmed is None:
                result.close_confirmed = True
                result.net_pnl = await self._on_closed(symbol, orders)
                orders = [o for o in orders if not o.reduce_only]
            else:
                # Second read disagreed; trust it.
                position = confirmed
                result.position_qty = confirmed.signed_quantity

        sink = self.attach_sinks.get(symbol)
        if sink is not None:
            sink(AttachEvent(
                position=position,
                open_orders=orders,
                price=position.mark_price,
                source="reconcile",
                observed_at=observed_at,
            ))
            result.attach_posted = True
        return result

    async def _confirm_closed(self, symbol: str, first_read: Position) -> Optional[Position]:
        """Re-read after a delay. None when still flat, otherwise the fresh position."""
        await self._sleep(self.config.close_confirm_delay_sec)
        second = await self.client.get_position(symbol)
        if second.is_flat:
            return None
        self._log_event("close_not_confirmed", symbol=symbol,
                        first_qty=first_read.signed_quantity, second_qty=second.signed_quantity)
        return second

    async def _on_closed(self, symbol: str, orders: List[Order]) -> Optional[float]:
        since_ms = self._open_since_ms.pop(symbol)
        leftovers = [o.order_id for o in orders if o.reduce_only]
        if leftovers and self.config.cancel_leftovers_on_close:
            cancelled = await self.client.cancel_batch_orders(symbol, leftovers)
            self._log_event("leftover_orders_cancelled", symbol=symbol, requested=len(leftovers),
                            cancelled=cancelled)

        net: Optional[float] = None
        try:
            pnl = await self.client.get_net_pnl(symbol, since_ms)
            net = pnl.net
            self._log_event("position_closed_pnl", symbol=symbol, realized=pnl.realized,
                            commission=pnl.commission, funding=pnl.funding, net=net)
        except RateLimitedError:
            raise
        except ExecBotError as exc:
            self._log_event("income_fetch_error", symbol=symbol, error=str(exc))
        if self.notifier is not None:
            pnl_text = f"{net:+.4f}" if net is not None else "unknown"
            await self.notifier.send(f"[{symbol}] position closed, net PnL {pnl_text}")
        if net is not None and self.daily_pnl is not None:
            await self.daily_pnl.register_close(ClosedTrade(symbol, net, self._clock()))
        return net

