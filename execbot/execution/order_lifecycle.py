"""
OrderLifecycle: per-instrument entry -> position -> exit state machine.

State Diagram:

    IDLE ──signal──> ENTRY_PENDING ──position seen──> IN_POSITION
     ^                    │  (chase / abandon)            │
     │                    v                               │ exit trigger
     └────────────── (abandoned)                          v
     ^                                              EXIT_PENDING
     └──────────────── position flat ─────────────────────┘

The phase is derived from InstrumentState: an EntryIntent means
ENTRY_PENDING, a TrailState means IN_POSITION (or EXIT_PENDING once an
exit trigger fired), neither means IDLE. The two are never held together.

One OrderLifecycle is owned by exactly one worker task; nothing here is
locked. tick() is driven on a fixed cadence with the latest signal and a
venue snapshot; attach() applies discrepancies found by reconciliation.

Failure semantics: a rejected submission or cancel is logged and the
next tick starts over. RateLimitedError is never caught here, the worker
owns the backoff policy.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, List, Optional, TYPE_CHECKING

from execbot.core.errors import RateLimitedError, StaleDataError, TransportError, VenueRejection
from execbot.core.models import InstrumentRules, Order, OrderRequest, Position
from execbot.core.rounding import maker_price
from execbot.execution.pricing import chase_price, exit_quantity, first_quote, size_entry, size_order
from execbot.strategy.signals import Direction, Signal, TrendSnapshot

if TYPE_CHECKING:
    from execbot.execution.rules_cache import InstrumentRulesCache
    from execbot.execution.venue_client import VenueClient
    from execbot.monitoring.metrics import ExecMetrics
    from execbot.monitoring.notifier import Notifier

log = logging.getLogger("execbot")

_WARNING_EVENTS = frozenset({
    "entry_rejected", "entry_submit_failed", "entry_abandoned", "cancel_failed",
    "exit_submit_failed", "exit_chase_exhausted", "exit_qty_below_min", "protective_submit_failed",
})


class LifecyclePhase(Enum):
    IDLE = auto()
    ENTRY_PENDING = auto()
    IN_POSITION = auto()
    EXIT_PENDING = auto()


class TickAction(Enum):
    NONE = auto()
    THROTTLED = auto()
    ENTRY_SUBMITTED = auto()
    ENTRY_REJECTED = auto()
    ENTRY_WAITING = auto()
    ENTRY_REPRICED = auto()
    ENTRY_ABANDONED = auto()
    POSITION_DETECTED = auto()
    TRAIL_TIGHTENED = auto()
    EXIT_TRIGGERED = auto()
    EXIT_SUBMITTED = auto()
    EXIT_WAITING = auto()
    EXIT_REPRICED = auto()
    POSITION_CLOSED = auto()
    ORDER_ADOPTED = auto()
    ENTRY_BLOCKED = auto()
    PROTECTIVE_PLACED = auto()


class _Cancel(Enum):
    DONE = auto()
    GONE = auto()  # venue no longer knows the order (filled or already cancelled)
    FAILED = auto()


@dataclass
class EntryIntent:
    """Local memory of a pending entry order between submit and fill/abandon."""
    side: str
    quantity: float
    first_price: float
    last_price: float
    created_at: float
    submitted_at: float
    reprice_count: int = 0
    order_id: Optional[str] = None
    reason: str = ""
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None


@dataclass
class TrailState:
    """Trailing-stop bookkeeping while a position is open."""
    is_long: bool
    anchor: float
    peak: float
    trail: float
    exit_reason: Optional[str] = None
    exit_order_id: Optional[str] = None
    exit_first_price: float = 0.0
    exit_last_price: float = 0.0
    exit_submitted_at: float = 0.0
    exit_reprice_count: int = 0
    exit_exhausted: bool = False
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    protective_order_id: Optional[str] = None

    @property
    def exit_side(self) -> str:
        return "SELL" if self.is_long else "BUY"


@dataclass
class InstrumentState:
    """Everything the worker owns for one symbol."""
    symbol: str
    entry: Optional[EntryIntent] = None
    trail: Optional[TrailState] = None
    last_action_at: float = 0.0
    changed_at: float = 0.0

    @property
    def phase(self) -> LifecyclePhase:
        if self.entry is not None:
            return LifecyclePhase.ENTRY_PENDING
        if self.trail is not None:
            if self.trail.exit_reason is not None:
                return LifecyclePhase.EXIT_PENDING
            return LifecyclePhase.IN_POSITION
        return LifecyclePhase.IDLE

    def begin_entry(self, intent: EntryIntent, at: float) -> None:
        if self.trail is not None:
            raise RuntimeError(f"{self.symbol}: cannot start an entry while in position")
        self.entry = intent
        self.changed_at = at

    def drop_entry(self, at: float) -> Optional[EntryIntent]:
        intent, self.entry = self.entry, None
        self.changed_at = at
        return intent

    def open_trail(self, trail: TrailState, at: float) -> None:
        self.entry = None
        self.trail = trail
        self.changed_at = at

    def reset(self, at: float) -> None:
        self.entry = None
        self.trail = None
        self.changed_at = at

    def check_invariants(self) -> None:
        if self.entry is not None and self.trail is not None:
            raise AssertionError(f"{self.symbol}: EntryIntent and TrailState both present")


@dataclass
class LifecycleConfig:
    """
    Configuration for OrderLifecycle.

    allocation_pct and risk_pct are in percent units (10.0 = 10%). Every other
    *_pct field is a fraction of price (0.001 = 0.1%).
    """
    # Sizing
    allocation_pct: float = 10.0
    risk_pct: float = 25.0

    # Entry quoting and chase
    entry_maker_offset_pct: float = 0.001
    entry_min_maker_offset_pct: float = 0.0005
    entry_max_chase_pct: float = 0.003
    entry_reprice_sec: float = 20.0
    entry_max_reprices: int = 5
    entry_stale_grace_sec: float = 10.0

    # Exit quoting and chase
    exit_maker_offset_pct: float = 0.0005
    exit_min_maker_offset_pct: float = 0.0001
    exit_max_chase_pct: float = 0.003
    exit_reprice_sec: float = 15.0
    exit_max_reprices: int = 5
    exit_stale_grace_sec: float = 10.0

    # Trailing stop and exit triggers
    trail_initial_buffer_pct: float = 0.03
    trail_activation_pct: float = 0.004
    trail_distance_pct: float = 0.006
    soft_stop_pct: float = 0.015
    trend_break_tol_pct: float = 0.0004
    momentum_weak_rsi: float = 44.0

    # Venue-side STOP_MARKET at the entry signal's stop loss
    protective_stop: bool = True

    # Churn control
    min_seconds_between_actions: float = 5.0
    min_position_notional: float = 0.0

    log_event_callback: Optional[Callable[..., None]] = None


@dataclass
class TickSnapshot:
    """Venue view handed to one tick."""
    price: float
    position: Position
    open_orders: List[Order] = field(default_factory=list)
    trend: Optional[TrendSnapshot] = None


@dataclass
class AttachEvent:
    """Venue truth found by reconciliation, applied by the owning worker."""
    position: Position
    open_orders: List[Order] = field(default_factory=list)
    price: float = 0.0
    source: str = "reconcile"
    observed_at: float = 0.0


@dataclass
class TickResult:
    phase: LifecyclePhase
    actions: List[TickAction] = field(default_factory=list)
    reason: str = ""

    @property
    def action(self) -> TickAction:
        return self.actions[-1] if self.actions else TickAction.NONE


class OrderLifecycle:
    """
    Usage:
        lifecycle = OrderLifecycle("BTCUSDT", client, rules_cache, LifecycleConfig(),
                                   capital=lambda: 1000.0)
        result = await lifecycle.tick(signal, TickSnapshot(price, position, open_orders, trend))
    """

    def __init__(
        self,
        symbol: str,
        client: "VenueClient",
        rules_cache: "InstrumentRulesCache",
        config: Optional[LifecycleConfig] = None,
        capital: Callable[[], float] = lambda: 0.0,
        notifier: Optional["Notifier"] = None,
        metrics: Optional["ExecMetrics"] = None,
        clock: Callable[[], float] = time.time,
        entry_gate: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        self.symbol = symbol
        self.client = client
        self.rules_cache = rules_cache
        self.config = config or LifecycleConfig()
        self._capital = capital
        self.notifier = notifier
        self.metrics = metrics
        self._clock = clock
        self._entry_gate = entry_gate
        self.state = InstrumentState(symbol=symbol)
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if event in _WARNING_EVENTS else logging.INFO
        log.log(level, json.dumps({"event": event, "symbol": self.symbol, **kwargs}, default=str))

    async def _notify(self, message: str) -> None:
        if self.notifier is not None:
            await self.notifier.send(f"[{self.symbol}] {message}")

    @property
    def phase(self) -> LifecyclePhase:
        return self.state.phase

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def tick(self, signal: Optional[Signal], snapshot: TickSnapshot) -> TickResult:
        signal = signal or Signal.none()
        rules = await self.rules_cache.rules(self.symbol)
        now = self._clock()
        actions: List[TickAction] = []
        st = self.state

        if not self.is_flat(snapshot.position, snapshot.price, rules):
            if st.trail is None:
                await self._on_position_detected(rules, snapshot, actions, now)
            await self._manage_position(signal, rules, snapshot, actions, now)
        elif st.trail is not None:
            await self._on_position_flat(snapshot, actions, now)
        elif st.entry is not None:
            await self._manage_entry(signal, rules, snapshot, actions, now)
        elif signal.is_directional:
            await self._try_enter(signal, rules, snapshot, actions, now)

        st.check_invariants()
        self._record(snapshot)
        return TickResult(phase=st.phase, actions=actions, reason=signal.reason)

    async def attach(self, event: AttachEvent) -> TickResult:
        """Fold reconciliation truth into local state without placing new orders."""
        rules = await self.rules_cache.rules(self.symbol)
        now = self._clock()
        actions: List[TickAction] = []
        st = self.state
        price = event.price or event.position.mark_price or event.position.entry_price

        if event.observed_at and event.observed_at < st.changed_at:
            # Read before our own last transition; the next tick has fresher truth.
            self._log_event("attach_ignored", reason="stale", observed_at=event.observed_at,
                            changed_at=st.changed_at)
            return TickResult(phase=st.phase, actions=actions, reason="stale")
        if price <= 0:
            self._log_event("attach_ignored", reason="no_price")
            return TickResult(phase=st.phase, actions=actions, reason="no_price")

        if not self.is_flat(event.position, price, rules):
            if st.trail is None:
                await self._on_position_detected(
                    rules, TickSnapshot(price, event.position, event.open_orders), actions, now,
                )
                self._log_event("position_attached", source=event.source,
                                qty=event.position.signed_quantity, anchor=price)
                if self.metrics:
                    self.metrics.attach_events.labels(symbol=self.symbol, kind="position").inc()
            elif st.trail is not None:
                self._sync_protective_levels(st.trail, TickSnapshot(price, event.position, event.open_orders))
            trail = st.trail
            if trail is not None and trail.exit_reason is not None and trail.exit_order_id is None:
                exits = [o for o in event.open_orders
                         if o.reduce_only and not o.is_conditional and o.side == trail.exit_side and o.is_open]
                if exits:
                    adopted = max(exits, key=lambda o: o.created_at_ms)
                    trail.exit_order_id = adopted.order_id
                    trail.exit_first_price = trail.exit_first_price or adopted.price
                    trail.exit_last_price = adopted.price
                    trail.exit_submitted_at = now
                    actions.append(TickAction.ORDER_ADOPTED)
                    self._log_event("exit_order_adopted", order_id=adopted.order_id, px=adopted.price)
        elif st.entry is None and st.trail is None:
            entries = [o for o in event.open_orders
                       if not o.reduce_only and o.type == "LIMIT" and o.is_open]
            if entries:
                await self._adopt_entry(entries, actions, now)

        st.check_invariants()
        return TickResult(phase=st.phase, actions=actions, reason=event.source)

    def is_flat(self, position: Position, price: float, rules: InstrumentRules) -> bool:
        qty = abs(position.signed_quantity)
        if qty == 0 or qty < rules.min_qty:
            return True
        min_notional = self.config.min_position_notional
        return min_notional > 0 and qty * price < min_notional

    # ------------------------------------------------------------------
    # IDLE -> ENTRY_PENDING
    # ------------------------------------------------------------------

    def _throttled(self, now: float) -> bool:
        return now - self.state.last_action_at < self.config.min_seconds_between_actions

    async def _try_enter(
        self, signal: Signal, rules: InstrumentRules, snapshot: TickSnapshot,
        actions: List[TickAction], now: float,
    ) -> None:
        cfg = self.config
        if self._throttled(now):
            actions.append(TickAction.THROTTLED)
            return
        blocked = self._entry_gate() if self._entry_gate is not None else None
        if blocked:
            actions.append(TickAction.ENTRY_BLOCKED)
            self._log_event("entry_skipped", reason=blocked, signal=signal.reason)
            return
        if any(not o.reduce_only and o.is_open for o in snapshot.open_orders):
            # Unknown resting order; reconciliation adopts it instead.
            self._log_event("entry_skipped", reason="untracked_open_orders", count=len(snapshot.open_orders))
            return

        side = signal.direction.entry_side
        reference = snapshot.price
        if signal.entry_price:
            # Never quote through the market on the first try.
            reference = min(signal.entry_price, reference) if side == "BUY" else max(signal.entry_price, reference)
        price = first_quote(side, reference, cfg.entry_maker_offset_pct, rules.price_step)
        sizing = size_entry(rules, self._capital(), cfg.allocation_pct, cfg.risk_pct, price, signal.stop_loss)
        if not sizing.accepted:
            actions.append(TickAction.ENTRY_REJECTED)
            self._log_event("entry_rejected", reason=sizing.reason, qty=sizing.quantity, px=price)
            if self.metrics:
                self.metrics.orders_rejected.labels(symbol=self.symbol, reason="sizing").inc()
            return

        intent = EntryIntent(
            side=side, quantity=sizing.quantity, first_price=price, last_price=price,
            created_at=now, submitted_at=now, reason=signal.reason,
            stop_loss=signal.stop_loss, take_profit=signal.take_profit,
        )
        self.state.begin_entry(intent, now)
        self.state.last_action_at = now
        order = await self._submit(
            OrderRequest(self.symbol, side, sizing.quantity, price), leg="entry",
        )
        if order is None:
            self.state.drop_entry(now)
            actions.append(TickAction.ENTRY_REJECTED)
            await self._notify(f"entry {side} {sizing.quantity} @ {price} rejected")
            return
        intent.order_id = order.order_id
        actions.append(TickAction.ENTRY_SUBMITTED)
        self._log_event("entry_submitted", side=side, qty=sizing.quantity, px=price,
                        order_id=order.order_id, reason=signal.reason)
        await self._notify(f"entry {side} {sizing.quantity} @ {price} placed ({signal.reason})")

    # ------------------------------------------------------------------
    # ENTRY_PENDING chase
    # ------------------------------------------------------------------

    async def _manage_entry(
        self, signal: Signal, rules: InstrumentRules, snapshot: TickSnapshot,
        actions: List[TickAction], now: float,
    ) -> None:
        cfg = self.config
        intent = self.state.entry
        assert intent is not None
        live = _find_order(snapshot.open_orders, intent.order_id)

        if signal.is_directional and signal.direction.entry_side != intent.side:
            await self._abandon_entry(live, "opposing_signal", actions, now)
            return

        if intent.order_id is None:
            # A previous resubmission failed after the cancel went through.
            if intent.reprice_count >= cfg.entry_max_reprices:
                await self._abandon_entry(None, "chase_limit", actions, now)
            elif self._throttled(now):
                actions.append(TickAction.THROTTLED)
            else:
                await self._resubmit_entry(intent, intent.quantity, rules, snapshot, actions, now)
            return

        if live is None:
            if now - intent.submitted_at < cfg.entry_stale_grace_sec:
                actions.append(TickAction.ENTRY_WAITING)
                return
            await self._abandon_entry(None, "order_vanished", actions, now)
            return

        if now - intent.submitted_at < cfg.entry_reprice_sec:
            actions.append(TickAction.ENTRY_WAITING)
            return
        if intent.reprice_count >= cfg.entry_max_reprices:
            await self._abandon_entry(live, "chase_limit", actions, now)
            return
        if self._throttled(now):
            actions.append(TickAction.THROTTLED)
            return

        outcome = await self._cancel(live.order_id, reason="entry_reprice")
        if outcome is not _Cancel.DONE:
            # GONE may mean filled; the next snapshot will tell.
            return
        intent.order_id = None
        await self._resubmit_entry(intent, live.remaining, rules, snapshot, actions, now)

    async def _resubmit_entry(
        self, intent: EntryIntent, quantity: float, rules: InstrumentRules,
        snapshot: TickSnapshot, actions: List[TickAction], now: float,
    ) -> None:
        cfg = self.config
        price = chase_price(
            intent.side, intent.first_price, snapshot.price, intent.reprice_count + 1,
            cfg.entry_max_reprices, cfg.entry_min_maker_offset_pct, cfg.entry_max_chase_pct,
            rules.price_step,
        )
        sizing = size_order(rules, quantity, price)
        if not sizing.accepted:
            await self._abandon_entry(None, f"resize_rejected: {sizing.reason}", actions, now)
            return

        intent.reprice_count += 1
        intent.last_price = price
        intent.submitted_at = now
        self.state.last_action_at = now
        if self.metrics:
            self.metrics.reprices.labels(symbol=self.symbol, leg="entry").inc()
        order = await self._submit(OrderRequest(self.symbol, intent.side, sizing.quantity, price), leg="entry")
        if order is None:
            return
        intent.order_id = order.order_id
        actions.append(TickAction.ENTRY_REPRICED)
        self._log_event("entry_repriced", px=price, first_px=intent.first_price,
                        reprice_count=intent.reprice_count, order_id=order.order_id)

    async def _abandon_entry(
        self, live: Optional[Order], reason: str, actions: List[TickAction], now: float,
    ) -> None:
        if live is not None:
            outcome = await self._cancel(live.order_id, reason=f"entry_{reason}")
            if outcome is _Cancel.FAILED:
                # Keep tracking; abandoning now would leave an unmanaged resting order.
                return
        intent = self.state.drop_entry(now)
        actions.append(TickAction.ENTRY_ABANDONED)
        self._log_event("entry_abandoned", reason=reason,
                        reprice_count=intent.reprice_count if intent else 0)
        await self._notify(f"entry abandoned ({reason})")

    async def _adopt_entry(self, entries: List[Order], actions: List[TickAction], now: float) -> None:
        newest = max(entries, key=lambda o: o.created_at_ms)
        for extra in entries:
            if extra is not newest:
                await self._cancel(extra.order_id, reason="duplicate_entry")
        self.state.begin_entry(EntryIntent(
            side=newest.side, quantity=newest.remaining, first_price=newest.price,
            last_price=newest.price, created_at=now, submitted_at=now,
            order_id=newest.order_id, reason="adopted",
        ), now)
        actions.append(TickAction.ORDER_ADOPTED)
        self._log_event("entry_order_adopted", order_id=newest.order_id, side=newest.side,
                        px=newest.price, duplicates=len(entries) - 1)
        if self.metrics:
            self.metrics.attach_events.labels(symbol=self.symbol, kind="entry_order").inc()

    # ------------------------------------------------------------------
    # IN_POSITION / EXIT_PENDING
    # ------------------------------------------------------------------

    async def _on_position_detected(
        self, rules: InstrumentRules, snapshot: TickSnapshot, actions: List[TickAction], now: float,
    ) -> None:
        cfg = self.config
        intent = self.state.entry
        if intent is not None and intent.order_id:
            live = _find_order(snapshot.open_orders, intent.order_id)
            if live is not None:
                await self._cancel(live.order_id, reason="entry_filled")

        is_long = snapshot.position.signed_quantity > 0
        anchor = snapshot.price
        if is_long:
            stop = maker_price(anchor * (1 - cfg.trail_initial_buffer_pct), rules.price_step, "BUY")
        else:
            stop = maker_price(anchor * (1 + cfg.trail_initial_buffer_pct), rules.price_step, "SELL")
        trail = TrailState(is_long=is_long, anchor=anchor, peak=anchor, trail=stop)
        if intent is not None:
            trail.stop_loss = _valid_level(intent.stop_loss, is_long, anchor, below=True)
            trail.take_profit = _valid_level(intent.take_profit, is_long, anchor, below=False)
        self._sync_protective_levels(trail, snapshot)
        self.state.open_trail(trail, now)
        actions.append(TickAction.POSITION_DETECTED)
        self._log_event("position_detected", qty=snapshot.position.signed_quantity,
                        anchor=anchor, trail=stop, stop_loss=trail.stop_loss, take_profit=trail.take_profit,
                        from_entry=intent is not None)
        side = "LONG" if is_long else "SHORT"
        await self._notify(f"{side} position {snapshot.position.signed_quantity} under trailing stop {stop}")
        if intent is not None:
            await self._place_protective_stop(trail, rules, actions)

    def _sync_protective_levels(self, trail: TrailState, snapshot: TickSnapshot) -> None:
        """Pick up stop-loss / take-profit triggers resting on the venue (set by hand or by us)."""
        pivot = snapshot.position.entry_price or trail.anchor
        levels = detect_protective_levels(snapshot.open_orders, trail.is_long, pivot)
        if trail.stop_loss is None and levels.stop_loss is not None:
            trail.stop_loss = levels.stop_loss
            self._log_event("stop_loss_synced", stop_loss=levels.stop_loss, order_id=levels.stop_order_id)
        if trail.take_profit is None and levels.take_profit is not None:
            trail.take_profit = levels.take_profit
            self._log_event("take_profit_synced", take_profit=levels.take_profit)
        if trail.protective_order_id is None and levels.stop_order_id is not None:
            trail.protective_order_id = levels.stop_order_id

    async def _place_protective_stop(
        self, trail: TrailState, rules: InstrumentRules, actions: List[TickAction],
    ) -> None:
        if not self.config.protective_stop or trail.stop_loss is None or trail.protective_order_id:
            return
        trigger = maker_price(trail.stop_loss, rules.price_step, "BUY" if trail.is_long else "SELL")
        try:
            order = await self.client.place_stop_order(self.symbol, trail.exit_side, trigger)
        except RateLimitedError:
            raise
        except (VenueRejection, TransportError, StaleDataError) as exc:
            # The stop_loss exit trigger still covers the position.
            self._log_event("protective_submit_failed", trigger=trigger, error=str(exc))
            return
        trail.protective_order_id = order.order_id
        actions.append(TickAction.PROTECTIVE_PLACED)
        self._log_event("protective_stop_placed", trigger=trigger, order_id=order.order_id)
        if self.metrics:
            self.metrics.orders_submitted.labels(symbol=self.symbol, side=trail.exit_side, leg="protective").inc()

    async def _manage_position(
        self, signal: Signal, rules: InstrumentRules, snapshot: TickSnapshot,
        actions: List[TickAction], now: float,
    ) -> None:
        trail = self.state.trail
        assert trail is not None
        if self._update_trail(trail, snapshot.price, rules):
            actions.append(TickAction.TRAIL_TIGHTENED)

        if trail.exit_reason is None:
            reason = self._exit_trigger(signal, trail, snapshot.price, snapshot.trend)
            if reason is None:
                return
            trail.exit_reason = reason
            actions.append(TickAction.EXIT_TRIGGERED)
            self._log_event("exit_triggered", reason=reason, px=snapshot.price, anchor=trail.anchor,
                            peak=trail.peak, trail=trail.trail)
            await self._notify(f"exit triggered ({reason}) at {snapshot.price}")

        await self._work_exit(rules, snapshot, actions, now)

    def _update_trail(self, trail: TrailState, price: float, rules: InstrumentRules) -> bool:
        """Move the peak and tighten the stop. Returns True when the stop moved."""
        cfg = self.config
        if trail.is_long:
            trail.peak = max(trail.peak, price)
            if (trail.peak - trail.anchor) / trail.anchor < cfg.trail_activation_pct:
                return False
            candidate = maker_price(trail.peak * (1 - cfg.trail_distance_pct), rules.price_step, "BUY")
            if candidate > trail.trail:
                trail.trail = candidate
                return True
        else:
            trail.peak = min(trail.peak, price)
            if (trail.anchor - trail.peak) / trail.anchor < cfg.trail_activation_pct:
                return False
            candidate = maker_price(trail.peak * (1 + cfg.trail_distance_pct), rules.price_step, "SELL")
            if candidate < trail.trail:
                trail.trail = candidate
                return True
        return False

    def _exit_trigger(
        self, signal: Signal, trail: TrailState, price: float, trend: Optional[TrendSnapshot],
    ) -> Optional[str]:
        cfg = self.config
        if signal.direction is not Direction.NONE and signal.direction.opposes(trail.is_long):
            return "opposing_signal"
        if trail.is_long:
            if trail.take_profit is not None and price >= trail.take_profit:
                return "take_profit"
            if price <= trail.trail:
                return "trail_stop"
            if trail.stop_loss is not None and price <= trail.stop_loss:
                return "stop_loss"
            if trend is not None:
                floor = min(trend.fast_ema, trend.slow_ema) * (1 - cfg.trend_break_tol_pct)
                if trend.close < floor and trend.rsi < cfg.momentum_weak_rsi:
                    return "trend_break"
            if price <= trail.anchor * (1 - cfg.soft_stop_pct):
                return "soft_stop"
        else:
            if trail.take_profit is not None and price <= trail.take_profit:
                return "take_profit"
            if price >= trail.trail:
                return "trail_stop"
            if trail.stop_loss is not None and price >= trail.stop_loss:
                return "stop_loss"
            if trend is not None:
                ceiling = max(trend.fast_ema, trend.slow_ema) * (1 + cfg.trend_break_tol_pct)
                if trend.close > ceiling and trend.rsi > 100 - cfg.momentum_weak_rsi:
                    return "trend_break"
            if price >= trail.anchor * (1 + cfg.soft_stop_pct):
                return "soft_stop"
        return None

    async def _work_exit(
        self, rules: InstrumentRules, snapshot: TickSnapshot, actions: List[TickAction], now: float,
    ) -> None:
        cfg = self.config
        trail = self.state.trail
        assert trail is not None

        if trail.exit_order_id is not None:
            live = _find_order(snapshot.open_orders, trail.exit_order_id)
            if live is None:
                if now - trail.exit_submitted_at < cfg.exit_stale_grace_sec:
                    actions.append(TickAction.EXIT_WAITING)
                    return
                # Expired (post-only would have crossed) or cancelled outside the bot.
                self._log_event("exit_order_vanished", order_id=trail.exit_order_id)
                trail.exit_order_id = None
                trail.exit_reprice_count = min(trail.exit_reprice_count + 1, cfg.exit_max_reprices)
            else:
                await self._chase_exit(trail, live, rules, snapshot, actions, now)
                return

        if self._throttled(now):
            actions.append(TickAction.THROTTLED)
            return
        qty = exit_quantity(rules, snapshot.position.signed_quantity)
        if qty < rules.min_qty:
            self._log_event("exit_qty_below_min", qty=qty, min_qty=rules.min_qty)
            return

        if trail.exit_first_price <= 0:
            price = first_quote(trail.exit_side, snapshot.price, cfg.exit_maker_offset_pct, rules.price_step)
            trail.exit_first_price = price
        else:
            price = self._exit_chase_price(trail, snapshot.price, rules, trail.exit_reprice_count)
        await self._place_exit(trail, qty, price, actions, now, TickAction.EXIT_SUBMITTED)

    async def _chase_exit(
        self, trail: TrailState, live: Order, rules: InstrumentRules,
        snapshot: TickSnapshot, actions: List[TickAction], now: float,
    ) -> None:
        cfg = self.config
        if now - trail.exit_submitted_at < cfg.exit_reprice_sec:
            actions.append(TickAction.EXIT_WAITING)
            return
        if trail.exit_reprice_count >= cfg.exit_max_reprices:
            # Leave the order resting; crossing the spread is an operator decision.
            if not trail.exit_exhausted:
                trail.exit_exhausted = True
                self._log_event("exit_chase_exhausted", order_id=live.order_id, px=live.price)
                await self._notify(f"exit chase exhausted, resting at {live.price}")
            actions.append(TickAction.EXIT_WAITING)
            return
        if self._throttled(now):
            actions.append(TickAction.THROTTLED)
            return

        outcome = await self._cancel(live.order_id, reason="exit_reprice")
        if outcome is not _Cancel.DONE:
            return
        trail.exit_order_id = None
        trail.exit_reprice_count += 1
        if self.metrics:
            self.metrics.reprices.labels(symbol=self.symbol, leg="exit").inc()
        qty = exit_quantity(rules, snapshot.position.signed_quantity)
        if qty < rules.min_qty:
            self._log_event("exit_qty_below_min", qty=qty, min_qty=rules.min_qty)
            return
        price = self._exit_chase_price(trail, snapshot.price, rules, trail.exit_reprice_count)
        await self._place_exit(trail, qty, price, actions, now, TickAction.EXIT_REPRICED)

    def _exit_chase_price(self, trail: TrailState, market: float, rules: InstrumentRules, count: int) -> float:
        cfg = self.config
        return chase_price(
            trail.exit_side, trail.exit_first_price, market, count, cfg.exit_max_reprices,
            cfg.exit_min_maker_offset_pct, cfg.exit_max_chase_pct, rules.price_step,
        )

    async def _place_exit(
        self, trail: TrailState, qty: float, price: float, actions: List[TickAction],
        now: float, action: TickAction,
    ) -> None:
        self.state.last_action_at = now
        order = await self._submit(
            OrderRequest(self.symbol, trail.exit_side, qty, price, reduce_only=True), leg="exit",
        )
        if order is None:
            return
        trail.exit_order_id = order.order_id
        trail.exit_last_price = price
        trail.exit_submitted_at = now
        actions.append(action)
        self._log_event("exit_submitted", side=trail.exit_side, qty=qty, px=price,
                        reprice_count=trail.exit_reprice_count, reason=trail.exit_reason,
                        order_id=order.order_id)

    async def _on_position_flat(self, snapshot: TickSnapshot, actions: List[TickAction], now: float) -> None:
        trail = self.state.trail
        assert trail is not None
        if trail.exit_order_id is not None:
            live = _find_order(snapshot.open_orders, trail.exit_order_id)
            if live is not None:
                await self._cancel(live.order_id, reason="position_closed")
        protective = _find_order(snapshot.open_orders, trail.protective_order_id)
        if protective is not None:
            await self._cancel(protective.order_id, reason="protective_closed")
        self.state.reset(now)
        actions.append(TickAction.POSITION_CLOSED)
        self._log_event("position_closed", reason=trail.exit_reason or "external",
                        anchor=trail.anchor, peak=trail.peak, trail=trail.trail, px=snapshot.price)
        await self._notify(f"position closed ({trail.exit_reason or 'external'}) near {snapshot.price}")

    # ------------------------------------------------------------------
    # Venue calls
    # ------------------------------------------------------------------

    async def _submit(self, request: OrderRequest, leg: str) -> Optional[Order]:
        try:
            order = await self.client.place_limit_order(request)
        except RateLimitedError:
            raise
        except (VenueRejection, TransportError, StaleDataError) as exc:
            self._log_event(f"{leg}_submit_failed", side=request.side, qty=request.quantity,
                            px=request.price, error=str(exc))
            if self.metrics:
                self.metrics.orders_rejected.labels(symbol=self.symbol, reason=type(exc).__name__).inc()
            return None
        if self.metrics:
            self.metrics.orders_submitted.labels(symbol=self.symbol, side=request.side, leg=leg).inc()
        return order

    async def _cancel(self, order_id: str, reason: str) -> _Cancel:
        try:
            result = await self.client.cancel_order(self.symbol, order_id)
        except RateLimitedError:
            raise
        except (VenueRejection, TransportError, StaleDataError) as exc:
            self._log_event("cancel_failed", order_id=order_id, reason=reason, error=str(exc))
            return _Cancel.FAILED
        if self.metrics:
            self.metrics.orders_cancelled.labels(symbol=self.symbol, reason=reason).inc()
        return _Cancel.GONE if result is None else _Cancel.DONE

    def _record(self, snapshot: TickSnapshot) -> None:
        if not self.metrics:
            return
        self.metrics.set_phase(self.symbol, self.state.phase.name)
        self.metrics.position.labels(symbol=self.symbol).set(snapshot.position.signed_quantity)
        trail = self.state.trail
        self.metrics.trail_stop.labels(symbol=self.symbol).set(trail.trail if trail else 0.0)


def _find_order(orders: List[Order], order_id: Optional[str]) -> Optional[Order]:
    if order_id is None:
        return None
    for order in orders:
        if order.order_id == order_id and order.is_open:
            return order
    return None


@dataclass
class ProtectiveLevels:
    """Stop-loss / take-profit triggers found among a position's open orders."""
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    stop_order_id: Optional[str] = None
    considered: int = 0


def detect_protective_levels(orders: List[Order], is_long: bool, entry_pivot: float) -> ProtectiveLevels:
    """
    Read SL/TP off resting trigger orders on the closing side.

    With several candidates the tightest wins: the highest stop under a long
    entry, the nearest take-profit above it (mirrored for shorts).
    """
    levels = ProtectiveLevels()
    closing_side = "SELL" if is_long else "BUY"
    for order in orders:
        if not order.is_open or not order.is_conditional:
            continue
        if order.side and order.side != closing_side:
            continue
        trigger = order.trigger_price or order.price
        if trigger <= 0:
            continue
        levels.considered += 1
        take = "TAKE_PROFIT" in order.type.upper()
        if entry_pivot <= 0:
            continue
        if not take and _valid_level(trigger, is_long, entry_pivot, below=True) is not None:
            tighter = levels.stop_loss is None or (trigger > levels.stop_loss if is_long else trigger < levels.stop_loss)
            if tighter:
                levels.stop_loss = trigger
                levels.stop_order_id = order.order_id
        elif take and _valid_level(trigger, is_long, entry_pivot, below=False) is not None:
            nearer = levels.take_profit is None or (
                trigger < levels.take_profit if is_long else trigger > levels.take_profit)
            if nearer:
                levels.take_profit = trigger
    return levels


def _valid_level(level: Optional[float], is_long: bool, reference: float, below: bool) -> Optional[float]:
    """A stop must sit on the losing side of reference, a take-profit on the winning side."""
    if not level or level <= 0:
        return None
    losing_side = is_long == below
    if losing_side:
        return level if level < reference else None
    return level if level > reference else None
