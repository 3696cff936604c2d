"""
Execution layer components.

- SignedRequestGateway: signed REST transport with retry and rate-limit detection
- VenueClient: typed venue operations (market data, positions, orders, income)
- InstrumentRulesCache: lazily loaded tick/step/min-notional rules
- OrderLifecycle: per-instrument entry/position/exit state machine
- ReconciliationService: periodic venue truth, attach and close detection
"""

from execbot.execution.gateway import (
    CallOutcome,
    CallResult,
    GatewayConfig,
    RetryPolicy,
    SignedRequestGateway,
    is_rate_limited,
)
from execbot.execution.venue_client import VenueClient
from execbot.execution.rules_cache import InstrumentRulesCache, parse_instrument_rules
from execbot.execution.pricing import SizingResult, chase_price, first_quote, size_entry, size_order
from execbot.execution.order_lifecycle import (
    AttachEvent,
    LifecycleConfig,
    LifecyclePhase,
    OrderLifecycle,
    TickAction,
    TickResult,
    TickSnapshot,
)
from execbot.execution.reconciliation_service import (
    ReconcileResult,
    ReconciliationConfig,
    ReconciliationService,
    SymbolReconcileResult,
)

__all__ = [
    "CallOutcome",
    "CallResult",
    "GatewayConfig",
    "RetryPolicy",
    "SignedRequestGateway",
    "is_rate_limited",
    "VenueClient",
    "InstrumentRulesCache",
    "parse_instrument_rules",
    "SizingResult",
    "chase_price",
    "first_quote",
    "size_entry",
    "size_order",
    "AttachEvent",
    "LifecycleConfig",
    "LifecyclePhase",
    "OrderLifecycle",
    "TickAction",
    "TickResult",
    "TickSnapshot",
    "ReconcileResult",
    "ReconciliationConfig",
    "ReconciliationService",
    "SymbolReconcileResult",
]
