"""
Prometheus metrics for execution observability.

Organized into: execution, lifecycle, venue health.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

PHASE_CODES = {"IDLE": 0, "ENTRY_PENDING": 1, "IN_POSITION": 2, "EXIT_PENDING": 3}


class ExecMetrics:
    """Per-symbol execution metrics."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self._registry = reg

        # === Execution Metrics ===
        self.orders_submitted = Counter(
            'orders_submitted_total',
            'Orders accepted by the venue (or paper-acked)',
            labelnames=['symbol', 'side', 'leg'],
            registry=reg
        )
        self.orders_rejected = Counter(
            'orders_rejected_total',
            'Orders refused locally (sizing) or by the venue',
            labelnames=['symbol', 'reason'],
            registry=reg
        )
        self.orders_cancelled = Counter(
            'orders_cancelled_total',
            'Orders cancelled',
            labelnames=['symbol', 'reason'],
            registry=reg
        )
        self.reprices = Counter(
            'reprices_total',
            'Chase resubmissions',
            labelnames=['symbol', 'leg'],
            registry=reg
        )

        # === Lifecycle Metrics ===
        self.lifecycle_phase = Gauge(
            'lifecycle_phase',
            'Lifecycle phase (0=idle, 1=entry pending, 2=in position, 3=exit pending)',
            labelnames=['symbol'],
            registry=reg
        )
        self.position = Gauge(
            'position',
            'Signed position quantity as last reported by the venue',
            labelnames=['symbol'],
            registry=reg
        )
        self.trail_stop = Gauge(
            'trail_stop',
            'Current trailing stop price (0 when flat)',
            labelnames=['symbol'],
            registry=reg
        )
        self.attach_events = Counter(
            'attach_events_total',
            'Reconciliation discrepancies applied to a lifecycle',
            labelnames=['symbol', 'kind'],
            registry=reg
        )

        # === Daily PnL ===
        self.daily_pnl = Gauge(
            'daily_pnl',
            'Net PnL of positions closed today (UTC)',
            registry=reg
        )
        self.daily_cooldowns = Counter(
            'daily_cooldowns_total',
            'Daily PnL cooldowns started',
            labelnames=['kind'],
            registry=reg
        )

        # === Venue Health ===
        self.rate_limited = Counter(
            'rate_limited_total',
            'Rate-limit classifications that triggered backoff',
            labelnames=['component'],
            registry=reg
        )
        self.tick_errors = Counter(
            'tick_errors_total',
            'Worker ticks that ended in an error',
            labelnames=['symbol', 'error_type'],
            registry=reg
        )
        self.tick_duration_ms = Histogram(
            'tick_duration_ms',
            'Worker tick duration (milliseconds)',
            labelnames=['symbol'],
            buckets=[10, 50, 100, 250, 500, 1000, 2500, 5000],
            registry=reg
        )

    def get_registry(self) -> CollectorRegistry:
        return self._registry

    def set_phase(self, symbol: str, phase_name: str) -> None:
        self.lifecycle_phase.labels(symbol=symbol).set(PHASE_CODES.get(phase_name, -1))


def start_metrics_server(port: int, metrics: ExecMetrics) -> None:
    """Expose /metrics on port; 0 disables the exporter."""
    if port > 0:
        start_http_server(port, registry=metrics.get_registry())
