"""
Prometheus Metrics Engine

Provides metrics for:
- Price feed health (accepted/suppressed updates, reconnects, staleness)
- Arbitrage opportunity detection rates and tick cost
- Execution results (trades, real vs simulated legs, auth retries)

Each engine owns a private CollectorRegistry so several engines (tests,
multiple bots in one process) never collide on metric names.
"""

import logging
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

logger = logging.getLogger(__name__)

FEED_STATE_VALUES = {"disconnected": 0, "connecting": 1, "reconnecting": 2, "streaming": 3}


class MetricsEngine:
    """Central metrics collection and export"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._setup_prometheus_metrics()

    def _setup_prometheus_metrics(self):
        """Initialize Prometheus metrics"""

        # ===== PRICE FEED METRICS =====
        self.price_updates_total = Counter(
            'arb_price_updates_total',
            'Price updates written to the state store',
            ['venue'],
            registry=self.registry,
        )

        self.price_updates_suppressed_total = Counter(
            'arb_price_updates_suppressed_total',
            'Price updates below the change-significance threshold',
            ['venue'],
            registry=self.registry,
        )

        self.feed_reconnects_total = Counter(
            'arb_feed_reconnects_total',
            'Feed reconnections',
            ['venue', 'reason'],  # reason: error, closed, watchdog
            registry=self.registry,
        )

        self.feed_state = Gauge(
            'arb_feed_state',
            'Feed state (0=disconnected 1=connecting 2=reconnecting 3=streaming)',
            ['venue'],
            registry=self.registry,
        )

        self.feed_staleness = Gauge(
            'arb_feed_staleness_seconds',
            'Time since the last update received from a venue',
            ['venue'],
            registry=self.registry,
        )

        # ===== ARBITRAGE METRICS =====
        self.opportunities_detected_total = Counter(
            'arb_opportunities_detected_total',
            'Arbitrage opportunities detected',
            ['type'],  # direct, triangular
            registry=self.registry,
        )

        self.current_best_opportunity = Gauge(
            'arb_current_best_opportunity_percent',
            'Best profit percentage of the latest tick',
            ['type'],
            registry=self.registry,
        )

        self.detection_duration = Histogram(
            'arb_detection_tick_seconds',
            'Time spent in one detection tick',
            buckets=[0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0],
            registry=self.registry,
        )

        # ===== EXECUTION METRICS =====
        self.trades_total = Counter(
            'arb_trades_total',
            'Finalized trades',
            ['status'],  # completed, failed
            registry=self.registry,
        )

        self.legs_total = Counter(
            'arb_legs_total',
            'Executed legs',
            ['venue', 'kind'],  # kind: real, simulated
            registry=self.registry,
        )

        self.auth_retries_total = Counter(
            'arb_auth_retries_total',
            'Clock resync and retry after an authentication failure',
            ['venue'],
            registry=self.registry,
        )

    # ===== PUBLIC METHODS FOR RECORDING METRICS =====

    def record_price_update(self, venue: str, accepted: bool = True):
        if accepted:
            self.price_updates_total.labels(venue=venue).inc()
        else:
            self.price_updates_suppressed_total.labels(venue=venue).inc()

    def record_reconnect(self, venue: str, reason: str):
        self.feed_reconnects_total.labels(venue=venue, reason=reason).inc()

    def record_feed_state(self, venue: str, state: str):
        self.feed_state.labels(venue=venue).set(FEED_STATE_VALUES.get(state, 0))

    def record_staleness(self, venue: str, seconds: float):
        self.feed_staleness.labels(venue=venue).set(seconds)

    def record_opportunity(self, opp_type: str):
        self.opportunities_detected_total.labels(type=opp_type).inc()

    def record_best_opportunity(self, opp_type: str, profit_percent: float):
        """Update current best opportunity"""
        self.current_best_opportunity.labels(type=opp_type).set(profit_percent)

    def record_detection(self, seconds: float):
        self.detection_duration.observe(seconds)

    def record_trade(self, status: str):
        self.trades_total.labels(status=status).inc()

    def record_leg(self, venue: str, kind: str):
        self.legs_total.labels(venue=venue, kind=kind).inc()

    def record_auth_retry(self, venue: str):
        self.auth_retries_total.labels(venue=venue).inc()

    # ===== METRIC EXPORT =====

    def value(self, name: str, **labels) -> Optional[float]:
        """Current value of a sample, None when never recorded"""
        return self.registry.get_sample_value(name, labels or None)

    def serve(self, port: int):
        """Start the HTTP exporter on a background thread"""
        start_http_server(port, registry=self.registry)
        logger.info(f"Prometheus metrics on :{port}/metrics")
