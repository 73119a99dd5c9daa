"""Prometheus metrics for chatcoord monitoring."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest

# Global registry for metrics
REGISTRY = CollectorRegistry()

# Counters
platform_requests = Counter(
    'chatcoord_platform_requests_total',
    'Total number of outbound chat platform calls',
    ['operation'],
    registry=REGISTRY
)

platform_throttled = Counter(
    'chatcoord_platform_throttled_total',
    'Total number of throttled platform responses',
    ['operation'],
    registry=REGISTRY
)

platform_errors = Counter(
    'chatcoord_platform_errors_total',
    'Total number of platform calls that surfaced an error',
    ['operation'],
    registry=REGISTRY
)

events_ingested = Counter(
    'chatcoord_events_ingested_total',
    'Total number of inbox rows newly inserted',
    ['channel'],
    registry=REGISTRY
)

poll_cycles = Counter(
    'chatcoord_poll_cycles_total',
    'Poll cycles by outcome',
    ['outcome'],
    registry=REGISTRY
)

consensus_decisions = Counter(
    'chatcoord_consensus_decisions_total',
    'Consensus requests resolved',
    ['kind', 'decision', 'method'],
    registry=REGISTRY
)

# Gauges
lease_held = Gauge(
    'chatcoord_poller_lease_held',
    '1 while this process holds the poller lease',
    registry=REGISTRY
)

rate_limiter_tokens = Gauge(
    'chatcoord_rate_limiter_tokens',
    'Tokens currently available in the rate limiter bucket',
    registry=REGISTRY
)


class MetricsCollector:
    """Centralized metrics collection and management."""

    def record_request(self, operation: str):
        platform_requests.labels(operation=operation).inc()

    def record_throttled(self, operation: str):
        platform_throttled.labels(operation=operation).inc()

    def record_error(self, operation: str):
        platform_errors.labels(operation=operation).inc()

    def record_ingested(self, channel: str, count: int):
        if count > 0:
            events_ingested.labels(channel=channel).inc(count)

    def record_poll_cycle(self, outcome: str):
        poll_cycles.labels(outcome=outcome).inc()

    def record_decision(self, kind: str, decision: str, method: str):
        consensus_decisions.labels(kind=kind, decision=decision, method=method).inc()

    def set_lease_held(self, held: bool):
        lease_held.set(1 if held else 0)

    def set_tokens(self, tokens: float):
        rate_limiter_tokens.set(tokens)

    def get_metrics(self) -> bytes:
        """Get current metrics in Prometheus format."""
        return generate_latest(REGISTRY)


# Global metrics collector instance
metrics = MetricsCollector()
