"""
Prometheus metrics for order payment monitoring.

Tracks:
- Payment attempts by outcome
- Gateway call counts, errors and latency
- Circuit breaker state
- Webhook events by type and outcome
- Idempotency ledger duplicates and purges
- Status queries
"""
from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payment_attempts_total = Counter(
    "payment_attempts_total",
    "Total beginPayment requests",
    ["outcome", "currency"],  # outcome: created, rejected, gateway_error
)

payment_attempt_duration_seconds = Histogram(
    "payment_attempt_duration_seconds",
    "beginPayment duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

payment_amount_minor_units = Histogram(
    "payment_amount_minor_units",
    "Authorization amounts in minor units",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

order_cancellations_total = Counter(
    "order_cancellations_total",
    "Total order cancellations",
    ["outcome"],
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "status"],  # operation: create_authorization, retrieve, etc.
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total payment gateway errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Circuit breaker metrics
gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # applied, ignored, duplicate, unresolved, unhandled
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Total webhook payloads rejected for a bad signature",
)

# Ledger metrics
ledger_write_failures_total = Counter(
    "ledger_write_failures_total",
    "Ledger writes that failed after the order update succeeded",
)

ledger_purged_events_total = Counter(
    "ledger_purged_events_total",
    "Processed event ids removed by retention purges",
)

# Status metrics
status_queries_total = Counter(
    "status_queries_total",
    "Total payment status queries",
    ["view"],  # local, live
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment_attempt(outcome: str, currency: str, amount_minor: int = 0) -> None:
        """Record a beginPayment outcome."""
        payment_attempts_total.labels(outcome=outcome, currency=currency).inc()
        if amount_minor:
            payment_amount_minor_units.observe(amount_minor)

    @staticmethod
    def record_payment_duration(duration_seconds: float) -> None:
        """Record beginPayment duration."""
        payment_attempt_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_cancellation(outcome: str) -> None:
        order_cancellations_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a gateway API call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record a gateway API error."""
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_signature_failure() -> None:
        webhook_signature_failures_total.inc()

    @staticmethod
    def record_ledger_write_failure() -> None:
        ledger_write_failures_total.inc()

    @staticmethod
    def record_ledger_purge(deleted: int) -> None:
        ledger_purged_events_total.inc(deleted)

    @staticmethod
    def record_status_query(view: str) -> None:
        status_queries_total.labels(view=view).inc()


# Export singleton instance
metrics = MetricsCollector()
