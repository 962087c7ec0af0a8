"""
Prometheus metrics for order and payment monitoring.

Tracks:
- Orders created or rejected
- Payment initiations by method and outcome
- M-Pesa API calls, errors and latency
- Callback outcomes
- Stale payment reconciliation runs
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total number of orders created",
    ["payment_method"],
)

orders_rejected_total = Counter(
    "orders_rejected_total",
    "Total number of order requests rejected",
    ["reason"],  # ITEMS_UNAVAILABLE, TOTAL_MISMATCH, ...
)

order_creation_duration_seconds = Histogram(
    "order_creation_duration_seconds",
    "Order creation duration in seconds, payment initiation included",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

order_status_transitions_total = Counter(
    "order_status_transitions_total",
    "Total order status transitions",
    ["to_status"],
)

# Payment metrics
payment_initiations_total = Counter(
    "payment_initiations_total",
    "Total payment initiations",
    ["method", "outcome"],  # outcome: initiated, pending_delivery, failed
)

payment_amount = Histogram(
    "payment_amount_kes",
    "Payment amounts in shillings",
    buckets=(50, 100, 500, 1000, 2500, 5000, 10000, 50000, 100000),
)

# M-Pesa API metrics
mpesa_api_requests_total = Counter(
    "mpesa_api_requests_total",
    "Total M-Pesa API requests",
    ["operation", "status"],  # operation: token, stk_push, stk_query
)

mpesa_api_errors_total = Counter(
    "mpesa_api_errors_total",
    "Total M-Pesa API errors",
    ["error_type"],  # transient, permanent, auth
)

mpesa_api_duration_seconds = Histogram(
    "mpesa_api_duration_seconds",
    "M-Pesa API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

mpesa_circuit_breaker_state = Gauge(
    "mpesa_circuit_breaker_state",
    "M-Pesa circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Callback metrics
mpesa_callbacks_total = Counter(
    "mpesa_callbacks_total",
    "Total M-Pesa callbacks received",
    ["outcome"],  # completed, failed, duplicate, not_found, invalid, error
)

mpesa_callback_duration_seconds = Histogram(
    "mpesa_callback_duration_seconds",
    "Callback processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Reconciliation metrics
stale_payments_found = Gauge(
    "stale_payments_found",
    "Initiated payments without a callback found by the last reconciliation run",
)

stale_payments_resolved_total = Counter(
    "stale_payments_resolved_total",
    "Stale payments finalized by status query",
    ["outcome"],
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation job duration in seconds",
    buckets=(1, 5, 10, 30, 60, 120, 300),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)

refresh_tokens_purged_total = Counter(
    "refresh_tokens_purged_total",
    "Expired or revoked refresh tokens deleted",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(payment_method: str, duration_seconds: float) -> None:
        """Record a created order."""
        orders_created_total.labels(payment_method=payment_method).inc()
        order_creation_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_order_rejected(reason: str) -> None:
        orders_rejected_total.labels(reason=reason).inc()

    @staticmethod
    def record_status_transition(to_status: str) -> None:
        order_status_transitions_total.labels(to_status=to_status).inc()

    @staticmethod
    def record_payment_initiation(method: str, outcome: str, amount: float) -> None:
        """Record a payment initiation attempt."""
        payment_initiations_total.labels(method=method, outcome=outcome).inc()
        payment_amount.observe(amount)

    @staticmethod
    def record_mpesa_api_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record M-Pesa API call."""
        mpesa_api_requests_total.labels(operation=operation, status=status).inc()
        mpesa_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_mpesa_api_error(error_type: str) -> None:
        mpesa_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        mpesa_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_callback(outcome: str, duration_seconds: float) -> None:
        """Record callback processing."""
        mpesa_callbacks_total.labels(outcome=outcome).inc()
        mpesa_callback_duration_seconds.observe(duration_seconds)

    @staticmethod
    def set_reconciliation_metrics(stale_count: int, duration_seconds: float) -> None:
        """Set reconciliation metrics."""
        stale_payments_found.set(stale_count)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())

    @staticmethod
    def record_stale_payment_resolved(outcome: str) -> None:
        stale_payments_resolved_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_refresh_tokens_purged(count: int) -> None:
        if count > 0:
            refresh_tokens_purged_total.inc(count)


# Export singleton instance
metrics = MetricsCollector()
