"""
Prometheus metrics for settlement monitoring.

Tracks:
- Checkout requests by outcome
- Settlement outcomes by trigger source
- Amount mismatches caught by the cross-check
- Payment provider calls and latency
- Webhook deliveries
- Rate limit rejections
- Pending-payment sweeps
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Checkout metrics
checkout_requests_total = Counter(
    "checkout_requests_total",
    "Total checkout initiation requests",
    ["outcome", "tier"],
)

checkout_amount = Histogram(
    "checkout_amount",
    "Checkout amounts in whole currency units",
    ["currency"],
    buckets=(5, 15, 30, 100, 500, 1000, 5000, 15000, 30000, 100000, 1000000),
)

# Settlement metrics
settlement_outcomes_total = Counter(
    "settlement_outcomes_total",
    "Settlement results by trigger source",
    ["source", "status"],  # status: completed, failed, pending, already
)

settlement_amount_mismatch_total = Counter(
    "settlement_amount_mismatch_total",
    "Settlements forced to failed because the verified amount differed",
)

settlement_duration_seconds = Histogram(
    "settlement_duration_seconds",
    "End-to-end settlement duration in seconds",
    ["source"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment provider requests",
    ["operation", "status"],  # operation: create_checkout, verify
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Payment provider call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Webhook metrics
webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Webhook deliveries by handling result",
    ["result"],  # processed, duplicate, ignored, error, rejected
)

# Rate limiting
rate_limit_rejections_total = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by a rate limiter",
    ["limiter"],
)

# Reconciliation sweep
reconciliation_payments_checked_total = Counter(
    "reconciliation_payments_checked_total",
    "Pending payments re-checked by the sweep",
    ["status"],
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last pending-payment sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_checkout(outcome: str, tier: str, currency: str = "", amount: int = 0) -> None:
        """Record a checkout initiation attempt."""
        checkout_requests_total.labels(outcome=outcome, tier=tier or "unknown").inc()
        if amount > 0 and currency:
            checkout_amount.labels(currency=currency).observe(amount)

    @staticmethod
    def record_settlement(source: str, status: str, duration_seconds: float) -> None:
        """Record a settlement result."""
        settlement_outcomes_total.labels(source=source, status=status).inc()
        settlement_duration_seconds.labels(source=source).observe(duration_seconds)

    @staticmethod
    def record_amount_mismatch() -> None:
        settlement_amount_mismatch_total.inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a payment provider call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_webhook(result: str) -> None:
        webhook_deliveries_total.labels(result=result).inc()

    @staticmethod
    def record_rate_limit_rejection(limiter: str) -> None:
        rate_limit_rejections_total.labels(limiter=limiter).inc()

    @staticmethod
    def record_reconciliation_check(status: str) -> None:
        reconciliation_payments_checked_total.labels(status=status).inc()

    @staticmethod
    def mark_reconciliation_run() -> None:
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
