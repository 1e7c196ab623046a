"""
Prometheus metrics for the payment relay.

Tracks:
- Stripe API calls and errors by operation
- Ledger calls by action
- Webhook events received and how they were handled
- Reservation status writes
- Approval outcomes
"""
from prometheus_client import Counter, Histogram

# Stripe API metrics
stripe_api_requests_total = Counter(
    "stripe_api_requests_total",
    "Total Stripe API requests",
    ["operation", "status"],  # status: success, error
)

stripe_api_errors_total = Counter(
    "stripe_api_errors_total",
    "Total Stripe API errors",
    ["error_type"],  # transient, permanent, rate_limit, auth
)

stripe_api_duration_seconds = Histogram(
    "stripe_api_duration_seconds",
    "Stripe API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Ledger metrics
ledger_requests_total = Counter(
    "ledger_requests_total",
    "Total ledger web app requests",
    ["action", "status"],  # status: ok, not_found, error
)

ledger_duration_seconds = Histogram(
    "ledger_duration_seconds",
    "Ledger call duration in seconds",
    ["action"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
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
    ["event_type", "status"],  # applied, ignored, uncorrelated, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries rejected for a bad signature",
)

# Reservation status metrics
preauth_status_writes_total = Counter(
    "preauth_status_writes_total",
    "Reservation status writes issued to the ledger",
    ["status", "source"],  # source: webhook, poll, approve, capture, release
)

approvals_total = Counter(
    "approvals_total",
    "Approval charge outcomes",
    ["outcome"],  # paid, action_required, failed, missing_payment_method
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_stripe_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record Stripe API call."""
        stripe_api_requests_total.labels(operation=operation, status=status).inc()
        stripe_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_stripe_api_error(error_type: str) -> None:
        """Record Stripe API error."""
        stripe_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def record_ledger_call(action: str, status: str, duration_seconds: float) -> None:
        """Record a ledger call."""
        ledger_requests_total.labels(action=action, status=status).inc()
        ledger_duration_seconds.labels(action=action).observe(duration_seconds)

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
    def record_status_write(status: str, source: str) -> None:
        preauth_status_writes_total.labels(status=status, source=source).inc()

    @staticmethod
    def record_approval(outcome: str) -> None:
        approvals_total.labels(outcome=outcome).inc()


# Global metrics instance
metrics = MetricsCollector()
