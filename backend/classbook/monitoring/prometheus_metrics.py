"""
Prometheus metrics module for the classbook ledger.

Service timings come from @measure_operation; ledger, booking, waitlist and
outbox outcomes are recorded explicitly by the services that produce them.
"""

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "classbook_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "classbook_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "classbook_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

# Ledger
credits_consumed_total = Counter(
    "classbook_credits_consumed_total",
    "Credits drawn from allowances",
    ["service_type"],
    registry=REGISTRY,
)

credits_refunded_total = Counter(
    "classbook_credits_refunded_total",
    "Credits returned to allowances by voiding a package use",
    ["service_type"],
    registry=REGISTRY,
)

# Bookings
booking_outcomes_total = Counter(
    "classbook_booking_outcomes_total",
    "Booking attempts by outcome",
    ["operation", "outcome"],  # outcome: success | error code
    registry=REGISTRY,
)

waitlist_promotions_total = Counter(
    "classbook_waitlist_promotions_total",
    "Waitlist promotion attempts by outcome",
    ["outcome"],  # promoted | empty | failed | skipped
    registry=REGISTRY,
)

# Outbox
event_outbox_total = Counter(
    "classbook_event_outbox_total",
    "Outbox events by delivery outcome",
    ["status", "event_type"],
    registry=REGISTRY,
)

event_outbox_attempt_total = Counter(
    "classbook_event_outbox_attempt_total",
    "Number of outbox delivery attempts",
    ["event_type"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Records classbook metrics and renders the exposition payload."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'BookingService')
            operation: Operation/method name (e.g., 'create_booking')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def inc_credits_consumed(service_type: str, credits: int) -> None:
        credits_consumed_total.labels(service_type=service_type).inc(credits)

    @staticmethod
    def inc_credits_refunded(service_type: str, credits: int) -> None:
        credits_refunded_total.labels(service_type=service_type).inc(credits)

    @staticmethod
    def record_booking_outcome(operation: str, outcome: str) -> None:
        booking_outcomes_total.labels(operation=operation, outcome=outcome).inc()

    @staticmethod
    def record_promotion_outcome(outcome: str) -> None:
        waitlist_promotions_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_outbox_attempt(event_type: str) -> None:
        """Increment attempt counter for outbox delivery."""
        event_outbox_attempt_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_outbox_outcome(event_type: str, status: str) -> None:
        """Record the outcome of one outbox delivery attempt."""
        event_outbox_total.labels(status=status, event_type=event_type).inc()

    @staticmethod
    def get_metrics() -> bytes:
        return generate_latest(REGISTRY)

    @staticmethod
    def get_content_type() -> str:
        return CONTENT_TYPE_LATEST


# Singleton instance
prometheus_metrics = PrometheusMetrics()
