"""
Prometheus metrics module for Tipu.

Service operation timings come from the @measure_operation decorator;
payment scheduler and meeting-link outcomes are recorded explicitly by
the services that own them.
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
    "tipu_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 10.0),
)

service_operations_total = Counter(
    "tipu_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "tipu_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

payment_stage_total = Counter(
    "tipu_payment_stage_total",
    "Payment stage attempts by outcome",
    ["stage", "outcome"],
    registry=REGISTRY,
)

meeting_link_total = Counter(
    "tipu_meeting_link_total",
    "Meeting provider calls by operation and outcome",
    ["operation", "outcome"],
    registry=REGISTRY,
)

data_integrity_warnings_total = Counter(
    "tipu_data_integrity_warnings_total",
    "Bookings found contradicting their own invariants",
    ["kind"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

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
            service: Service name (e.g., 'BookingLifecycleService')
            operation: Operation/method name (e.g., 'cancel_booking')
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
    def record_payment_stage(stage: str, outcome: str) -> None:
        payment_stage_total.labels(stage=stage, outcome=outcome).inc()

    @staticmethod
    def record_meeting_call(operation: str, outcome: str) -> None:
        meeting_link_total.labels(operation=operation, outcome=outcome).inc()

    @staticmethod
    def record_integrity_warning(kind: str) -> None:
        data_integrity_warnings_total.labels(kind=kind).inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format."""
        return generate_latest(REGISTRY)

    @staticmethod
    def get_content_type() -> str:
        return CONTENT_TYPE_LATEST


prometheus_metrics = PrometheusMetrics()
