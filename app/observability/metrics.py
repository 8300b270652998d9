"""
Metrics Collection with Prometheus.

Exposes ledger, job pipeline and HTTP metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    JOB_TYPE = "job_type"
    JOB_STATUS = "job_status"
    RESULT_STATUS = "result_status"
    ERROR_TYPE = "error_type"


class ValidatorMetrics:
    """
    Centralized metrics for the validation/billing core.

    Covers:
    - HTTP requests (rate, duration, in flight)
    - Reservations (accepted/rejected), credits consumed and refunded
    - Jobs by terminal status, per-address check outcomes and latency
    - Webhook deliveries and admin operations
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info("validator_service", "Service information")
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "validator_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "validator_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "validator_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.reservations_total = Counter(
            "validator_reservations_total",
            "Credit reservations attempted",
            ["accepted"],
        )

        self.credits_consumed_total = Counter(
            "validator_credits_consumed_total",
            "Credits debited for checked addresses",
        )

        self.credits_refunded_total = Counter(
            "validator_credits_refunded_total",
            "Reserved credits released without being charged",
        )

        self.admin_credit_changes_total = Counter(
            "validator_admin_credit_changes_total",
            "Admin credit adjust/set operations",
            [MetricLabels.OPERATION],
        )

        # ====================================================================
        # Job Pipeline Metrics
        # ====================================================================
        self.jobs_created_total = Counter(
            "validator_jobs_created_total",
            "Validation jobs created",
            [MetricLabels.JOB_TYPE],
        )

        self.jobs_finished_total = Counter(
            "validator_jobs_finished_total",
            "Validation jobs reaching a terminal state",
            [MetricLabels.JOB_TYPE, MetricLabels.JOB_STATUS],
        )

        self.checks_total = Counter(
            "validator_checks_total",
            "Per-address check outcomes",
            [MetricLabels.RESULT_STATUS],
        )

        self.check_duration_seconds = Histogram(
            "validator_check_duration_seconds",
            "Email checker latency in seconds",
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.jobs_watchdog_failed_total = Counter(
            "validator_jobs_watchdog_failed_total",
            "Jobs force-failed by the watchdog",
        )

        self.webhooks_total = Counter(
            "validator_webhooks_total",
            "Webhook delivery attempts",
            ["success"],
        )

        self.admin_operations_total = Counter(
            "validator_admin_operations_total",
            "Admin override operations",
            [MetricLabels.OPERATION],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "validator_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_reservation(self, accepted: bool) -> None:
        self.reservations_total.labels(accepted=str(accepted)).inc()

    def record_check(self, result_status: str, duration: float) -> None:
        self.checks_total.labels(result_status=result_status).inc()
        self.check_duration_seconds.observe(duration)

    def record_job_finished(self, job_type: str, job_status: str, refunded: int) -> None:
        self.jobs_finished_total.labels(job_type=job_type, job_status=job_status).inc()
        if refunded > 0:
            self.credits_refunded_total.inc(refunded)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = ValidatorMetrics()
