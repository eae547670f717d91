"""
Metrics Collection with Prometheus.

Exposes ledger and AI provider metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from tokenledger.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    ERROR_TYPE = "error_type"
    BUCKET = "bucket"
    PURCHASE_TYPE = "purchase_type"
    MODEL = "model"
    OPERATION = "operation"


class LedgerMetrics:
    """
    Centralized metrics for the token ledger.

    Covers:
    - HTTP requests (rate, duration, in flight)
    - Token deductions and credits per bucket
    - AI provider calls and fallbacks
    - Errors by type
    """

    def __init__(self) -> None:
        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info("ledger_service", "Service information")
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
            "ledger_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "ledger_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        )

        self.http_requests_in_progress = Gauge(
            "ledger_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.deductions_total = Counter(
            "ledger_deductions_total",
            "Total token deductions attempted",
            ["success", MetricLabels.ERROR_TYPE],
        )

        self.tokens_deducted_total = Counter(
            "ledger_tokens_deducted_total",
            "Tokens removed from user buckets",
            [MetricLabels.BUCKET],
        )

        self.tokens_credited_total = Counter(
            "ledger_tokens_credited_total",
            "Tokens added to user buckets",
            [MetricLabels.BUCKET, MetricLabels.PURCHASE_TYPE],
        )

        self.split_deductions_total = Counter(
            "ledger_split_deductions_total",
            "Usage charges that spanned more than one bucket",
        )

        self.deduction_duration_seconds = Histogram(
            "ledger_deduction_duration_seconds",
            "Token deduction duration in seconds",
            buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        # ====================================================================
        # AI Provider Metrics
        # ====================================================================
        self.ai_requests_total = Counter(
            "ledger_ai_requests_total",
            "Total AI provider requests",
            [MetricLabels.MODEL, "outcome"],
        )

        self.ai_fallbacks_total = Counter(
            "ledger_ai_fallbacks_total",
            "Times a request fell through to the next model",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "ledger_errors_total",
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

    def record_deduction(
        self,
        success: bool,
        amounts: dict[str, int],
        duration: float,
        error_type: str | None = None,
    ) -> None:
        """Record a deduction and the tokens taken from each bucket."""
        self.deductions_total.labels(success=str(success), error_type=error_type or "none").inc()
        if success:
            for bucket, amount in amounts.items():
                if amount > 0:
                    self.tokens_deducted_total.labels(bucket=bucket).inc(amount)
        self.deduction_duration_seconds.observe(duration)

    def record_credit(self, bucket: str, purchase_type: str, amount: int) -> None:
        """Record tokens credited to a bucket."""
        self.tokens_credited_total.labels(bucket=bucket, purchase_type=purchase_type).inc(amount)

    def record_ai_request(self, model: str, outcome: str) -> None:
        """Record one AI provider call."""
        self.ai_requests_total.labels(model=model, outcome=outcome).inc()

    def record_ai_fallback(self) -> None:
        """Record a fall-through to the next model in a fallback list."""
        self.ai_fallbacks_total.inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()
