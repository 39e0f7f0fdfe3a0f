"""
Metrics Collection with Prometheus.

Exposes ledger and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from magic_coins.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    TRANSACTION_TYPE = "transaction_type"
    USAGE_TYPE = "usage_type"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the Magic Coin Ledger.

    Covers:
    - HTTP requests (rate, duration)
    - Spends (rate, amount, outcome)
    - Earns (rate, amount, transaction type)
    - Balance initializations and monthly usage updates
    - Persistence errors
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "ledger_service",
            "Service information",
        )
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
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "ledger_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Spend Metrics
        # ====================================================================
        self.spends_total = Counter(
            "ledger_spends_total",
            "Total spend attempts",
            ["success", MetricLabels.ERROR_TYPE],
        )

        self.spend_amount_coins = Histogram(
            "ledger_spend_amount_coins",
            "Coins debited per successful spend",
            buckets=(1, 2, 5, 10, 20, 50, 100, 250, 500),
        )

        # ====================================================================
        # Earn Metrics
        # ====================================================================
        self.earns_total = Counter(
            "ledger_earns_total",
            "Total earn attempts",
            [MetricLabels.TRANSACTION_TYPE, "success"],
        )

        self.earn_amount_coins = Histogram(
            "ledger_earn_amount_coins",
            "Coins credited per successful earn",
            buckets=(1, 5, 10, 50, 100, 500, 1000, 5000, 10000),
        )

        # ====================================================================
        # Account and Usage Metrics
        # ====================================================================
        self.balances_initialized_total = Counter(
            "ledger_balances_initialized_total",
            "Balance rows created",
        )

        self.usage_updates_total = Counter(
            "ledger_usage_updates_total",
            "Monthly usage counter updates",
            [MetricLabels.USAGE_TYPE, "success"],
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

    def record_spend(self, success: bool, amount: int, error_type: str | None = None) -> None:
        """Record a spend outcome."""
        self.spends_total.labels(success=str(success), error_type=error_type or "none").inc()
        if success:
            self.spend_amount_coins.observe(amount)

    def record_earn(self, transaction_type: str, success: bool, amount: int) -> None:
        """Record an earn outcome."""
        self.earns_total.labels(transaction_type=transaction_type, success=str(success)).inc()
        if success:
            self.earn_amount_coins.observe(amount)

    def record_balance_initialized(self) -> None:
        """Record creation of a balance row."""
        self.balances_initialized_total.inc()

    def record_usage_update(self, usage_type: str, success: bool) -> None:
        """Record a monthly usage update."""
        self.usage_updates_total.labels(usage_type=usage_type, success=str(success)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()
