"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

import time
from enum import Enum
from typing import Callable

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    TOKEN = "token"
    SOURCE = "source"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class BlockmindMetrics:
    """
    Centralized metrics for the Blockmind API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Payment intents and settlements (by token and detection source)
    - Helius webhook deliveries
    - Solana RPC and sandbox provider calls
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "blockmind_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
                "cluster": settings.SOLANA_CLUSTER,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "blockmind_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "blockmind_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "blockmind_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.METHOD],
        )

        # ====================================================================
        # Payment Metrics
        # ====================================================================
        self.payment_intents_created_total = Counter(
            "blockmind_payment_intents_created_total",
            "Total payment intents created",
            [MetricLabels.TOKEN],
        )

        self.payments_settled_total = Counter(
            "blockmind_payments_settled_total",
            "Total on-chain payments matched to an intent",
            [MetricLabels.TOKEN, MetricLabels.SOURCE],
        )

        self.payment_amount_usd_cents = Histogram(
            "blockmind_payment_amount_usd_cents",
            "Settled intent amounts in USD cents",
            buckets=(100, 500, 1000, 1500, 2500, 5000, 10000),
        )

        self.webhook_events_total = Counter(
            "blockmind_webhook_events_total",
            "Helius webhook deliveries by outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # External Dependency Metrics
        # ====================================================================
        self.solana_rpc_calls_total = Counter(
            "blockmind_solana_rpc_calls_total",
            "Total Solana JSON-RPC calls",
            [MetricLabels.OPERATION, "success"],
        )

        self.solana_rpc_duration_seconds = Histogram(
            "blockmind_solana_rpc_duration_seconds",
            "Solana JSON-RPC call duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.sandbox_operations_total = Counter(
            "blockmind_sandbox_operations_total",
            "Sandbox provider operations",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "blockmind_errors_total",
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

    def record_intent_created(self, token: str) -> None:
        self.payment_intents_created_total.labels(token=token).inc()

    def record_settlement(self, token: str, source: str, amount_usd_cents: int) -> None:
        """Record a matched payment."""
        self.payments_settled_total.labels(token=token, source=source).inc()
        self.payment_amount_usd_cents.observe(amount_usd_cents)

    def record_webhook_event(self, outcome: str) -> None:
        self.webhook_events_total.labels(outcome=outcome).inc()

    def record_rpc_call(self, method: str, success: bool, duration: float) -> None:
        """Record Solana RPC call metrics."""
        self.solana_rpc_calls_total.labels(operation=method, success=str(success)).inc()
        self.solana_rpc_duration_seconds.labels(operation=method).observe(duration)

    def record_sandbox_operation(self, operation: str, outcome: str) -> None:
        self.sandbox_operations_total.labels(operation=operation, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = BlockmindMetrics()


class track_rpc_call:
    """
    Context manager for timing a Solana RPC call.

    Usage:
        with track_rpc_call("getBalance"):
            ...
    """

    def __init__(self, method: str) -> None:
        self.method = method
        self.start_time: float = 0.0

    def __enter__(self) -> "track_rpc_call":
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        duration = time.time() - self.start_time
        metrics.record_rpc_call(self.method, exc_type is None, duration)


def get_metrics_handler() -> Callable[[], bytes]:
    """
    Get Prometheus metrics handler for FastAPI.
    """
    from prometheus_client import REGISTRY, generate_latest

    def metrics_endpoint() -> bytes:
        return generate_latest(REGISTRY)

    return metrics_endpoint
