"""
Shared metrics configuration for the entitlement engine.
"""

from typing import Dict, Any, Optional
import time
from contextlib import contextmanager

from prometheus_client import Counter, Histogram, Info, CollectorRegistry


class MetricsCollector:
    """Centralized metrics collector for services.

    Metrics are registered on ``registry``; pass a fresh
    :class:`CollectorRegistry` per service instance so that several instances
    (e.g. in tests) can coexist in one process.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._metrics["business_events_total"] = Counter(
            "business_events_total",
            "Total business events",
            ["event_type", "service"],
            registry=self.registry
        )

        if self.service_name == "purchases":
            self._setup_purchases_metrics()

    def _setup_purchases_metrics(self):
        """Set up purchase-engine metrics."""
        self._metrics["purchases_total"] = Counter(
            "purchases_total",
            "Total single purchase attempts by outcome",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["bulk_items_total"] = Counter(
            "bulk_items_total",
            "Bulk purchase items by outcome",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["purchase_duration_seconds"] = Histogram(
            "purchase_duration_seconds",
            "Purchase duration in seconds",
            ["kind"],
            registry=self.registry
        )

        self._metrics["lock_conflicts_total"] = Counter(
            "lock_conflicts_total",
            "Requests rejected because an identical request held the lock",
            ["operation"],
            registry=self.registry
        )

        self._metrics["rate_limited_total"] = Counter(
            "rate_limited_total",
            "Requests rejected by the rate limiter",
            ["operation"],
            registry=self.registry
        )

        self._metrics["compensations_total"] = Counter(
            "compensations_total",
            "Compensating refunds issued after a failed grant",
            ["result"],
            registry=self.registry
        )

        self._metrics["idempotency_replays_total"] = Counter(
            "idempotency_replays_total",
            "Operations short-circuited by the idempotency ledger",
            ["operation"],
            registry=self.registry
        )

        self._metrics["refunds_total"] = Counter(
            "refunds_total",
            "Refund attempts by outcome",
            ["outcome"],
            registry=self.registry
        )

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_business_event(self, event_type: str, service: Optional[str] = None):
        """Record business event metrics."""
        service_name = service or self.service_name
        self._metrics["business_events_total"].labels(event_type=event_type, service=service_name).inc()

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.time()
        try:
            yield
        finally:
            duration = time.time() - start_time
            if operation_name in self._metrics:
                self._metrics[operation_name].labels(**labels).observe(duration)

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc(amount)

    def get_counter_value(self, metric_name: str, **labels) -> float:
        """Read the current value of a labelled counter."""
        # Counter names here all carry the "_total" suffix, which is also the sample name
        return self.registry.get_sample_value(metric_name, labels) or 0.0


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
