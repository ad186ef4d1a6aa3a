"""
Shared metrics configuration for the Bhandara platform.
"""

from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, generate_latest


class MetricsCollector:
    """Centralized metrics collector for a service.

    Each collector owns its registry so several services (or test apps) can
    live in one process without duplicate-timeseries errors.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()
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

        # Cache metrics
        self._metrics["cache_operations_total"] = Counter(
            "cache_operations_total",
            "Total cache operations",
            ["namespace", "operation", "result"],
            registry=self.registry
        )

        self._metrics["cache_operation_duration_seconds"] = Histogram(
            "cache_operation_duration_seconds",
            "Cache operation duration in seconds",
            ["namespace", "operation"],
            registry=self.registry
        )

        # Pagination metrics
        self._metrics["pagination_requests_total"] = Counter(
            "pagination_requests_total",
            "Total paginated queries",
            ["source", "mode"],
            registry=self.registry
        )

        self._metrics["pagination_duration_seconds"] = Histogram(
            "pagination_duration_seconds",
            "Paginated query duration in seconds",
            ["source", "mode"],
            registry=self.registry
        )

        # Error metrics
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

    def render_latest(self) -> bytes:
        """Render the registry in the Prometheus text exposition format."""
        return generate_latest(self.registry)

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

    def record_cache_operation(self, namespace: str, operation: str, result: str, duration: float):
        """Record a cache operation outcome (hit, miss, ok, error)."""
        self._metrics["cache_operations_total"].labels(
            namespace=namespace,
            operation=operation,
            result=result
        ).inc()

        self._metrics["cache_operation_duration_seconds"].labels(
            namespace=namespace,
            operation=operation
        ).observe(duration)

    def record_pagination(self, source: str, mode: str, duration: float):
        """Record a paginated query."""
        self._metrics["pagination_requests_total"].labels(source=source, mode=mode).inc()
        self._metrics["pagination_duration_seconds"].labels(source=source, mode=mode).observe(duration)

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def counter_value(self, metric_name: str, **labels) -> float:
        """Read back a counter sample."""
        sample = metric_name if metric_name.endswith("_total") else f"{metric_name}_total"
        value = self.registry.get_sample_value(sample, labels)
        return value or 0.0


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
