"""
Shared metrics configuration for the NPHIES gateway.

Each collector owns its own ``CollectorRegistry`` so several app instances
(tests, workers) can coexist in one process without duplicate registration.
"""

from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, generate_latest


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None,
                 version: str = "1.0.0"):
        self.service_name = service_name
        self.version = version
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": self.version
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

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type"],
            registry=self.registry
        )

        self._metrics["rate_limit_hits_total"] = Counter(
            "rate_limit_hits_total",
            "Requests rejected by the rate limiter",
            ["endpoint"],
            registry=self.registry
        )

        # Upstream exchange metrics
        self._metrics["nphies_requests_total"] = Counter(
            "nphies_requests_total",
            "Calls made to the NPHIES exchange",
            ["operation", "outcome"],
            registry=self.registry
        )

        self._metrics["nphies_request_duration_seconds"] = Histogram(
            "nphies_request_duration_seconds",
            "NPHIES call duration in seconds, retries included",
            ["operation"],
            registry=self.registry
        )

        self._metrics["nphies_retries_total"] = Counter(
            "nphies_retries_total",
            "Retried NPHIES call attempts",
            ["operation"],
            registry=self.registry
        )

        self._metrics["token_cache_total"] = Counter(
            "token_cache_total",
            "Access token lookups by result",
            ["result"],
            registry=self.registry
        )

        self._metrics["validation_failures_total"] = Counter(
            "validation_failures_total",
            "Requests rejected by domain validation",
            ["operation"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

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

    def record_error(self, error_type: str):
        self._metrics["errors_total"].labels(error_type=error_type).inc()

    def record_nphies_call(self, operation: str, outcome: str, duration: float):
        self._metrics["nphies_requests_total"].labels(operation=operation, outcome=outcome).inc()
        self._metrics["nphies_request_duration_seconds"].labels(operation=operation).observe(duration)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    def sample_value(self, metric_name: str, **labels) -> float:
        """Current value of a counter sample, 0.0 when it was never touched."""
        value = self.registry.get_sample_value(metric_name, labels)
        return value or 0.0

    def render(self) -> bytes:
        """Prometheus text exposition of this collector's registry."""
        return generate_latest(self.registry)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None,
                          version: str = "1.0.0") -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry, version=version)
