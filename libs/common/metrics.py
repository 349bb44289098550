"""Metrics collection for the runtime adapter.

Provides a thin convenience wrapper around ``prometheus_client`` so the
adapter consistently records HTTP, model lifecycle and backend reload metrics.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions; model
  ids are deliberately not used as labels
- A single registry is kept per collector (can be injected for testing)
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
import structlog

logger = structlog.get_logger("metrics")


class MetricsCollector:
    """Centralized metrics collection for the adapter.

    Parameters
    - service_name: Logical name used for scoping/labels if desired
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        self.request_count = Counter(
            'http_requests_total',
            'Total HTTP requests',
            ['method', 'endpoint', 'status'],
            registry=self.registry
        )

        self.request_duration = Histogram(
            'http_request_duration_seconds',
            'HTTP request duration',
            ['method', 'endpoint'],
            registry=self.registry
        )

        self.model_requests = Counter(
            'runtime_adapter_model_requests_total',
            'Load/unload requests partitioned by outcome and last reached stage',
            ['operation', 'outcome', 'stage'],
            registry=self.registry
        )

        self.model_request_duration = Histogram(
            'runtime_adapter_model_request_duration_seconds',
            'End-to-end load/unload duration',
            ['operation'],
            registry=self.registry
        )

        self.backend_reload_duration = Histogram(
            'runtime_adapter_backend_reload_duration_seconds',
            'Backend config reload round-trip duration',
            ['outcome'],
            registry=self.registry
        )

        self.models_configured = Gauge(
            'runtime_adapter_models_configured',
            'Entries currently present in the backend config document',
            registry=self.registry
        )

    def record_http_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration: float
    ) -> None:
        """Record HTTP request metrics.

        duration is expected in seconds to match Prometheus histogram units.
        """
        self.request_count.labels(method=method, endpoint=endpoint, status=status).inc()
        self.request_duration.labels(method=method, endpoint=endpoint).observe(duration)

    def record_model_request(
        self,
        operation: str,
        outcome: str,
        stage: str,
        duration: Optional[float] = None
    ) -> None:
        """Record the result of a load or unload request."""
        self.model_requests.labels(operation=operation, outcome=outcome, stage=stage).inc()
        if duration is not None:
            self.model_request_duration.labels(operation=operation).observe(duration)

    def record_backend_reload(self, outcome: str, duration: float) -> None:
        """Record a backend reload round trip."""
        self.backend_reload_duration.labels(outcome=outcome).observe(duration)

    def set_models_configured(self, count: int) -> None:
        self.models_configured.set(count)

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector(service_name: str) -> MetricsCollector:
    """Get or create metrics collector for a service.

    Returns a process-wide singleton to avoid duplicate collectors/labels.
    """
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(service_name)
    return _metrics_collector
