"""Metrics collection for the embedding service.

Provides a thin convenience wrapper around ``prometheus_client`` so the service
can consistently record HTTP, embedding, and model-lifecycle metrics.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- A single registry is kept per collector (can be injected if needed)
"""

from typing import Optional
from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest
import structlog

logger = structlog.get_logger("metrics")


class MetricsCollector:
    """Centralized metrics collection for the embedding service.

    Parameters
    - service_name: Logical name used for scoping/labels if desired
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)

    Exposes typed helpers for common events to keep label sets consistent.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        # Common metrics
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

        # Embedding metrics
        self.embedding_requests = Counter(
            'ml_embedding_requests_total',
            'Total embedding generation requests',
            ['model_id', 'operation', 'status'],
            registry=self.registry
        )

        self.embedding_duration = Histogram(
            'ml_embedding_duration_seconds',
            'Embedding generation duration',
            ['model_id', 'operation'],
            registry=self.registry
        )

        self.embedding_batch_size = Histogram(
            'ml_embedding_batch_size',
            'Number of texts per embedding call',
            buckets=(1, 2, 4, 8, 16, 32, 64, 128, 256),
            registry=self.registry
        )

        self.read_guard_wait = Histogram(
            'ml_model_read_guard_wait_seconds',
            'Time spent waiting for shared access to the active model',
            buckets=(0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
            registry=self.registry
        )

        # Model lifecycle metrics
        self.model_switches = Counter(
            'ml_model_switches_total',
            'Model switch attempts partitioned by outcome',
            ['status'],
            registry=self.registry
        )

        self.model_switch_duration = Histogram(
            'ml_model_switch_duration_seconds',
            'End-to-end model switch duration, load included',
            buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
            registry=self.registry
        )

        self.active_model = Gauge(
            'ml_active_model_info',
            'Currently serving model (value is always 1)',
            ['model_id', 'device'],
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

    def record_embedding(
        self,
        model_id: str,
        operation: str,
        status: str,
        duration: float,
        batch_size: int = 1
    ) -> None:
        """Record embedding generation metrics."""
        self.embedding_requests.labels(model_id=model_id, operation=operation, status=status).inc()
        self.embedding_duration.labels(model_id=model_id, operation=operation).observe(duration)
        self.embedding_batch_size.observe(batch_size)

    def record_read_wait(self, duration: float) -> None:
        """Record how long a request waited for its read guard."""
        self.read_guard_wait.observe(duration)

    def record_model_switch(self, status: str, duration: float) -> None:
        """Record a model switch attempt."""
        self.model_switches.labels(status=status).inc()
        self.model_switch_duration.observe(duration)

    def set_active_model(self, model_id: str, device: str) -> None:
        """Point the active model gauge at a new model."""
        self.active_model.clear()
        self.active_model.labels(model_id=model_id, device=device).set(1)

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector(service_name: str) -> MetricsCollector:
    """Get or create metrics collector for a service.

    Returns a process‑wide singleton to avoid duplicate collectors/labels.
    """
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(service_name)
    return _metrics_collector
