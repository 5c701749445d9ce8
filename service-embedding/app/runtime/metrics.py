"""Metrics collection facade for the embedding service.

Re-exports the shared collector so service modules import from
``app.runtime.metrics`` without knowing the shared library layout.

Key APIs:
- ``get_metrics_collector(service_name)``: return the process-wide collector.
- ``MetricsCollector``: record HTTP, encode, read-guard and switch metrics.
"""

from libs.common.metrics import MetricsCollector, get_metrics_collector

__all__ = ["MetricsCollector", "get_metrics_collector"]
