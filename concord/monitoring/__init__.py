"""Monitoring - engine metrics."""

from concord.monitoring.metrics import EngineMetrics, MetricReporter, MetricType

__all__ = [
    "EngineMetrics",
    "MetricReporter",
    "MetricType",
]
