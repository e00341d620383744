"""
Metrics Collection and Reporting for Concord

Provides engine metrics collection and reporting:
- EngineMetrics: Counters, gauges and histograms for coordinator activity
- MetricType: Types of metrics (counter, gauge, histogram)
- MetricReporter: Export metrics to JSON or Prometheus text
"""

import json
import time
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

from loguru import logger

from concord.core.state import utc_now


class MetricType(str, Enum):
    """Types of metrics that can be collected."""

    COUNTER = "counter"  # Monotonically increasing value
    GAUGE = "gauge"  # Point-in-time value
    HISTOGRAM = "histogram"  # Distribution of values


COUNTER_HELP = {
    "edits_submitted": "Edits recorded by the coordinator",
    "edits_committed": "Edits committed to an element",
    "edits_superseded": "Edits that lost a resolution",
    "edits_rejected": "Edits rejected (withdrawn)",
    "conflicts_detected": "Conflicts created",
    "conflicts_resolved": "Conflicts settled by a resolution",
    "conflicts_awaiting_manual": "Times a conflict was parked for manual input",
    "commit_retries": "Commits retried after a version mismatch",
    "escalations": "Manual-resolution timeouts escalated",
}


class EngineMetrics:
    """
    Collect and aggregate engine metrics.

    Example:
        >>> metrics = EngineMetrics()
        >>> metrics.increment_counter("edits_submitted")
        >>> metrics.get_counter("edits_submitted")
        1.0
    """

    def __init__(self) -> None:
        self._counters: dict[str, float] = {}
        self._labelled: dict[str, dict[str, float]] = {}
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, list[float]] = {}
        self._start_time: datetime = utc_now()

    # Engine-specific recording
    def record_conflict(self, classification: str) -> None:
        self.increment_counter("conflicts_detected")
        self.increment_labelled("conflicts_by_classification", classification)

    def record_resolution(self, strategy: str, superseded: int, committed: bool) -> None:
        self.increment_counter("conflicts_resolved")
        self.increment_labelled("resolutions_by_strategy", strategy)
        self.increment_counter("edits_superseded", superseded)
        if committed:
            self.increment_counter("edits_committed")

    def record_commit_latency(self, seconds: float) -> None:
        self.record_histogram("commit_latency_seconds", seconds)

    # Generic metric methods
    def increment_counter(self, name: str, value: float = 1.0) -> None:
        """Increment a counter metric."""
        if name not in self._counters:
            self._counters[name] = 0.0
        self._counters[name] += value

    def increment_labelled(self, name: str, label: str, value: float = 1.0) -> None:
        """Increment one label of a labelled counter."""
        series = self._labelled.setdefault(name, {})
        series[label] = series.get(label, 0.0) + value

    def set_gauge(self, name: str, value: float) -> None:
        """Set a gauge metric."""
        self._gauges[name] = value

    def record_histogram(self, name: str, value: float) -> None:
        """Record a value in a histogram."""
        if name not in self._histograms:
            self._histograms[name] = []
        self._histograms[name].append(value)

    def get_counter(self, name: str) -> float:
        """Get current counter value."""
        return self._counters.get(name, 0.0)

    def get_labelled(self, name: str) -> dict[str, float]:
        return dict(self._labelled.get(name, {}))

    def get_gauge(self, name: str) -> float:
        """Get current gauge value."""
        return self._gauges.get(name, 0.0)

    def get_histogram_stats(self, name: str) -> dict[str, float]:
        """Get histogram statistics."""
        values = self._histograms.get(name, [])
        if not values:
            return {"count": 0}

        sorted_values = sorted(values)
        count = len(values)

        return {
            "count": count,
            "min": min(values),
            "max": max(values),
            "avg": sum(values) / count,
            "p50": sorted_values[count // 2],
            "p90": sorted_values[int(count * 0.9)] if count > 10 else max(values),
            "p99": sorted_values[int(count * 0.99)] if count > 100 else max(values),
        }

    def get_summary(self) -> dict[str, Any]:
        """
        Get metrics summary.

        Returns:
            Summary dictionary with aggregated metrics.
        """
        submitted = self.get_counter("edits_submitted")
        committed = self.get_counter("edits_committed")
        return {
            "uptime_seconds": (utc_now() - self._start_time).total_seconds(),
            "edits": {
                "submitted": submitted,
                "committed": committed,
                "superseded": self.get_counter("edits_superseded"),
                "rejected": self.get_counter("edits_rejected"),
            },
            "conflicts": {
                "detected": self.get_counter("conflicts_detected"),
                "resolved": self.get_counter("conflicts_resolved"),
                "awaiting_manual": self.get_counter("conflicts_awaiting_manual"),
                "by_classification": self.get_labelled("conflicts_by_classification"),
            },
            "resolutions_by_strategy": self.get_labelled("resolutions_by_strategy"),
            "commit_retries": self.get_counter("commit_retries"),
            "escalations": self.get_counter("escalations"),
            "counters": self._counters.copy(),
            "gauges": self._gauges.copy(),
        }

    def export(self) -> dict[str, Any]:
        """
        Export all collected metrics.

        Returns:
            Complete metrics data.
        """
        return {
            "summary": self.get_summary(),
            "labelled": {name: dict(series) for name, series in self._labelled.items()},
            "histograms": {name: self.get_histogram_stats(name) for name in self._histograms},
            "collection_started": self._start_time.isoformat(),
            "exported_at": utc_now().isoformat(),
        }

    def reset(self) -> None:
        """Reset all collected metrics."""
        self._counters = {}
        self._labelled = {}
        self._gauges = {}
        self._histograms = {}
        self._start_time = utc_now()
        logger.info("Metrics reset")


class MetricReporter:
    """
    Export metrics to various formats.

    Usage:
        reporter = MetricReporter()
        json_output = reporter.to_json(metrics)
        prometheus_output = reporter.to_prometheus(metrics)
    """

    def __init__(self) -> None:
        self._formatters: dict[str, Callable[[EngineMetrics], str]] = {}
        self._register_default_formatters()

    def _register_default_formatters(self) -> None:
        """Register default output formatters."""
        self._formatters["json"] = self._format_json
        self._formatters["prometheus"] = self._format_prometheus

    def to_json(self, metrics: EngineMetrics) -> str:
        """Export metrics to JSON format."""
        return self._formatters["json"](metrics)

    def to_prometheus(self, metrics: EngineMetrics) -> str:
        """Export metrics to Prometheus format."""
        return self._formatters["prometheus"](metrics)

    def export(self, metrics: EngineMetrics, format: str = "json") -> str:
        """Export metrics in specified format."""
        formatter = self._formatters.get(format)
        if not formatter:
            raise ValueError(f"Unknown format: {format}")
        return formatter(metrics)

    def register_formatter(self, name: str, formatter: Callable[[EngineMetrics], str]) -> None:
        """Register a custom formatter."""
        self._formatters[name] = formatter

    def _format_json(self, metrics: EngineMetrics) -> str:
        """Format metrics as JSON."""
        return json.dumps(metrics.export(), indent=2, default=str)

    def _format_prometheus(self, metrics: EngineMetrics) -> str:
        """Format metrics in Prometheus exposition format."""
        lines = []

        for name, help_text in COUNTER_HELP.items():
            lines.append(f"# HELP concord_{name}_total {help_text}")
            lines.append(f"# TYPE concord_{name}_total counter")
            lines.append(f"concord_{name}_total {metrics.get_counter(name)}")

        for name, label in (
            ("conflicts_by_classification", "classification"),
            ("resolutions_by_strategy", "strategy"),
        ):
            series = metrics.get_labelled(name)
            lines.append(f"# TYPE concord_{name}_total counter")
            for value_label, value in sorted(series.items()):
                lines.append(f'concord_{name}_total{{{label}="{value_label}"}} {value}')

        latency = metrics.get_histogram_stats("commit_latency_seconds")
        lines.append("# TYPE concord_commit_latency_seconds summary")
        lines.append(f"concord_commit_latency_seconds_count {latency['count']}")
        if latency["count"]:
            lines.append(f'concord_commit_latency_seconds{{quantile="0.5"}} {latency["p50"]}')
            lines.append(f'concord_commit_latency_seconds{{quantile="0.9"}} {latency["p90"]}')

        lines.append(f"# generated {int(time.time())}")
        return "\n".join(lines)
