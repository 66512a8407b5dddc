"""
Prometheus Metrics Collector

In-process counters, gauges and histograms for the webhook pipeline.
Generates Prometheus text exposition format (text/plain; version=0.0.4).
"""
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class MetricValue:
    """Single metric value with optional labels."""
    value: float
    labels: Dict[str, str] = field(default_factory=dict)


class _LabelledMetric:
    def __init__(self, name: str, description: str, labels: Optional[List[str]] = None):
        self.name = name
        self.description = description
        self.label_names = labels or []
        self._values: Dict[tuple, float] = {}
        self._lock = threading.Lock()

    def _label_key(self, labels: Dict[str, str]) -> tuple:
        return tuple(sorted(labels.items()))

    def collect(self) -> List[MetricValue]:
        with self._lock:
            return [MetricValue(value=v, labels=dict(k)) for k, v in self._values.items()]

    def value(self, **labels: str) -> float:
        """Current value for one label set (0 if never touched)."""
        with self._lock:
            return self._values.get(self._label_key(labels), 0.0)


class Counter(_LabelledMetric):
    """Cumulative metric that only goes up (ingested webhooks, processed items)."""

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        key = self._label_key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount


class Gauge(_LabelledMetric):
    """Metric that can go up and down (queue depth per status)."""

    def set(self, value: float, **labels: str) -> None:
        key = self._label_key(labels)
        with self._lock:
            self._values[key] = value


class Histogram:
    """
    Samples observations and counts them in cumulative buckets.
    Used for processing and end-to-end latency.
    """

    DEFAULT_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)

    def __init__(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[tuple] = None
    ):
        self.name = name
        self.description = description
        self.label_names = labels or []
        self.buckets = buckets or self.DEFAULT_BUCKETS
        self._values: Dict[tuple, Dict] = {}
        self._lock = threading.Lock()

    def observe(self, value: float, **labels: str) -> None:
        key = tuple(sorted(labels.items()))
        with self._lock:
            if key not in self._values:
                self._values[key] = {
                    "buckets": {b: 0 for b in self.buckets},
                    "sum": 0.0,
                    "count": 0
                }

            data = self._values[key]
            data["sum"] += value
            data["count"] += 1

            for bucket in self.buckets:
                if value <= bucket:
                    data["buckets"][bucket] += 1

    def collect(self) -> List[MetricValue]:
        """Bucket values, +Inf, sum and count for every label set."""
        result = []
        with self._lock:
            for key, data in self._values.items():
                base_labels = dict(key)

                for bucket in sorted(self.buckets):
                    result.append(MetricValue(
                        value=data["buckets"][bucket],
                        labels={**base_labels, "le": str(bucket)}
                    ))

                result.append(MetricValue(value=data["count"], labels={**base_labels, "le": "+Inf"}))
                result.append(MetricValue(value=data["sum"], labels={**base_labels, "_metric": "sum"}))
                result.append(MetricValue(value=data["count"], labels={**base_labels, "_metric": "count"}))

        return result


class MetricsRegistry:
    """
    Central registry for all pipeline metrics.

    Provides singleton access and Prometheus text format export.
    """

    _instance: Optional["MetricsRegistry"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "MetricsRegistry":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._metrics: Dict[str, Counter | Gauge | Histogram] = {}
        self._initialized = True
        self._setup_metrics()

    def _setup_metrics(self) -> None:
        """Initialize all application metrics."""

        # ============================================
        # INGESTION
        # ============================================
        self.webhooks_received = self.counter(
            "crm_webhooks_received_total",
            "Webhooks received by queue type and outcome (accepted/duplicate)",
            ["queue_type", "outcome"]
        )

        self.webhooks_rejected = self.counter(
            "crm_webhooks_rejected_total",
            "Webhooks rejected at ingestion",
            ["reason"]
        )

        # ============================================
        # QUEUE STATE
        # ============================================
        self.queue_depth = self.gauge(
            "crm_queue_items",
            "Queue items by queue type and status",
            ["queue_type", "status"]
        )

        # ============================================
        # PROCESSING
        # ============================================
        self.items_processed = self.counter(
            "crm_items_processed_total",
            "Processed queue items by queue type and outcome",
            ["queue_type", "outcome"]
        )

        self.processing_duration = self.histogram(
            "crm_processing_duration_seconds",
            "Handler execution time per queue item",
            ["queue_type"]
        )

        self.end_to_end_latency = self.histogram(
            "crm_end_to_end_latency_seconds",
            "Time from ingestion to completion",
            ["queue_type"],
            buckets=(1.0, 2.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 900.0, 3600.0)
        )

        self.runs_total = self.counter(
            "crm_batch_runs_total",
            "Batch runs by queue type and result",
            ["queue_type", "result"]
        )

        self.hook_failures = self.counter(
            "crm_post_commit_hook_failures_total",
            "Post-commit side effects that raised",
            ["queue_type"]
        )

    def counter(self, name: str, description: str, labels: Optional[List[str]] = None) -> Counter:
        """Create and register a counter."""
        metric = Counter(name, description, labels)
        self._metrics[name] = metric
        return metric

    def gauge(self, name: str, description: str, labels: Optional[List[str]] = None) -> Gauge:
        """Create and register a gauge."""
        metric = Gauge(name, description, labels)
        self._metrics[name] = metric
        return metric

    def histogram(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[tuple] = None
    ) -> Histogram:
        """Create and register a histogram."""
        metric = Histogram(name, description, labels, buckets)
        self._metrics[name] = metric
        return metric

    def export(self) -> str:
        """
        Export all metrics in Prometheus text exposition format.

        Format specification:
        https://prometheus.io/docs/instrumenting/exposition_formats/
        """
        lines = []

        for name, metric in self._metrics.items():
            lines.append(f"# HELP {name} {metric.description}")

            if isinstance(metric, Counter):
                lines.append(f"# TYPE {name} counter")
            elif isinstance(metric, Gauge):
                lines.append(f"# TYPE {name} gauge")
            elif isinstance(metric, Histogram):
                lines.append(f"# TYPE {name} histogram")

            for mv in metric.collect():
                metric_name = name
                if isinstance(metric, Histogram):
                    if "_metric" in mv.labels:
                        metric_name = f"{name}_{mv.labels.pop('_metric')}"
                    elif "le" in mv.labels:
                        metric_name = f"{name}_bucket"

                lines.append(f"{metric_name}{self._format_labels(mv.labels)} {mv.value}")

            lines.append("")

        return "\n".join(lines)

    def _format_labels(self, labels: Dict[str, str]) -> str:
        if not labels:
            return ""
        parts = [f'{k}="{v}"' for k, v in sorted(labels.items())]
        return "{" + ",".join(parts) + "}"

    def reset(self) -> None:
        """Reset all metrics. Useful for testing."""
        self._metrics.clear()
        self._setup_metrics()


# Global metrics instance
metrics = MetricsRegistry()
