"""
Metrics: Prometheus-Compatible Counters and Histograms

Records what the cache-aside layers do:
- Cache lookups by component and outcome (hit, miss, error, corrupt)
- Counter operations by name and outcome
- Store call latency

A series is identified by its label values, in the order the metric
declared its label names. Recording is a dict update under a per-metric
lock, so metrics may be shared across threads and event loops.

Complexity:
    Counter.inc: O(1)
    Histogram.observe: O(log B) for B buckets
"""

from __future__ import annotations

import threading
import time
from bisect import bisect_left
from contextlib import contextmanager
from itertools import accumulate
from typing import Any, Iterator, Optional, Sequence

LabelValues = tuple[str, ...]

_INF = float("inf")


class _Metric:
    """Name, help text, label names and the lock shared by every metric type."""

    TYPE = ""

    __slots__ = ("name", "help_text", "label_names", "_lock")

    def __init__(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
    ) -> None:
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names)
        self._lock = threading.Lock()

    def _series(self, labels: dict[str, str]) -> LabelValues:
        return tuple(str(labels.get(n, "")) for n in self.label_names)

    def _labels(self, series: LabelValues) -> dict[str, str]:
        return dict(zip(self.label_names, series))

    def render(self) -> list[str]:
        """Exposition lines for this metric, header included."""
        header = [f"# HELP {self.name} {self.help_text}"] if self.help_text else []
        return header + [f"# TYPE {self.name} {self.TYPE}"] + list(self._samples())

    def _samples(self) -> Iterator[str]:
        raise NotImplementedError


def _format_labels(labels: dict[str, str]) -> str:
    if not labels:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in labels.items()) + "}"


class Counter(_Metric):
    """
    Monotonically increasing counter.

    Usage:
        lookups = Counter("shardcache_cache_lookups_total", ["component", "outcome"])
        lookups.inc(component="entity", outcome="hit")
    """

    TYPE = "counter"

    __slots__ = ("_values",)

    def __init__(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
    ) -> None:
        super().__init__(name, label_names, help_text)
        self._values: dict[LabelValues, float] = {}

    def inc(self, value: float = 1.0, **labels: str) -> None:
        if value < 0:
            raise ValueError("counters only go up")
        series = self._series(labels)
        with self._lock:
            self._values[series] = self._values.get(series, 0.0) + value

    def get(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(self._series(labels), 0.0)

    def collect(self) -> Iterator[tuple[dict[str, str], float]]:
        with self._lock:
            snapshot = list(self._values.items())
        for series, value in snapshot:
            yield self._labels(series), value

    def _samples(self) -> Iterator[str]:
        for labels, value in self.collect():
            yield f"{self.name}{_format_labels(labels)} {value}"


class _Observations:
    """Per-series histogram state; bucket counts are not cumulative."""

    __slots__ = ("per_bucket", "total", "count")

    def __init__(self, buckets: int) -> None:
        self.per_bucket = [0] * buckets
        self.total = 0.0
        self.count = 0


class Histogram(_Metric):
    """
    Histogram with cumulative buckets, sum and count.

    Usage:
        latency = Histogram("shardcache_store_seconds", ["operation"])
        with latency.time(operation="get"):
            await store.get(key)
    """

    TYPE = "histogram"

    __slots__ = ("buckets", "_observations")

    DEFAULT_BUCKETS = (0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5)

    def __init__(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
        buckets: Optional[Sequence[float]] = None,
    ) -> None:
        super().__init__(name, label_names, help_text)
        bounds = sorted(set(buckets or self.DEFAULT_BUCKETS) | {_INF})
        self.buckets: tuple[float, ...] = tuple(bounds)
        self._observations: dict[LabelValues, _Observations] = {}

    def observe(self, value: float, **labels: str) -> None:
        series = self._series(labels)
        index = bisect_left(self.buckets, value)
        with self._lock:
            obs = self._observations.get(series)
            if obs is None:
                obs = self._observations[series] = _Observations(len(self.buckets))
            obs.per_bucket[index] += 1
            obs.total += value
            obs.count += 1

    @contextmanager
    def time(self, **labels: str) -> Iterator[None]:
        """Observe the wall time spent inside the block, even if it raises."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - start, **labels)

    def count(self, **labels: str) -> int:
        with self._lock:
            obs = self._observations.get(self._series(labels))
            return obs.count if obs is not None else 0

    def collect(self) -> Iterator[dict[str, Any]]:
        with self._lock:
            snapshot = [
                (series, list(obs.per_bucket), obs.total, obs.count)
                for series, obs in self._observations.items()
            ]
        for series, per_bucket, total, count in snapshot:
            yield {
                "labels": self._labels(series),
                "buckets": list(zip(self.buckets, accumulate(per_bucket))),
                "sum": total,
                "count": count,
            }

    def _samples(self) -> Iterator[str]:
        for data in self.collect():
            labels = data["labels"]
            for bound, cumulative in data["buckets"]:
                le = "+Inf" if bound == _INF else str(bound)
                yield f"{self.name}_bucket{_format_labels({**labels, 'le': le})} {cumulative}"
            yield f"{self.name}_sum{_format_labels(labels)} {data['sum']}"
            yield f"{self.name}_count{_format_labels(labels)} {data['count']}"


class MetricsCollector:
    """
    Registry for the metrics of one process.

    Metrics are created on first request and shared afterwards; asking for
    an existing name with a different metric type is an error.

    Usage:
        collector = MetricsCollector.get_instance()
        lookups = collector.counter("shardcache_cache_lookups_total", ["outcome"])
        print(collector.export_prometheus())
    """

    __slots__ = ("_metrics", "_lock")

    _instance: Optional[MetricsCollector] = None

    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}
        self._lock = threading.Lock()

    @classmethod
    def get_instance(cls) -> MetricsCollector:
        """Process-wide collector used when no other is injected."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def _register(self, cls: type, name: str, *args: Any) -> Any:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = self._metrics[name] = cls(name, *args)
            elif not isinstance(metric, cls):
                raise TypeError(f"metric {name!r} is already a {metric.TYPE}")
            return metric

    def counter(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
    ) -> Counter:
        return self._register(Counter, name, label_names, help_text)

    def histogram(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
        buckets: Optional[Sequence[float]] = None,
    ) -> Histogram:
        return self._register(Histogram, name, label_names, help_text, buckets)

    def export_prometheus(self) -> str:
        """Every registered metric in Prometheus text exposition format."""
        with self._lock:
            metrics = list(self._metrics.values())
        return "\n".join(line for metric in metrics for line in metric.render())


# =============================================================================
# LIBRARY METRICS
# =============================================================================
class LibraryMetrics:
    """
    The metric set recorded by the counter, entity and session layers.

    Pass a private collector in tests to keep counts isolated.
    """

    __slots__ = ("cache_lookups", "counter_ops", "store_latency")

    def __init__(self, collector: Optional[MetricsCollector] = None) -> None:
        collector = collector or MetricsCollector.get_instance()
        self.cache_lookups = collector.counter(
            "shardcache_cache_lookups_total",
            ("component", "outcome"),
            "Cache lookups by component and outcome",
        )
        self.counter_ops = collector.counter(
            "shardcache_counter_operations_total",
            ("operation", "outcome"),
            "Sharded counter operations",
        )
        self.store_latency = collector.histogram(
            "shardcache_store_seconds",
            ("operation",),
            "Latency of store calls made by the core",
        )

    @classmethod
    def create(cls, enabled: bool = True) -> LibraryMetrics:
        """
        Metric set for an application.

        Enabled metrics record into the process-wide collector. Disabled
        ones record into a private collector that is never exported.
        """
        return cls() if enabled else cls(MetricsCollector())
