"""In-process counters and timings for sync passes and backend calls."""

import time
from typing import Dict, Any, Optional, List, Union
from datetime import datetime, timezone
from dataclasses import dataclass, field
from contextlib import asynccontextmanager, contextmanager
from collections import defaultdict, deque
import statistics
import threading

import psutil

from ..utils.logging import get_logger


@dataclass
class MetricPoint:
    """Individual metric measurement point."""

    timestamp: datetime
    value: Union[float, int]
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class PerformanceStats:
    """Aggregate statistics for one metric."""

    count: int
    min_value: float
    max_value: float
    mean: float
    median: float
    p95: float
    total: float

    def to_dict(self) -> Dict[str, Any]:
        """Convert stats to dictionary."""
        return {
            "count": self.count,
            "min": self.min_value,
            "max": self.max_value,
            "mean": self.mean,
            "median": self.median,
            "p95": self.p95,
            "total": self.total
        }


class MetricsCollector:
    """Collects counters, gauges and timings.

    Thread safe: checksum workers and executor-bound SDK calls record from
    pool threads while the planner records from the event loop.
    """

    def __init__(self, max_points_per_metric: int = 10000):
        self.max_points_per_metric = max_points_per_metric
        self.logger = get_logger(self.__class__.__name__)

        self._metrics: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_points_per_metric))
        self._counters: Dict[str, int] = defaultdict(int)
        self._gauges: Dict[str, float] = defaultdict(float)
        self._lock = threading.RLock()

    def record_timing(
        self,
        metric_name: str,
        duration: float,
        tags: Optional[Dict[str, str]] = None
    ):
        """Record a timing metric.

        Args:
            metric_name: Name of the metric
            duration: Duration in seconds
            tags: Optional tags for the metric
        """
        with self._lock:
            self._metrics[metric_name].append(
                MetricPoint(timestamp=datetime.now(timezone.utc), value=duration, tags=tags or {})
            )

    def increment_counter(self, counter_name: str, value: int = 1):
        """Increment a counter metric."""
        with self._lock:
            self._counters[counter_name] += value

    def set_gauge(self, gauge_name: str, value: Union[float, int]):
        """Set a gauge metric value."""
        with self._lock:
            self._gauges[gauge_name] = float(value)

    def get_counter(self, counter_name: str) -> int:
        with self._lock:
            return self._counters.get(counter_name, 0)

    @asynccontextmanager
    async def time_operation(self, metric_name: str, tags: Optional[Dict[str, str]] = None):
        """Async context manager for timing operations."""
        start_time = time.time()
        try:
            yield
        finally:
            self.record_timing(metric_name, time.time() - start_time, tags)

    @contextmanager
    def time_block(self, metric_name: str, tags: Optional[Dict[str, str]] = None):
        """Blocking counterpart of time_operation for worker threads."""
        start_time = time.time()
        try:
            yield
        finally:
            self.record_timing(metric_name, time.time() - start_time, tags)

    def get_stats(self, metric_name: str) -> Optional[PerformanceStats]:
        """Get statistics for a metric.

        Returns:
            PerformanceStats or None if nothing was recorded
        """
        with self._lock:
            points = list(self._metrics.get(metric_name, ()))

        if not points:
            return None

        values = [p.value for p in points]
        return PerformanceStats(
            count=len(values),
            min_value=min(values),
            max_value=max(values),
            mean=statistics.mean(values),
            median=statistics.median(values),
            p95=self._percentile(values, 95),
            total=sum(values)
        )

    def get_all_metrics(self) -> Dict[str, Any]:
        """Get all current metrics and statistics."""
        with self._lock:
            names = list(self._metrics)
            result = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "timings": {}
            }

        for metric_name in names:
            stats = self.get_stats(metric_name)
            if stats:
                result["timings"][metric_name] = stats.to_dict()

        return result

    def reset_metrics(self):
        """Reset all metrics."""
        with self._lock:
            self._metrics.clear()
            self._counters.clear()
            self._gauges.clear()

        self.logger.info("All metrics reset")

    def _percentile(self, values: List[float], percentile: float) -> float:
        sorted_values = sorted(values)
        k = (len(sorted_values) - 1) * (percentile / 100.0)
        f = int(k)
        c = k - f

        if f == len(sorted_values) - 1:
            return sorted_values[f]
        return sorted_values[f] * (1 - c) + sorted_values[f + 1] * c


def collect_process_metrics(metrics: "MetricsCollector") -> Dict[str, float]:
    """Sample process level resource usage into gauges.

    Returns:
        The sampled values, keyed by gauge name
    """
    process = psutil.Process()
    memory = process.memory_info()
    sample = {
        "process.memory.rss": memory.rss,
        "process.threads": process.num_threads(),
        "process.cpu.percent": process.cpu_percent(),
        "system.cpu.count": psutil.cpu_count() or 1,
    }
    for name, value in sample.items():
        metrics.set_gauge(name, value)
    return sample


# Global metrics collector instance
_global_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _global_metrics_collector

    if _global_metrics_collector is None:
        _global_metrics_collector = MetricsCollector()

    return _global_metrics_collector
