"""Performance helpers: metrics, rate limiting and bounded concurrency."""

from .metrics import (
    MetricsCollector,
    PerformanceStats,
    collect_process_metrics,
    get_metrics_collector
)
from .async_optimizer import AsyncRateLimiter, ConcurrentExecutor

__all__ = [
    "MetricsCollector",
    "PerformanceStats",
    "collect_process_metrics",
    "get_metrics_collector",
    "AsyncRateLimiter",
    "ConcurrentExecutor"
]
