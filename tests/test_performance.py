"""Tests for metrics collection and async pacing helpers."""

import asyncio
import time

import pytest

from filesync.performance import (
    AsyncRateLimiter,
    ConcurrentExecutor,
    MetricsCollector,
    collect_process_metrics,
    get_metrics_collector
)


class TestMetricsCollector:
    """Test metrics collection functionality."""

    def setup_method(self):
        """Set up test fixtures."""
        self.metrics = MetricsCollector(max_points_per_metric=100)

    def test_record_timing(self):
        """Test timing metric recording."""
        self.metrics.record_timing("test.timing", 1.5, {"operation": "test"})

        stats = self.metrics.get_stats("test.timing")
        assert stats is not None
        assert stats.count == 1
        assert stats.mean == 1.5
        assert stats.min_value == 1.5
        assert stats.max_value == 1.5

    def test_stats_over_many_points(self):
        for value in [10, 20, 30, 40, 50]:
            self.metrics.record_timing("test.value", value)

        stats = self.metrics.get_stats("test.value")
        assert stats.count == 5
        assert stats.mean == 30.0
        assert stats.median == 30
        assert stats.total == 150
        assert stats.p95 == pytest.approx(48.0)

    def test_points_are_bounded(self):
        metrics = MetricsCollector(max_points_per_metric=3)
        for value in range(10):
            metrics.record_timing("bounded", value)

        stats = metrics.get_stats("bounded")
        assert stats.count == 3
        assert stats.min_value == 7

    def test_unknown_metric(self):
        assert self.metrics.get_stats("never.recorded") is None
        assert self.metrics.get_counter("never.counted") == 0

    def test_counters_and_gauges(self):
        """Test counter and gauge metrics."""
        self.metrics.increment_counter("test.counter", 5)
        self.metrics.increment_counter("test.counter", 3)
        self.metrics.set_gauge("test.gauge", 42.5)

        all_metrics = self.metrics.get_all_metrics()

        assert self.metrics.get_counter("test.counter") == 8
        assert all_metrics["counters"]["test.counter"] == 8
        assert all_metrics["gauges"]["test.gauge"] == 42.5

    def test_all_metrics_includes_timings(self):
        self.metrics.record_timing("endpoint.local.list", 0.25)

        timings = self.metrics.get_all_metrics()["timings"]

        assert timings["endpoint.local.list"]["count"] == 1
        assert timings["endpoint.local.list"]["max"] == 0.25

    @pytest.mark.asyncio
    async def test_time_operation_context(self):
        """Test timing context manager."""
        async with self.metrics.time_operation("test.context", {"type": "async"}):
            await asyncio.sleep(0.01)

        stats = self.metrics.get_stats("test.context")
        assert stats is not None
        assert stats.count == 1
        assert stats.mean >= 0.01

    def test_time_block_records_on_error(self):
        with pytest.raises(ValueError):
            with self.metrics.time_block("test.block"):
                raise ValueError("boom")

        assert self.metrics.get_stats("test.block").count == 1

    def test_reset_metrics(self):
        self.metrics.record_timing("a", 1.0)
        self.metrics.increment_counter("b")
        self.metrics.set_gauge("c", 1)

        self.metrics.reset_metrics()

        all_metrics = self.metrics.get_all_metrics()
        assert all_metrics["counters"] == {}
        assert all_metrics["gauges"] == {}
        assert all_metrics["timings"] == {}

    def test_collect_process_metrics(self):
        sample = collect_process_metrics(self.metrics)

        gauges = self.metrics.get_all_metrics()["gauges"]
        assert sample["process.memory.rss"] > 0
        assert gauges["process.threads"] >= 1
        assert gauges["system.cpu.count"] >= 1

    def test_global_collector_is_shared(self):
        assert get_metrics_collector() is get_metrics_collector()


class TestAsyncOptimizers:
    """Test async optimization utilities."""

    @pytest.mark.asyncio
    async def test_rate_limiter(self):
        """Test async rate limiter."""
        limiter = AsyncRateLimiter(max_calls=2, time_window=0.2)

        start_time = time.monotonic()
        for _ in range(2):
            await limiter.acquire()
        immediate = time.monotonic() - start_time

        async with limiter.limit():
            pass
        elapsed = time.monotonic() - start_time

        assert immediate < 0.1
        assert elapsed >= 0.15

    @pytest.mark.asyncio
    async def test_concurrent_executor_keeps_order(self):
        executor = ConcurrentExecutor(max_concurrent=3)

        def make_task(value):
            async def task():
                await asyncio.sleep(0.01 * (5 - value))
                return value
            return task

        results = await executor.execute_batch([make_task(i) for i in range(5)])

        assert results == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_concurrent_executor_bounds_concurrency(self):
        executor = ConcurrentExecutor(max_concurrent=2)
        running = 0
        peak = 0

        async def slow_task():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1
            return "completed"

        results = await executor.execute_batch([slow_task for _ in range(6)])

        assert results == ["completed"] * 6
        assert peak == 2

    @pytest.mark.asyncio
    async def test_concurrent_executor_exceptions(self):
        executor = ConcurrentExecutor(max_concurrent=2, rate_limit_calls=10, rate_limit_window=1.0)

        async def ok():
            return 1

        async def broken():
            raise RuntimeError("failed")

        results = await executor.execute_batch([ok, broken, ok], return_exceptions=True)

        assert results[0] == 1
        assert isinstance(results[1], RuntimeError)
        assert results[2] == 1

        with pytest.raises(RuntimeError):
            await executor.execute_batch([ok, broken])
