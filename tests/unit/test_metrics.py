"""
Tests for the in-process metrics store.
"""

import pytest

from orderly.core.metrics import Counter, Histogram, MetricsStorage


class TestCounter:
    def test_increments_per_label_set(self):
        counter = Counter("orders_total")
        counter.inc({"status": "success"})
        counter.inc({"status": "success"}, amount=2)
        counter.inc({"status": "failure"})

        assert counter.get({"status": "success"}) == 3
        assert counter.get({"status": "failure"}) == 1
        assert counter.get({"status": "other"}) == 0
        assert counter.total() == 4

    def test_label_order_irrelevant(self):
        counter = Counter("c")
        counter.inc({"a": "1", "b": "2"})

        assert counter.get({"b": "2", "a": "1"}) == 1

    def test_cannot_decrease(self):
        with pytest.raises(ValueError):
            Counter("c").inc(amount=-1)


class TestHistogram:
    def test_observations(self):
        histogram = Histogram("latency", buckets=[0.1, 1.0])
        histogram.observe(0.05)
        histogram.observe(0.5)
        histogram.observe(2.0)

        assert histogram.get_count() == 3
        assert histogram.get_sum() == pytest.approx(2.55)
        assert histogram._counts[()] == [1, 2]


class TestMetricsStorage:
    def test_registry_reuses_instances(self):
        storage = MetricsStorage()

        assert storage.counter("a") is storage.counter("a")
        assert storage.histogram("b") is storage.histogram("b")

    def test_timed_success(self):
        storage = MetricsStorage()

        with storage.timed("repository_operation", {"operation": "find_all"}):
            pass

        assert storage.counter("repository_operation_total").get(
            {"operation": "find_all", "status": "success"}
        ) == 1
        assert storage.histogram("repository_operation_duration_seconds").get_count(
            {"operation": "find_all"}
        ) == 1

    def test_timed_failure_reraises(self):
        storage = MetricsStorage()

        with pytest.raises(RuntimeError):
            with storage.timed("commit", {}):
                raise RuntimeError("boom")

        assert storage.counter("commit_total").get({"status": "failure"}) == 1
        assert storage.counter("commit_total").get({"status": "success"}) == 0
