"""
In-process metrics for the data layer.

Counters and histograms keyed by label sets. Repositories record operation
counts and durations, the resilience policy records retries and the cache
records hits and misses.
"""

import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

LabelKey = Tuple[Tuple[str, str], ...]


def _key(labels: Optional[Dict[str, str]]) -> LabelKey:
    return tuple(sorted((labels or {}).items()))


class Counter:
    """Monotonically increasing counter."""

    def __init__(self, name: str, help_text: str = ""):
        self.name = name
        self.help_text = help_text
        self._values: Dict[LabelKey, float] = defaultdict(float)
        self._lock = threading.Lock()

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        if amount < 0:
            raise ValueError("Counter can only increase")
        with self._lock:
            self._values[_key(labels)] += amount

    def get(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._values.get(_key(labels), 0.0)

    def total(self) -> float:
        with self._lock:
            return sum(self._values.values())


class Histogram:
    """Distribution of observed durations, in seconds."""

    DEFAULT_BUCKETS = [0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0]

    def __init__(
        self, name: str, help_text: str = "", buckets: Optional[List[float]] = None
    ):
        self.name = name
        self.help_text = help_text
        self.buckets = sorted(buckets or self.DEFAULT_BUCKETS)
        self._counts: Dict[LabelKey, List[int]] = {}
        self._sum: Dict[LabelKey, float] = defaultdict(float)
        self._observations: Dict[LabelKey, int] = defaultdict(int)
        self._lock = threading.Lock()

    def observe(self, value: float, labels: Optional[Dict[str, str]] = None):
        key = _key(labels)
        with self._lock:
            counts = self._counts.setdefault(key, [0] * len(self.buckets))
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    counts[i] += 1
            self._sum[key] += value
            self._observations[key] += 1

    def get_count(self, labels: Optional[Dict[str, str]] = None) -> int:
        with self._lock:
            return self._observations.get(_key(labels), 0)

    def get_sum(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._sum.get(_key(labels), 0.0)


class MetricsStorage:
    """Registry of named counters and histograms."""

    def __init__(self):
        self.counters: Dict[str, Counter] = {}
        self.histograms: Dict[str, Histogram] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, help_text: str = "") -> Counter:
        with self._lock:
            if name not in self.counters:
                self.counters[name] = Counter(name, help_text)
            return self.counters[name]

    def histogram(self, name: str, help_text: str = "") -> Histogram:
        with self._lock:
            if name not in self.histograms:
                self.histograms[name] = Histogram(name, help_text)
            return self.histograms[name]

    @contextmanager
    def timed(self, name: str, labels: Dict[str, str]) -> Iterator[None]:
        """
        Record duration into histogram ``{name}_duration_seconds`` and a
        success/failure count into counter ``{name}_total``.
        """
        start = time.perf_counter()
        status = "success"
        try:
            yield
        except BaseException:
            status = "failure"
            raise
        finally:
            self.histogram(f"{name}_duration_seconds").observe(
                time.perf_counter() - start, labels
            )
            self.counter(f"{name}_total").inc({**labels, "status": status})
