"""
Entity cache shared process-wide.

Entries carry tags so every cached view of one row (one per caller scope) can
be dropped with a single invalidation. Values are deep-copied on the way in
and out; callers mutating a returned entity never touch the cached one.
"""

import asyncio
import copy
import time
from abc import ABC, abstractmethod
from collections import OrderedDict, defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Set

from orderly.core.logging import get_logger
from orderly.core.metrics import MetricsStorage

logger = get_logger("data.cache")


def entity_key(table_name: str, entity_id: Any, scope: str) -> str:
    return f"{table_name}:{entity_id}:{scope}"


def entity_tag(table_name: str, entity_id: Any) -> str:
    return f"{table_name}:{entity_id}"


class Cache(ABC):
    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(
        self,
        key: str,
        value: Any,
        tags: Iterable[str] = (),
        versions: Optional[Dict[str, int]] = None,
    ) -> bool:
        """
        Store ``value``. When ``versions`` is given the write is skipped if any
        tag was invalidated since those versions were read.
        """

    @abstractmethod
    async def tag_versions(self, tags: Iterable[str]) -> Dict[str, int]:
        """Snapshot to pass back to ``set`` once the read completes."""

    @abstractmethod
    async def invalidate(self, key: str) -> None:
        pass

    @abstractmethod
    async def invalidate_tags(self, tags: Iterable[str]) -> int:
        """Drop every entry carrying any of ``tags``. Returns the number dropped."""

    @abstractmethod
    async def clear(self) -> None:
        pass


@dataclass
class _Entry:
    value: Any
    expires_at: Optional[float]
    tags: frozenset


class MemoryCache(Cache):
    """LRU-bounded in-memory cache with TTL and tag invalidation."""

    def __init__(
        self,
        ttl: Optional[float] = 300.0,
        max_size: int = 10000,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsStorage] = None,
    ):
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {max_size}")
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._metrics = metrics
        self._store: "OrderedDict[str, _Entry]" = OrderedDict()
        self._tag_index: Dict[str, Set[str]] = defaultdict(set)
        # epoch of each tag's last invalidation, bounded by max_size;
        # evicted tags fold into _floor
        self._invalidated: "OrderedDict[str, int]" = OrderedDict()
        self._epoch = 0
        self._floor = 0
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config, **overrides) -> "MemoryCache":
        ttl = config.get_float("cache.ttl", 300.0)
        options = {
            "ttl": ttl if ttl > 0 else None,
            "max_size": config.get_int("cache.max_size", 10000),
        }
        options.update(overrides)
        return cls(**options)

    def __len__(self) -> int:
        return len(self._store)

    async def get(self, key):
        async with self._lock:
            entry = self._store.get(key)
            if entry is not None and self._expired(entry):
                self._drop(key)
                entry = None

            if entry is None:
                self._record("miss")
                return None

            self._store.move_to_end(key)
            self._record("hit")
            return copy.deepcopy(entry.value)

    async def tag_versions(self, tags):
        async with self._lock:
            return {tag: self._epoch for tag in tags}

    async def set(self, key, value, tags=(), versions=None):
        expires_at = None if self.ttl is None else self._clock() + self.ttl
        entry = _Entry(copy.deepcopy(value), expires_at, frozenset(tags))

        async with self._lock:
            if versions and any(
                self._invalidated.get(tag, self._floor) > version
                for tag, version in versions.items()
            ):
                logger.debug(f"Skipped caching {key}: invalidated during read")
                return False

            if key in self._store:
                self._drop(key)
            while len(self._store) >= self.max_size:
                oldest = next(iter(self._store))
                self._drop(oldest)
            self._store[key] = entry
            for tag in entry.tags:
                self._tag_index[tag].add(key)
            return True

    async def invalidate(self, key):
        async with self._lock:
            if key in self._store:
                self._drop(key)

    async def invalidate_tags(self, tags):
        dropped = 0
        async with self._lock:
            self._epoch += 1
            for tag in set(tags):
                self._invalidated[tag] = self._epoch
                self._invalidated.move_to_end(tag)
                for key in list(self._tag_index.get(tag, ())):
                    if key in self._store:
                        self._drop(key)
                        dropped += 1
            while len(self._invalidated) > self.max_size:
                _, epoch = self._invalidated.popitem(last=False)
                self._floor = max(self._floor, epoch)
        if dropped:
            logger.debug(f"Invalidated {dropped} cache entr{'y' if dropped == 1 else 'ies'}")
        return dropped

    async def clear(self):
        async with self._lock:
            self._store.clear()
            self._tag_index.clear()
            self._invalidated.clear()
            self._floor = self._epoch

    def _expired(self, entry: _Entry) -> bool:
        return entry.expires_at is not None and self._clock() >= entry.expires_at

    def _drop(self, key: str) -> None:
        entry = self._store.pop(key)
        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tag_index[tag]

    def _record(self, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.counter("cache_requests_total").inc({"outcome": outcome})
