"""Bounded in-memory cache with TTL expiry and LRU eviction.

Shared by the token counter, the embedding cache and the entity cache.
Every instance is owned by the service that created it and is reset only
by ``clear()`` or process restart.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from threading import Lock
from typing import Any, Generic, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Thread-safe key/value cache.

    Features:
    - TTL expiry (``ttl_seconds=None`` disables expiry)
    - LRU eviction once ``maxsize`` is reached, ``evict_count`` entries at a time
    - Hit/miss statistics
    """

    def __init__(
        self,
        maxsize: int = 1000,
        ttl_seconds: float | None = 300,
        evict_count: int = 1,
    ):
        """
        Args:
            maxsize: Maximum number of entries
            ttl_seconds: Entry lifetime in seconds, or None for no expiry
            evict_count: Entries dropped per eviction when full
        """
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._maxsize = maxsize
        self._ttl_seconds = ttl_seconds
        self._evict_count = max(1, evict_count)
        self._cache: OrderedDict[str, tuple[V, float]] = OrderedDict()
        self._lock = Lock()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "evictions": 0,
            "expirations": 0,
        }

    def _is_expired(self, timestamp: float, now: float) -> bool:
        return self._ttl_seconds is not None and now - timestamp > self._ttl_seconds

    def _evict_expired(self, now: float) -> None:
        """Drop expired entries (caller holds the lock)."""
        if self._ttl_seconds is None:
            return
        expired = [
            key for key, (_, ts) in self._cache.items()
            if self._is_expired(ts, now)
        ]
        for key in expired:
            del self._cache[key]
            self._stats["expirations"] += 1

    def _evict_lru(self) -> None:
        """Make room for one entry (caller holds the lock)."""
        if len(self._cache) < self._maxsize:
            return
        for _ in range(min(self._evict_count, len(self._cache))):
            self._cache.popitem(last=False)
            self._stats["evictions"] += 1

    def get(self, key: str) -> V | None:
        """Return the cached value, or None if absent or expired."""
        now = time.monotonic()
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None

            value, timestamp = entry
            if self._is_expired(timestamp, now):
                del self._cache[key]
                self._stats["expirations"] += 1
                self._stats["misses"] += 1
                return None

            self._cache.move_to_end(key)
            self._stats["hits"] += 1
            return value

    def set(self, key: str, value: V) -> None:
        """Store a value, evicting expired and least-recently-used entries."""
        now = time.monotonic()
        with self._lock:
            if key not in self._cache:
                if len(self._cache) >= self._maxsize:
                    self._evict_expired(now)
                self._evict_lru()
            self._cache[key] = (value, now)
            self._cache.move_to_end(key)

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> int:
        """Remove every entry.

        Returns:
            Number of entries removed
        """
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            return count

    def values(self) -> list[V]:
        """Snapshot of live values."""
        now = time.monotonic()
        with self._lock:
            return [
                value for value, ts in self._cache.values()
                if not self._is_expired(ts, now)
            ]

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._stats["hits"] + self._stats["misses"]
            hit_rate = self._stats["hits"] / total if total > 0 else 0
            return {
                **self._stats,
                "hit_rate": f"{hit_rate:.1%}",
                "size": len(self._cache),
                "maxsize": self._maxsize,
                "ttl_seconds": self._ttl_seconds,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None
