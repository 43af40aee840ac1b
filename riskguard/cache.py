"""
riskguard/cache.py
===================
Bounded in-memory map — RiskGuard

Backs every piece of cross-request state that would otherwise grow without
limit (per-caller rate-limit counters).

Eviction policy:
    - Entries older than ``ttl_seconds`` (when set) are expired lazily on
      read and eagerly by ``sweep()``
    - When ``max_entries`` is reached, the least-recently-used entry is
      evicted to make room

All operations take an internal lock, so the cache is safe to share
between threads and between tasks on one event loop.
"""

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable


class BoundedCache:
    """LRU map with optional per-entry TTL."""

    def __init__(
        self,
        max_entries: int = 10_000,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._data: OrderedDict[Hashable, tuple[float, Any]] = OrderedDict()
        self._lock = threading.RLock()

    def _expired(self, stored_at: float, now: float) -> bool:
        return self.ttl_seconds is not None and now - stored_at >= self.ttl_seconds

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return default
            stored_at, value = item
            if self._expired(stored_at, self._clock()):
                del self._data[key]
                return default
            self._data.move_to_end(key)
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            if key in self._data:
                self._data.move_to_end(key)
            self._data[key] = (self._clock(), value)
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)

    def sweep(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        if self.ttl_seconds is None:
            return 0
        with self._lock:
            now = self._clock()
            stale = [k for k, (ts, _) in self._data.items() if self._expired(ts, now)]
            for key in stale:
                del self._data[key]
            return len(stale)

    def __contains__(self, key: Hashable) -> bool:
        sentinel = object()
        return self.get(key, sentinel) is not sentinel

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
