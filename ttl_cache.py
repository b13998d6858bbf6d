"""
ttl_cache.py — bounded LRU cache with per-entry time-to-live.

Constructed explicitly and handed to whoever needs it (settings lookups,
rate-limit bookkeeping) instead of living as a module-level global.
All operations are synchronous and never await, so within one event loop a
get/set is atomic with respect to other coroutines.
"""
from __future__ import annotations

import time
from collections import OrderedDict
from typing import Any, Generic, Hashable, Optional, TypeVar

V = TypeVar("V")

_MISSING = object()


class TTLCache(Generic[V]):
    """LRU cache: at most *max_size* entries, each valid for *ttl_seconds*."""

    def __init__(self, max_size: int, ttl_seconds: float):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._data: OrderedDict[Hashable, tuple[float, V]] = OrderedDict()

    def get(self, key: Hashable, default: Optional[V] = None) -> Optional[V]:
        item = self._data.get(key, _MISSING)
        if item is _MISSING:
            return default
        expires_at, value = item
        if time.monotonic() >= expires_at:
            del self._data[key]
            return default
        self._data.move_to_end(key)
        return value

    def set(self, key: Hashable, value: V) -> None:
        self._data[key] = (time.monotonic() + self.ttl_seconds, value)
        self._data.move_to_end(key)
        while len(self._data) > self.max_size:
            self._data.popitem(last=False)     # evict least recently used

    def invalidate(self, key: Hashable) -> bool:
        """Drop one entry. Returns True if it was present."""
        return self._data.pop(key, _MISSING) is not _MISSING

    def clear(self) -> None:
        self._data.clear()

    def __contains__(self, key: Any) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        return len(self._data)
