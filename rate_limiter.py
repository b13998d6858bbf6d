"""
rate_limiter.py — per-customer sliding-window rate limiter.

Each key (customer PSID) owns a deque of event timestamps. Buckets live in a
TTLCache so idle customers are forgotten and the number of tracked keys stays
bounded.
"""
from __future__ import annotations

import time
from collections import deque
from typing import Hashable

from ttl_cache import TTLCache


class RateLimiter:

    def __init__(self, max_events: int = 100, window_secs: float = 60.0, max_keys: int = 500):
        self.max_events = max_events
        self.window_secs = window_secs
        self._buckets: TTLCache[deque] = TTLCache(max_size=max_keys, ttl_seconds=window_secs)

    def is_rate_limited(self, key: Hashable) -> bool:
        """Record one event for *key*; True if it exceeds the window budget."""
        now = time.monotonic()
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = deque()
        while bucket and now - bucket[0] > self.window_secs:
            bucket.popleft()
        if len(bucket) >= self.max_events:
            self._buckets.set(key, bucket)
            return True
        bucket.append(now)
        self._buckets.set(key, bucket)
        return False

    def reset(self) -> None:
        self._buckets.clear()

    def bucket_size(self, key: Hashable) -> int:
        bucket = self._buckets.get(key)
        return len(bucket) if bucket else 0
