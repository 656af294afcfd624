"""Sliding-window request limiter keyed by client address."""

from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Callable, Deque, Dict, Tuple


class SlidingWindowRateLimiter:
    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._events: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()
        self._lock = Lock()

    def consume(self, client_key: str) -> Tuple[bool, int]:
        """Consume one request token, returning (allowed, retry_after_seconds)."""
        now = self._clock()

        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._drop_idle_buckets_unlocked(now)
            bucket = self._events.setdefault(client_key, deque())
            while bucket and now - bucket[0] > self.window_seconds:
                bucket.popleft()

            if len(bucket) >= self.max_requests:
                retry_after_seconds = max(1, int(self.window_seconds - (now - bucket[0])))
                return False, retry_after_seconds

            bucket.append(now)
            return True, 0

    def _drop_idle_buckets_unlocked(self, now: float) -> None:
        idle = [key for key, bucket in self._events.items() if not bucket or now - bucket[-1] > self.window_seconds]
        for key in idle:
            del self._events[key]
        self._last_sweep = now
