# core/rate_limit.py
import threading
import time
from dataclasses import dataclass
from typing import Callable


@dataclass
class _Bucket:
    tokens: float
    updated: float


class TokenBucketLimiter:
    """
    Per-key token buckets, owned by whoever constructs them.

    `capacity` calls are allowed in a burst and tokens refill continuously so
    that `capacity` more become available every `window_seconds`. Buckets
    untouched for `idle_ttl` seconds are dropped by `sweep()`, which also runs
    on its own every `idle_ttl` seconds from `allow()`.
    """

    def __init__(
        self,
        capacity: int,
        window_seconds: float,
        idle_ttl: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity <= 0 or window_seconds <= 0:
            raise ValueError("capacity and window_seconds must be positive")
        self.capacity = capacity
        self.refill_per_second = capacity / window_seconds
        self.idle_ttl = idle_ttl
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def allow(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.idle_ttl:
                self._sweep_locked(now)

            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = _Bucket(tokens=float(self.capacity), updated=now)
            else:
                elapsed = now - bucket.updated
                bucket.tokens = min(self.capacity, bucket.tokens + elapsed * self.refill_per_second)
                bucket.updated = now

            if bucket.tokens < 1:
                return False
            bucket.tokens -= 1
            return True

    def sweep(self) -> int:
        """Drop idle buckets. Returns how many were removed."""
        with self._lock:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: float) -> int:
        stale = [key for key, bucket in self._buckets.items() if now - bucket.updated >= self.idle_ttl]
        for key in stale:
            del self._buckets[key]
        self._last_sweep = now
        return len(stale)

    def __len__(self) -> int:
        return len(self._buckets)
