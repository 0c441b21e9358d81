from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock

from ..errors import RateLimited


@dataclass
class _Bucket:
    tokens: float
    updated_at: float


class RateLimiter:
    """Token buckets keyed by caller, refilled continuously.

    Counters are process-local: with several workers each one enforces its own
    budget, so limits are best-effort unless a shared store backs them.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, max_keys: int = 10_000) -> None:
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._lock = Lock()
        self.max_keys = max_keys

    def _prune(self, now: float, per_seconds: float) -> None:
        """Drop idle buckets; when none are idle, drop the least recently used ones."""
        stale = [key for key, bucket in self._buckets.items() if now - bucket.updated_at > per_seconds]
        for key in stale:
            del self._buckets[key]
        overflow = len(self._buckets) - self.max_keys + 1
        if overflow > 0:
            oldest = sorted(self._buckets, key=lambda key: self._buckets[key].updated_at)[:overflow]
            for key in oldest:
                del self._buckets[key]

    def try_acquire(self, key: str, capacity: int, per_seconds: float = 60.0) -> float:
        """Take one token. Returns 0 on success, otherwise seconds until a token is available."""
        refill_rate = capacity / per_seconds
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None:
                if len(self._buckets) >= self.max_keys:
                    self._prune(now, per_seconds)
                bucket = _Bucket(tokens=float(capacity), updated_at=now)
                self._buckets[key] = bucket
            else:
                elapsed = max(0.0, now - bucket.updated_at)
                bucket.tokens = min(float(capacity), bucket.tokens + elapsed * refill_rate)
                bucket.updated_at = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return 0.0
            return (1.0 - bucket.tokens) / refill_rate

    def check(self, key: str, capacity: int, per_seconds: float = 60.0) -> None:
        retry_after = self.try_acquire(key, capacity, per_seconds)
        if retry_after > 0:
            raise RateLimited("Too many requests", retry_after_seconds=round(retry_after, 3))

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
