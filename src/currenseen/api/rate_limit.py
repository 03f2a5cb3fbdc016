"""Per-client token-bucket rate limiting."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

RETRY_AFTER_SECONDS = 60
MAX_TRACKED_CLIENTS = 10_000


@dataclass
class _TokenBucket:
    tokens: float
    last_refill: float


class TokenBucketRateLimiter:
    """Allow ``burst_size`` requests at once, refilled at ``requests_per_minute``."""

    def __init__(
        self,
        *,
        requests_per_minute: int = 100,
        burst_size: int = 10,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if requests_per_minute < 1:
            raise ValueError("requests_per_minute must be >= 1")
        if burst_size < 1:
            raise ValueError("burst_size must be >= 1")
        self._capacity = float(burst_size)
        self._refill_per_second = requests_per_minute / 60.0
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._buckets: dict[str, _TokenBucket] = {}

    def _refill_locked(self, bucket: _TokenBucket, now: float) -> None:
        elapsed = max(now - bucket.last_refill, 0.0)
        bucket.tokens = min(self._capacity, bucket.tokens + elapsed * self._refill_per_second)
        bucket.last_refill = now

    def allow(self, key: str) -> bool:
        """Take one token for ``key``; false when its bucket is empty."""
        if not key:
            raise ValueError("rate limiter key cannot be empty")
        with self._lock:
            now = self._monotonic()
            bucket = self._buckets.get(key)
            if bucket is None:
                if len(self._buckets) >= MAX_TRACKED_CLIENTS:
                    self._prune_full_locked(now)
                bucket = _TokenBucket(tokens=self._capacity, last_refill=now)
                self._buckets[key] = bucket
            else:
                self._refill_locked(bucket, now)
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True
            return False

    def remaining(self, key: str) -> int:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return int(self._capacity)
            self._refill_locked(bucket, self._monotonic())
            return int(bucket.tokens)

    def _prune_full_locked(self, now: float) -> None:
        for key in list(self._buckets):
            bucket = self._buckets[key]
            self._refill_locked(bucket, now)
            if bucket.tokens >= self._capacity:
                del self._buckets[key]
