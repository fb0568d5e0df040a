"""
Fixed-window rate limiting per (project, endpoint).

Each key owns a counter for the current window. The first request of a new
window resets it to 1; a request that finds the counter at the limit is
refused and does not increment it.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Protocol, Tuple

from locus.hardening import RateLimitExceeded
from locus.observability import LocusLayer, get_logger

logger = get_logger("ratelimit", LocusLayer.RATELIMIT)

ENDPOINTS = ("resolve", "anchor", "supersede")
DEFAULT_WINDOW_MS = 60_000


@dataclass(frozen=True)
class Bucket:
    window_start_ms: int
    count: int


def window_start(now_ms: int, window_ms: int = DEFAULT_WINDOW_MS) -> int:
    return now_ms - (now_ms % window_ms)


def advance_bucket(
    bucket: Optional[Bucket],
    now_ms: int,
    limit: int,
    window_ms: int = DEFAULT_WINDOW_MS,
) -> Tuple[Bucket, bool]:
    """Apply one request to ``bucket``; returns the new bucket and whether it was allowed."""
    start = window_start(now_ms, window_ms)
    if bucket is None or bucket.window_start_ms != start:
        return Bucket(start, 1), limit > 0
    if bucket.count >= limit:
        return bucket, False
    return Bucket(start, bucket.count + 1), True


class CounterStore(Protocol):
    """Atomic get-or-reset-then-increment over named counters."""

    def allow(self, key: str, limit: int, now_ms: int, window_ms: int) -> bool:
        ...


class InMemoryCounterStore:
    """Process-local counters; the lock makes each ``allow`` atomic."""

    def __init__(self):
        self._buckets: Dict[str, Bucket] = {}
        self._lock = threading.Lock()

    def allow(self, key: str, limit: int, now_ms: int, window_ms: int) -> bool:
        with self._lock:
            bucket, allowed = advance_bucket(self._buckets.get(key), now_ms, limit, window_ms)
            self._buckets[key] = bucket
            return allowed

    def count(self, key: str) -> int:
        with self._lock:
            bucket = self._buckets.get(key)
            return bucket.count if bucket else 0


@dataclass
class RateLimitConfig:
    """Requests allowed per window, by endpoint."""
    window_seconds: int = 60
    limits: Dict[str, int] = field(default_factory=lambda: {
        "resolve": 60,
        "anchor": 20,
        "supersede": 20,
    })

    @property
    def window_ms(self) -> int:
        return self.window_seconds * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


class FixedWindowRateLimiter:
    """Counts requests under ``"<project_id>:<endpoint>"`` keys."""

    def __init__(
        self,
        store: Optional[CounterStore] = None,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.store = store if store is not None else InMemoryCounterStore()
        self.config = config or RateLimitConfig()
        self._clock = clock

    def allow(self, project_id: str, endpoint: str) -> bool:
        if endpoint not in self.config.limits:
            raise KeyError(f"Unknown endpoint: {endpoint}")
        key = f"{project_id}:{endpoint}"
        allowed = self.store.allow(key, self.config.limits[endpoint], self._clock(), self.config.window_ms)
        if not allowed:
            logger.warning("rate limit exceeded", key=key)
        return allowed

    def check(self, project_id: str, endpoint: str) -> None:
        """Like ``allow`` but raises ``RateLimitExceeded`` when refused."""
        if not self.allow(project_id, endpoint):
            raise RateLimitExceeded(f"{project_id}:{endpoint}")
