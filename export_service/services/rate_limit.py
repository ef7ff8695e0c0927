"""Fixed-window rate limiting backed by Redis with an in-process fallback."""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import redis

from ..config import (
    RATE_LIMIT_SCOPES,
    RATE_LIMIT_SWEEP_INTERVAL_MS,
    RATE_LIMIT_SWEEP_THRESHOLD,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int


@dataclass
class _MemoryBucket:
    count: int
    reset_at: float  # epoch milliseconds


def create_redis_client(url: Optional[str], enabled: bool = True) -> Optional[redis.Redis]:
    """Return a Redis client for ``url`` or ``None`` when the store is disabled."""
    if not enabled or not url:
        return None
    try:
        return redis.Redis.from_url(
            url, socket_connect_timeout=2, socket_timeout=2, decode_responses=True
        )
    except (ValueError, redis.RedisError) as error:
        logger.warning("Unable to configure Redis at %s (%s)", url, error)
        return None


class RateLimiter:
    """Count requests per key inside fixed time windows.

    ``store`` is any object exposing Redis' ``incr`` and ``expire``. When it
    is missing or raises, counting falls back to a lock-guarded dict keyed by
    the bare key.
    """

    def __init__(
        self,
        store: Optional[Any] = None,
        clock: Callable[[], float] = time.time,
        sweep_threshold: int = RATE_LIMIT_SWEEP_THRESHOLD,
    ) -> None:
        self._store = store
        self._clock = clock
        self._sweep_threshold = sweep_threshold
        self._next_sweep_ms = 0.0
        self._lock = threading.Lock()
        self._buckets: Dict[str, _MemoryBucket] = {}
        self._metrics: Counter[str] = Counter()

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def allow(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        now_ms = self._now_ms()
        if self._store is not None:
            try:
                result = self._allow_shared(key, limit, window_seconds, now_ms)
            except redis.RedisError as error:
                logger.warning(
                    "Rate limit store unavailable for %s (%s); using memory", key, error
                )
            else:
                self._record(result)
                return result
        result = self._allow_memory(key, limit, window_seconds, now_ms)
        self._record(result)
        return result

    def check(self, scope: str, identity: str) -> RateLimitResult:
        limit, window = RATE_LIMIT_SCOPES[scope]
        return self.allow(f"{scope}:{identity}", limit, window)

    def _allow_shared(
        self, key: str, limit: int, window_seconds: int, now_ms: float
    ) -> RateLimitResult:
        window_id = int(now_ms // (window_seconds * 1000))
        window_key = f"rl:{key}:{window_id}"
        current = int(self._store.incr(window_key))
        if current == 1:
            self._store.expire(window_key, window_seconds)
        return RateLimitResult(
            allowed=current <= limit, remaining=max(0, limit - current)
        )

    def _allow_memory(
        self, key: str, limit: int, window_seconds: int, now_ms: float
    ) -> RateLimitResult:
        with self._lock:
            self._sweep_expired(now_ms)
            bucket = self._buckets.get(key)
            if bucket is None or now_ms > bucket.reset_at:
                self._buckets[key] = _MemoryBucket(
                    count=1, reset_at=now_ms + window_seconds * 1000
                )
                return RateLimitResult(allowed=limit >= 1, remaining=max(0, limit - 1))
            if bucket.count >= limit:
                return RateLimitResult(allowed=False, remaining=0)
            bucket.count += 1
            return RateLimitResult(allowed=True, remaining=limit - bucket.count)

    def _sweep_expired(self, now_ms: float) -> None:
        # caller holds self._lock
        if len(self._buckets) < self._sweep_threshold or now_ms < self._next_sweep_ms:
            return
        expired = [key for key, bucket in self._buckets.items() if now_ms > bucket.reset_at]
        for key in expired:
            del self._buckets[key]
        self._next_sweep_ms = now_ms + RATE_LIMIT_SWEEP_INTERVAL_MS
        if expired:
            logger.debug("Dropped %d expired rate limit buckets", len(expired))

    def _record(self, result: RateLimitResult) -> None:
        with self._lock:
            self._metrics["allowed" if result.allowed else "blocked"] += 1

    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "rate_limit_allowed_total": self._metrics["allowed"],
                "rate_limit_blocked_total": self._metrics["blocked"],
                "rate_limit_tracked_keys": len(self._buckets),
            }


__all__ = ["RateLimitResult", "RateLimiter", "create_redis_client"]
