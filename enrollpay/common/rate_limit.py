"""Fixed-window request limiter backed by Redis, failing open to process memory.

A shared Redis counter keeps limits consistent across service instances. When
Redis is not configured or errors, decisions fall back to a per-process
counter instead of blocking checkout traffic.
"""

import hashlib
import threading
import time
from dataclasses import dataclass

import redis
from fastapi import Request, Response

from enrollpay.common.config import settings
from enrollpay.common.errors import CheckoutError
from enrollpay.common.http import client_ip
from enrollpay.common.logging import logger, sanitize_error
from enrollpay.common.metrics import rate_limit_fallbacks_total


@dataclass(frozen=True)
class RateLimitOptions:
    key_prefix: str
    window_ms: int
    max: int


@dataclass(frozen=True)
class RateLimitState:
    count: int
    reset_at_ms: int


class MemoryRateLimitStore:
    """Per-process fixed-window counters with periodic expiry sweeps."""

    def __init__(self) -> None:
        self._buckets: dict[str, RateLimitState] = {}
        self._lock = threading.Lock()
        self._last_cleanup_ms = 0

    def _cleanup_expired(self, now_ms: int) -> None:
        if now_ms - self._last_cleanup_ms < 60_000:
            return
        self._last_cleanup_ms = now_ms
        for key in [key for key, bucket in self._buckets.items() if bucket.reset_at_ms <= now_ms]:
            del self._buckets[key]

    def increment(self, key: str, window_ms: int, now_ms: int) -> RateLimitState:
        with self._lock:
            self._cleanup_expired(now_ms)
            existing = self._buckets.get(key)
            if existing is None or existing.reset_at_ms <= now_ms:
                state = RateLimitState(count=1, reset_at_ms=now_ms + window_ms)
            else:
                state = RateLimitState(count=existing.count + 1, reset_at_ms=existing.reset_at_ms)
            self._buckets[key] = state
            return state


class RedisRateLimitStore:
    """Shared counters using atomic INCR + PEXPIRE."""

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    def increment(self, key: str, window_ms: int, now_ms: int) -> RateLimitState:
        count = int(self.client.incr(key))
        if count == 1:
            self.client.pexpire(key, window_ms)
        ttl_ms = int(self.client.pttl(key))
        if ttl_ms < 0:
            self.client.pexpire(key, window_ms)
            ttl_ms = window_ms
        return RateLimitState(count=count, reset_at_ms=now_ms + ttl_ms)


class RateLimiter:
    """Counts requests per client key and decides whether to reject them."""

    def __init__(self, shared_store: RedisRateLimitStore | None = None, clock=time.time) -> None:
        self.shared_store = shared_store
        self.memory_store = MemoryRateLimitStore()
        self.clock = clock
        self._warned = False

    @classmethod
    def from_settings(cls) -> "RateLimiter":
        if not settings.redis_url:
            return cls()
        client = redis.Redis.from_url(settings.redis_url, socket_connect_timeout=1.5, socket_timeout=1.5)
        return cls(RedisRateLimitStore(client))

    def hit(self, key: str, window_ms: int) -> RateLimitState:
        now_ms = int(self.clock() * 1000)
        if self.shared_store is not None:
            try:
                return self.shared_store.increment(key, window_ms, now_ms)
            except redis.RedisError as exc:
                rate_limit_fallbacks_total.labels(service=settings.service_name).inc()
                if not self._warned:
                    self._warned = True
                    logger.warning("rate_limit_store_failed falling back to memory error=%s", sanitize_error(exc))
        return self.memory_store.increment(key, window_ms, now_ms)

    def enforce(self, request: Request, response: Response, options: RateLimitOptions) -> None:
        """Count one request; raise a 429 error once the window is exhausted."""

        digest = hashlib.sha256(client_ip(request).encode("utf-8")).hexdigest()[:32]
        now_ms = int(self.clock() * 1000)
        state = self.hit(f"{options.key_prefix}:{digest}", options.window_ms)

        remaining = max(0, options.max - state.count)
        reset_seconds = -(-state.reset_at_ms // 1000)
        response.headers["X-RateLimit-Limit"] = str(options.max)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(reset_seconds)
        if state.count <= options.max:
            return

        retry_after = max(1, -(-(state.reset_at_ms - now_ms) // 1000))
        raise CheckoutError(
            "rate_limited",
            "Too many requests. Please retry later.",
            status_code=429,
            details={"retryAfterSeconds": retry_after},
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(options.max),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(reset_seconds),
            },
        )
