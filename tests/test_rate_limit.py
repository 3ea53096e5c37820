"""Fixed-window rate limiting and its fallback when Redis fails."""

import redis

from enrollpay.common.rate_limit import MemoryRateLimitStore, RateLimiter, RedisRateLimitStore


class BrokenRedis:
    def incr(self, key):
        raise redis.ConnectionError("connection refused")


class FakeRedis:
    def __init__(self) -> None:
        self.counts = {}
        self.ttls = {}

    def incr(self, key):
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    def pexpire(self, key, ms):
        self.ttls[key] = ms

    def pttl(self, key):
        return self.ttls.get(key, -1)


def test_memory_window_counts_and_resets():
    store = MemoryRateLimitStore()

    assert store.increment("k", 1_000, now_ms=0).count == 1
    assert store.increment("k", 1_000, now_ms=500).count == 2
    fresh = store.increment("k", 1_000, now_ms=1_000)
    assert fresh.count == 1
    assert fresh.reset_at_ms == 2_000


def test_redis_store_sets_expiry_on_first_hit():
    client = FakeRedis()
    store = RedisRateLimitStore(client)

    first = store.increment("payments:abc", 60_000, now_ms=10_000)
    second = store.increment("payments:abc", 60_000, now_ms=11_000)

    assert first.count == 1
    assert second.count == 2
    assert client.ttls["payments:abc"] == 60_000
    assert first.reset_at_ms == 70_000


def test_redis_failure_falls_back_to_memory():
    limiter = RateLimiter(RedisRateLimitStore(BrokenRedis()), clock=lambda: 100.0)

    assert limiter.hit("payments:abc", 60_000).count == 1
    assert limiter.hit("payments:abc", 60_000).count == 2
