"""Tests for the keyed TTL stores and the rate limiter."""
from __future__ import annotations

from datetime import datetime

import pytest
import redis

from salonsched.cache import MemoryStore, NullStore, RateLimiter, RedisStore, build_store
from salonsched.clock import FixedClock
from salonsched.errors import RateLimitExceeded


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 10, 16, 8, 0))


def test_memory_store_expires_values(clock) -> None:
    store = MemoryStore(clock)
    store.set("token:abc", "revoked", ttl_seconds=60)

    assert store.get("token:abc") == "revoked"
    clock.advance(seconds=61)
    assert store.get("token:abc") is None


def test_memory_counter_window_starts_on_first_hit(clock) -> None:
    store = MemoryStore(clock)

    assert store.incr("k", ttl_seconds=60) == 1
    clock.advance(seconds=30)
    assert store.incr("k", ttl_seconds=60) == 2
    clock.advance(seconds=31)
    assert store.incr("k", ttl_seconds=60) == 1


def test_null_store_never_counts() -> None:
    store = NullStore()
    store.set("a", "b", 10)

    assert store.get("a") is None
    assert store.incr("a", 10) == 0


def test_rate_limiter_blocks_after_limit(clock) -> None:
    limiter = RateLimiter(MemoryStore(clock), limit=2, window_seconds=3600)
    limiter.hit("booking:1")
    limiter.hit("booking:1")

    with pytest.raises(RateLimitExceeded):
        limiter.hit("booking:1")
    # Other keys are unaffected.
    assert limiter.hit("booking:2") == 1

    limiter.reset("booking:1")
    assert limiter.hit("booking:1") == 1


class _BrokenRedis:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise redis.ConnectionError("redis is down")

        return fail


def test_redis_store_fails_open() -> None:
    store = RedisStore(_BrokenRedis())

    assert store.incr("k", 60) == 0
    assert store.get("k") is None
    store.set("k", "v", 60)
    store.delete("k")
    assert RateLimiter(store, limit=1, window_seconds=60).hit("booking:1") == 0


class _FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, int] = {}
        self.expiries: dict[str, int] = {}

    def incr(self, key):
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    def expire(self, key, seconds):
        self.expiries[key] = seconds


def test_redis_store_sets_ttl_on_first_increment() -> None:
    client = _FakeRedis()
    store = RedisStore(client, prefix="test:")

    store.incr("k", 60)
    store.incr("k", 60)

    assert client.values == {"test:k": 2}
    assert client.expiries == {"test:k": 60}


def test_build_store_selects_backend(clock) -> None:
    assert isinstance(build_store({"CACHE_BACKEND": "memory"}, clock), MemoryStore)
    assert isinstance(build_store({"CACHE_BACKEND": "none"}), NullStore)
    assert isinstance(build_store({"CACHE_BACKEND": "redis", "REDIS_URL": "redis://localhost:6379/0"}), RedisStore)
    with pytest.raises(ValueError):
        build_store({"CACHE_BACKEND": "memcached"})
