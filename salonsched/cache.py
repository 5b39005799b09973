"""Keyed TTL stores and the booking rate limiter.

Redis backs the store in production; the in-memory variant serves a single
process and tests, and the null variant disables throttling entirely.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Mapping

import redis

from .clock import Clock, SystemClock
from .errors import RateLimitExceeded

logger = logging.getLogger(__name__)


class KeyValueStore:
    """String values with a per-key time to live."""

    def get(self, key: str) -> str | None:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        raise NotImplementedError

    def incr(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter; the TTL starts with the first increment."""
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class NullStore(KeyValueStore):
    def get(self, key: str) -> str | None:
        return None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        return None

    def incr(self, key: str, ttl_seconds: int) -> int:
        return 0

    def delete(self, key: str) -> None:
        return None


class MemoryStore(KeyValueStore):
    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._data: dict[str, tuple[str, datetime]] = {}

    def _live(self, key: str) -> tuple[str, datetime] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock.now():
            del self._data[key]
            return None
        return entry

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (value, self._clock.now() + timedelta(seconds=ttl_seconds))

    def incr(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                count, expires_at = 1, self._clock.now() + timedelta(seconds=ttl_seconds)
            else:
                count, expires_at = int(entry[0]) + 1, entry[1]
            self._data[key] = (str(count), expires_at)
            return count

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class RedisStore(KeyValueStore):
    """Redis-backed store. Connection errors are logged and treated as a miss."""

    def __init__(self, client: redis.Redis, prefix: str = "salonsched:") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(redis.Redis.from_url(url, decode_responses=True, socket_timeout=2))

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> str | None:
        try:
            return self._client.get(self._key(key))
        except redis.RedisError as exc:
            logger.warning("Redis get failed for %s: %s", key, exc)
            return None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self._client.setex(self._key(key), ttl_seconds, value)
        except redis.RedisError as exc:
            logger.warning("Redis set failed for %s: %s", key, exc)

    def incr(self, key: str, ttl_seconds: int) -> int:
        try:
            count = self._client.incr(self._key(key))
            if count == 1:
                self._client.expire(self._key(key), ttl_seconds)
            return int(count)
        except redis.RedisError as exc:
            logger.warning("Redis incr failed for %s, allowing request: %s", key, exc)
            return 0

    def delete(self, key: str) -> None:
        try:
            self._client.delete(self._key(key))
        except redis.RedisError as exc:
            logger.warning("Redis delete failed for %s: %s", key, exc)


def build_store(config: Mapping[str, object], clock: Clock | None = None) -> KeyValueStore:
    backend = str(config.get("CACHE_BACKEND") or "memory").lower()
    if backend == "redis":
        logger.info("Using Redis store at %s", config.get("REDIS_URL"))
        return RedisStore.from_url(str(config.get("REDIS_URL")))
    if backend == "none":
        return NullStore()
    if backend != "memory":
        raise ValueError(f"Unknown CACHE_BACKEND: {backend}")
    return MemoryStore(clock)


class RateLimiter:
    """Fixed-window counter per key."""

    def __init__(self, store: KeyValueStore, limit: int, window_seconds: int) -> None:
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds

    def hit(self, key: str) -> int:
        count = self.store.incr(f"ratelimit:{key}", self.window_seconds)
        if count > self.limit:
            logger.warning("Rate limit exceeded for %s (%s/%s)", key, count, self.limit)
            raise RateLimitExceeded("Too many booking attempts, please try again later")
        return count

    def reset(self, key: str) -> None:
        self.store.delete(f"ratelimit:{key}")
