from __future__ import annotations

import logging
import os
import threading
import time
from typing import Protocol

from .settings import get_settings


logger = logging.getLogger("salarysync.rate_limit")


class _Backend(Protocol):
    def increment(self, key: str, window_seconds: int) -> int:
        ...

    def reset(self, key: str) -> None:
        ...


class InMemoryBackend:
    """Process-local sliding-window counters."""

    def __init__(self) -> None:
        self._store: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def increment(self, key: str, window_seconds: int) -> int:
        now = time.time()
        with self._lock:
            hits = [ts for ts in self._store.get(key, []) if now - ts <= window_seconds]
            hits.append(now)
            self._store[key] = hits
            return len(hits)

    def reset(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)


class RedisBackend:
    """Redis sorted-set limiter shared across worker processes.

    fail_policy:
      - 'open'   → on Redis error, allow traffic (no limiting)
      - 'closed' → on Redis error, block traffic (treat as exceeded)
      - 'memory' → on Redis error, fallback to in-proc memory backend
    """

    def __init__(self, url: str, fail_policy: str = "open", fallback: _Backend | None = None) -> None:
        from redis import Redis

        self._client: Redis = Redis.from_url(url, decode_responses=True)
        self._prefix = "salarysync:rl:"
        self._fail_policy = fail_policy
        self._fallback = fallback or InMemoryBackend()

    def _full_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def increment(self, key: str, window_seconds: int) -> int:
        now = time.time()
        k = self._full_key(key)
        try:
            pipe = self._client.pipeline()
            pipe.zremrangebyscore(k, "-inf", now - window_seconds)
            pipe.zadd(k, {str(now): now})
            pipe.zcard(k)
            pipe.expire(k, window_seconds)
            _, _, count, _ = pipe.execute()
            return int(count)
        except Exception as exc:
            policy = self._fail_policy
            logger.error("Redis rate limit error (%s): %s", policy, exc)
            if policy == "open":
                return 1
            if policy == "closed":
                return 10**9
            return self._fallback.increment(key, window_seconds)

    def reset(self, key: str) -> None:
        try:
            self._client.delete(self._full_key(key))
        except Exception as exc:
            logger.warning("Redis reset failed (%s): %s", self._fail_policy, exc)
            if self._fail_policy == "memory":
                self._fallback.reset(key)


class RateLimiter:
    """Facade that hides backend selection."""

    def __init__(self, backend: _Backend) -> None:
        self._backend = backend

    def too_many_attempts(self, key: str, window_seconds: int, max_attempts: int) -> bool:
        count = self._backend.increment(key, window_seconds)
        return count > max_attempts

    def reset(self, key: str) -> None:
        self._backend.reset(key)


_singleton: RateLimiter | None = None
_singleton_lock = threading.Lock()


def _build_backend() -> _Backend:
    settings = get_settings()
    backend = settings.rate_limit_backend
    redis_url = settings.rate_limit_redis_url or os.environ.get("REDIS_URL")
    if backend == "auto":
        backend = "redis" if redis_url else "memory"
        logger.debug("Rate limit backend auto-detected: %s", backend)
    if backend == "redis":
        if not redis_url:
            raise RuntimeError("RATE_LIMIT_REDIS_URL (or REDIS_URL) is required for the redis rate limit backend.")
        policy = settings.rate_limit_redis_policy
        fb = InMemoryBackend() if policy == "memory" else None
        return RedisBackend(redis_url, fail_policy=policy, fallback=fb)
    logger.info("Rate limit backend: in-memory (per process)")
    return InMemoryBackend()


def get_rate_limiter() -> RateLimiter:
    global _singleton
    if _singleton is None:
        with _singleton_lock:
            if _singleton is None:
                _singleton = RateLimiter(_build_backend())
    return _singleton


def reset_rate_limiter() -> None:
    """Testing helper: rebuild the backend on next use."""
    global _singleton
    with _singleton_lock:
        _singleton = None
