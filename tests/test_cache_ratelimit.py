from __future__ import annotations

import pytest


def test_ttl_cache_basics():
    from core.cache import TTLCache

    cache = TTLCache(default_ttl=60)
    assert cache.get("x") is None
    cache.set("x", 1)
    assert cache.get("x") == 1
    cache.set("gone", 2, ttl=0)
    assert cache.get("gone", "default") == "default"
    assert cache.delete("x") is True
    assert cache.delete("x") is False
    stats = cache.stats()
    assert stats["hits"] == 1 and stats["misses"] == 2


def test_get_or_set_computes_once():
    from core.cache import TTLCache

    cache = TTLCache()
    calls = []

    def factory():
        calls.append(1)
        return {"value": len(calls)}

    assert cache.get_or_set("k", factory) == {"value": 1}
    assert cache.get_or_set("k", factory) == {"value": 1}
    assert len(calls) == 1


def test_company_prefix_invalidation():
    from core.cache import TTLCache, access_key, company_prefix

    cache = TTLCache()
    cache.set(access_key(1), "a")
    cache.set(company_prefix(1) + "other", "b")
    cache.set(access_key(10), "c")
    assert cache.delete_prefix(company_prefix(1)) == 2
    assert cache.get(access_key(10)) == "c"


def test_sweep_and_sweeper_thread():
    from core.cache import TTLCache

    cache = TTLCache()
    cache.set("a", 1, ttl=0)
    cache.set("b", 2, ttl=60)
    assert cache.sweep() == 1
    assert cache.stats()["size"] == 1
    cache.start_sweeper(interval=0.01)
    cache.stop_sweeper()


def test_singleton_uses_settings(monkeypatch):
    from core.cache import get_cache, reset_cache
    from core.settings import reset_settings_cache

    monkeypatch.setenv("CACHE_TTL_SECONDS", "42")
    reset_settings_cache()
    reset_cache()
    assert get_cache().default_ttl == 42
    assert get_cache() is get_cache()


def test_in_memory_limiter():
    from core.rate_limit import InMemoryBackend, RateLimiter

    limiter = RateLimiter(InMemoryBackend())
    results = [limiter.too_many_attempts("login:a", 60, 3) for _ in range(4)]
    assert results == [False, False, False, True]
    assert limiter.too_many_attempts("login:b", 60, 3) is False
    limiter.reset("login:a")
    assert limiter.too_many_attempts("login:a", 60, 3) is False


@pytest.mark.parametrize("policy,expected", [("open", False), ("closed", True), ("memory", False)])
def test_redis_failure_policies(policy, expected):
    pytest.importorskip("redis")
    from core.rate_limit import RateLimiter, RedisBackend

    backend = RedisBackend("redis://127.0.0.1:1/0", fail_policy=policy)
    limiter = RateLimiter(backend)
    assert limiter.too_many_attempts("login:x", 60, 5) is expected
    limiter.reset("login:x")


def test_redis_backend_requires_url(monkeypatch):
    from core.rate_limit import get_rate_limiter, reset_rate_limiter
    from core.settings import reset_settings_cache

    monkeypatch.setenv("RATE_LIMIT_BACKEND", "redis")
    monkeypatch.delenv("RATE_LIMIT_REDIS_URL", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    reset_settings_cache()
    reset_rate_limiter()
    with pytest.raises(RuntimeError):
        get_rate_limiter()
