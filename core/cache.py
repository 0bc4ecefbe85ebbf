from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

logger = logging.getLogger("salarysync.cache")

_MISSING = object()


class TTLCache:
    """Process-local string-keyed cache with per-entry expiry.

    Expired entries are dropped lazily on read and in bulk by ``sweep()``, which a
    background thread can run periodically (see ``start_sweeper``).
    """

    def __init__(self, default_ttl: int = 300) -> None:
        self.default_ttl = int(default_ttl)
        self._store: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._sweeper: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def get(self, key: str, default: Any = None) -> Any:
        now = time.monotonic()
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._misses += 1
                return default
            expires_at, value = entry
            if expires_at <= now:
                del self._store[key]
                self._misses += 1
                return default
            self._hits += 1
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        seconds = self.default_ttl if ttl is None else float(ttl)
        with self._lock:
            self._store[key] = (time.monotonic() + seconds, value)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._store.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._store if k.startswith(prefix)]
            for k in keys:
                del self._store[k]
            return len(keys)

    def get_or_set(self, key: str, factory: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value
        # Computed outside the lock; concurrent misses may both compute
        value = factory()
        self.set(key, value, ttl)
        return value

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
            self._hits = 0
            self._misses = 0

    def sweep(self) -> int:
        now = time.monotonic()
        with self._lock:
            expired = [k for k, (exp, _) in self._store.items() if exp <= now]
            for k in expired:
                del self._store[k]
        if expired:
            logger.debug("cache sweep removed %d entries", len(expired))
        return len(expired)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._store),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total, 4) if total else 0.0,
                "default_ttl": self.default_ttl,
            }

    def start_sweeper(self, interval: float) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()

        def _loop() -> None:
            while not self._stop.wait(interval):
                try:
                    self.sweep()
                except Exception:
                    logger.exception("cache sweep failed")

        self._sweeper = threading.Thread(target=_loop, name="ttl-cache-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop.set()
        thread = self._sweeper
        if thread is not None:
            thread.join(timeout=2)
        self._sweeper = None


def company_prefix(company_id: int) -> str:
    return f"company:{company_id}:"


def access_key(company_id: int) -> str:
    return f"{company_prefix(company_id)}access"


_singleton: TTLCache | None = None
_singleton_lock = threading.Lock()


def get_cache() -> TTLCache:
    global _singleton
    if _singleton is None:
        with _singleton_lock:
            if _singleton is None:
                from .settings import get_settings

                _singleton = TTLCache(default_ttl=get_settings().cache_ttl_seconds)
    return _singleton


def reset_cache() -> None:
    """Testing helper: stop the sweeper and drop the singleton."""
    global _singleton
    with _singleton_lock:
        if _singleton is not None:
            _singleton.stop_sweeper()
        _singleton = None
