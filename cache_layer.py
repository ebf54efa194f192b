from __future__ import annotations

import os
import threading
from typing import Any

from cachetools import TTLCache


def _bounded_env_int(name: str, default: int, lo: int, hi: int) -> int:
    try:
        value = int(os.getenv(name, str(default)) or default)
    except ValueError:
        value = default
    return max(lo, min(hi, value))


class _Cache:
    """Process-local TTL cache for RBAC rules and the recruitment settings singleton."""

    def __init__(self):
        ttl = _bounded_env_int("CACHE_TTL_SECONDS", 60, 1, 3600)
        max_items = _bounded_env_int("CACHE_MAX_ITEMS", 10000, 100, 500_000)
        self._data = TTLCache(maxsize=max_items, ttl=ttl)
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Any:
        with self._lock:
            val = self._data.get(key)
            if val is None:
                self._misses += 1
            else:
                self._hits += 1
            return val

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def invalidate_prefix(self, prefix: str) -> int:
        if not prefix:
            return 0
        with self._lock:
            doomed = [k for k in list(self._data.keys()) if str(k).startswith(prefix)]
            for k in doomed:
                self._data.pop(k, None)
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._data),
                "maxsize": self._data.maxsize,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round((self._hits / total * 100) if total else 0.0, 2),
            }


_cache = _Cache()


def cache_get(key: str) -> Any:
    return _cache.get(key)


def cache_set(key: str, value: Any) -> None:
    _cache.set(key, value)


def cache_invalidate_prefix(prefix: str) -> int:
    return _cache.invalidate_prefix(prefix)


def cache_clear() -> None:
    _cache.clear()


def cache_stats() -> dict[str, Any]:
    return _cache.stats()
