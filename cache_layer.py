"""
Process-local TTL cache for hot read paths (RBAC rules, role index, org-structure heads).

Values are plain data (dicts, strings, bools), never ORM instances.
"""

from __future__ import annotations

import os
import threading
from typing import Any, Callable

from cachetools import TTLCache


def _env_int(name: str, default: int, lo: int, hi: int) -> int:
    try:
        value = int(os.getenv(name, "") or default)
    except ValueError:
        value = default
    return max(lo, min(hi, value))


class _TTLStore:
    def __init__(self):
        ttl = _env_int("CACHE_TTL_SECONDS", 60, 1, 3600)
        max_items = _env_int("CACHE_MAX_ITEMS", 10_000, 100, 500_000)
        self._cache: TTLCache = TTLCache(maxsize=max_items, ttl=ttl)
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Any:
        with self._lock:
            val = self._cache.get(key)
            if val is None:
                self._misses += 1
            else:
                self._hits += 1
            return val

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._cache[key] = value

    def get_or_set(self, key: str, factory: Callable[[], Any]) -> Any:
        with self._lock:
            if key in self._cache:
                self._hits += 1
                return self._cache[key]
            self._misses += 1
        computed = factory()
        with self._lock:
            return self._cache.setdefault(key, computed)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._cache),
                "maxsize": self._cache.maxsize,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round((self._hits / total * 100) if total else 0.0, 2),
            }


_store = _TTLStore()


def cache_get(key: str) -> Any:
    return _store.get(key)


def cache_set(key: str, value: Any) -> None:
    _store.set(key, value)


def cache_get_or_set(key: str, factory: Callable[[], Any]) -> Any:
    return _store.get_or_set(key, factory)


def cache_clear() -> None:
    _store.clear()


def cache_stats() -> dict[str, Any]:
    return _store.stats()
