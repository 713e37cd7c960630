"""
Key/value store abstraction backing the KV store, the edge cache and the datafile cache.
- If REDIS_URL is set, use Redis (shared across workers and edge nodes).
- Otherwise fall back to an in-memory cache (process-local, fine for a single worker).
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timedelta
from typing import Any, Optional, Tuple
import logging

import redis

_CACHED_STORES: dict[tuple[str | None, str, bool], "BaseCache"] = {}


def _json_default(obj: Any):
    """Make cache payload JSON-serializable (best-effort)."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, (bytes, bytearray)):
        return obj.decode("utf-8", errors="replace")
    try:
        return str(obj)
    except Exception:
        return repr(obj)


class BaseCache:
    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class InMemoryCache(BaseCache):
    def __init__(self):
        self.store: dict[str, Tuple[Any, Optional[datetime]]] = {}

    def get(self, key: str) -> Optional[Any]:
        item = self.store.get(key)
        if not item:
            return None
        value, expires_at = item
        if expires_at and datetime.now() > expires_at:
            self.delete(key)
            return None
        return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        expires_at = (
            datetime.now() + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        )
        self.store[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        self.store.pop(key, None)


class RedisCache(BaseCache):
    def __init__(self, url: str, prefix: str = ""):
        self.client = redis.Redis.from_url(url)
        self.prefix = prefix

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> Optional[Any]:
        data = self.client.get(self._k(key))
        if data is None:
            return None
        try:
            return json.loads(data)
        except Exception:
            return None

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        data = json.dumps(value, ensure_ascii=False, default=_json_default)
        self.client.set(self._k(key), data, ex=ttl_seconds)

    def delete(self, key: str) -> None:
        self.client.delete(self._k(key))


def _require_redis() -> bool:
    return os.getenv("REQUIRE_REDIS", "").strip() in {
        "1",
        "true",
        "TRUE",
        "yes",
        "YES",
    }


def get_cache_store(prefix: Optional[str] = None) -> BaseCache:
    """
    Return the shared store for `prefix` (defaults to CACHE_PREFIX).
    Stores are memoized per (REDIS_URL, prefix, REQUIRE_REDIS) so env changes in tests take effect.
    """
    redis_url = os.getenv("REDIS_URL")
    base_prefix = os.getenv("CACHE_PREFIX", "")
    full_prefix = f"{base_prefix}{prefix or ''}"
    require_redis = _require_redis()
    config = (redis_url, full_prefix, require_redis)
    cached = _CACHED_STORES.get(config)
    if cached is not None:
        return cached

    if redis_url:
        try:
            cache = RedisCache(redis_url, prefix=full_prefix)
            cache.client.ping()  # Verify connection immediately
            _CACHED_STORES[config] = cache
            return cache
        except Exception as e:
            if require_redis:
                raise RuntimeError(f"REQUIRE_REDIS=1 but Redis ping failed: {e}")
            logging.warning(
                "Redis configured but unavailable (ping failed), falling back to in-memory cache: %s",
                e,
            )
    elif require_redis:
        raise RuntimeError("REQUIRE_REDIS=1 but REDIS_URL is not set")

    store = InMemoryCache()
    _CACHED_STORES[config] = store
    return store
