from __future__ import annotations

import asyncio

import httpx
import pytest

from edge_agent.services.runtime import KVStore, ResponseCache, deserialize_response
from edge_agent.utils.cache import InMemoryCache, get_cache_store


def test_get_cache_store_inmemory_is_singleton_per_prefix(monkeypatch) -> None:
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("CACHE_PREFIX", raising=False)
    monkeypatch.delenv("REQUIRE_REDIS", raising=False)

    a = get_cache_store("edge:kv:")
    b = get_cache_store("edge:kv:")
    c = get_cache_store("edge:cache:")
    assert a is b
    assert a is not c
    assert isinstance(a, InMemoryCache)


def test_require_redis_without_url_fails(monkeypatch) -> None:
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.setenv("REQUIRE_REDIS", "1")
    with pytest.raises(RuntimeError):
        get_cache_store("edge:strict:")


def test_inmemory_cache_expires_entries() -> None:
    cache = InMemoryCache()
    cache.set("k", "v", ttl_seconds=60)
    assert cache.get("k") == "v"
    value, _ = cache.store["k"]
    cache.store["k"] = (value, cache.store["k"][1].replace(year=2000))
    assert cache.get("k") is None
    assert "k" not in cache.store


def test_kv_store_round_trips_strings() -> None:
    kv = KVStore(InMemoryCache())

    async def _run():
        await kv.put("optly_flagKeys", "a,b")
        return await kv.get("optly_flagKeys"), await kv.get("missing")

    assert asyncio.run(_run()) == ("a,b", None)


def test_response_cache_keeps_status_headers_and_body() -> None:
    cache = ResponseCache(InMemoryCache())
    original = httpx.Response(
        201,
        headers=[("content-type", "text/html"), ("x-a", "1"), ("x-a", "2")],
        content=b"\x00binary\xff",
    )

    async def _run():
        await cache.put("https://origin.example.com/p?cacheKey=k", original)
        return await cache.match("https://origin.example.com/p?cacheKey=k")

    restored = asyncio.run(_run())
    assert restored.status_code == 201
    assert restored.content == b"\x00binary\xff"
    assert restored.headers.get_list("x-a") == ["1", "2"]
    assert asyncio.run(cache.match("https://origin.example.com/other")) is None


def test_corrupt_cache_entries_are_ignored() -> None:
    assert deserialize_response("nope") is None
    assert deserialize_response({"headers": []}) is None
