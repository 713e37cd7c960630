from __future__ import annotations

import asyncio

import httpx
import pytest

from edge_agent.core.listeners import EventListenerRegistry
from edge_agent.core.mutations import PendingMutations
from edge_agent.core.request_config import RequestConfiguration
from edge_agent.models.decisions import CdnVariationSettings
from edge_agent.services.edge_cache import EdgeCacheGateway, generate_cache_key
from edge_agent.services.runtime import EdgeRuntime, KVStore, ResponseCache
from edge_agent.utils.background import BackgroundTasks
from edge_agent.utils.cache import InMemoryCache
from edge_agent.utils.errors import CacheError, OriginFetchError
from edge_agent.utils.http_messages import json_response
from edge_agent.utils.settings import Settings


class _Runtime(EdgeRuntime):
    def __init__(self, handler):
        self.kv_store = KVStore(InMemoryCache())
        self.response_cache = ResponseCache(InMemoryCache())
        self.handler = handler
        self.requests = []

    async def fetch(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


def _origin(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, content=b"<html>variant</html>", headers={"content-type": "text/html"})


def _settings(**overrides) -> CdnVariationSettings:
    values = dict(
        cdn_experiment_url="https://shop.example.com/landing",
        cdn_response_url="https://origin.example.com/landing-v1",
        cache_key="VARIATION_KEY",
        forward_request_to_origin=True,
        cache_request_to_origin=True,
        flag_key="landing",
        variation_key="v1",
    )
    values.update(overrides)
    return CdnVariationSettings(**values)


_MUTATIONS = PendingMutations(
    request_headers=(("edge-visitor-id", "v-1"),),
    request_cookies=(("edge_visitor_id", "v-1"),),
    response_headers=(("edge-visitor-id", "v-1"),),
    response_cookies=("edge_visitor_id=v-1; Path=/",),
)


def _route(runtime, matched, request=None, config=None, listeners=None):
    background = BackgroundTasks()
    gateway = EdgeCacheGateway(runtime, background=background, listeners=listeners, settings=Settings())
    request = request or httpx.Request("GET", "https://shop.example.com/landing", headers={"cookie": "a=b"})
    local = json_response({"decisions": "NO_DECISIONS"})

    async def _run():
        response = await gateway.route(matched, request, local, _MUTATIONS, config or RequestConfiguration())
        await background.drain()
        return response

    return asyncio.run(_run())


def test_generate_cache_key() -> None:
    assert (
        generate_cache_key(_settings(), "https://origin.example.com/landing-v1")
        == "https://origin.example.com/landing-v1?flagKey=landing&variationKey=v1"
    )
    assert (
        generate_cache_key(_settings(cache_key="summer"), "https://origin.example.com/a?x=1")
        == "https://origin.example.com/a?x=1&cacheKey=summer"
    )
    with pytest.raises(CacheError):
        generate_cache_key(_settings(cache_key=None), "https://origin.example.com/a")
    with pytest.raises(CacheError):
        generate_cache_key(_settings(variation_key=None), "https://origin.example.com/a")


def test_no_policy_returns_local_response_with_mutations() -> None:
    runtime = _Runtime(_origin)
    response = _route(runtime, None)
    assert runtime.requests == []
    assert response.json() == {"decisions": "NO_DECISIONS"}
    assert response.headers["edge-visitor-id"] == "v-1"
    assert response.headers.get_list("set-cookie") == ["edge_visitor_id=v-1; Path=/"]


def test_post_is_never_forwarded() -> None:
    runtime = _Runtime(_origin)
    request = httpx.Request("POST", "https://shop.example.com/landing", json={})
    response = _route(runtime, _settings(), request=request)
    assert runtime.requests == []
    assert response.json() == {"decisions": "NO_DECISIONS"}


def test_forward_without_cache_fetches_response_url() -> None:
    runtime = _Runtime(_origin)
    response = _route(runtime, _settings(cache_request_to_origin=False))
    assert response.text == "<html>variant</html>"
    assert response.headers["edge-visitor-id"] == "v-1"

    (sent,) = runtime.requests
    assert str(sent.url) == "https://origin.example.com/landing-v1"
    assert sent.headers["X-Edge-Worker-Operation"] == "true"
    assert sent.headers["edge-visitor-id"] == "v-1"
    assert "a=b" in sent.headers["cookie"]
    assert "edge_visitor_id=v-1" in sent.headers["cookie"]
    assert runtime.response_cache.store.store == {}


def test_forward_without_response_url_uses_request_url() -> None:
    runtime = _Runtime(_origin)
    _route(runtime, _settings(cdn_response_url=None, cache_request_to_origin=False))
    assert str(runtime.requests[0].url) == "https://shop.example.com/landing"


def test_cache_miss_then_hit() -> None:
    runtime = _Runtime(_origin)
    first = _route(runtime, _settings())
    assert first.headers["cache-control"] == "public"
    assert len(runtime.requests) == 1

    second = _route(runtime, _settings())
    assert len(runtime.requests) == 1
    assert second.text == "<html>variant</html>"
    assert second.headers["edge-visitor-id"] == "v-1"

    key = "https://origin.example.com/landing-v1?flagKey=landing&variationKey=v1"
    stored = asyncio.run(runtime.response_cache.match(key))
    assert stored is not None
    # Visitor-specific headers are applied after caching.
    assert "edge-visitor-id" not in stored.headers
    assert "set-cookie" not in stored.headers


def test_override_cache_skips_lookup_and_refreshes_the_entry() -> None:
    bodies = iter([b"<html>old</html>", b"<html>fresh</html>"])
    runtime = _Runtime(lambda request: httpx.Response(200, content=next(bodies)))
    first = _route(runtime, _settings())
    second = _route(runtime, _settings(), config=RequestConfiguration(override_cache=True))
    assert len(runtime.requests) == 2
    assert first.content == b"<html>old</html>"
    assert second.content == b"<html>fresh</html>"

    key = "https://origin.example.com/landing-v1?flagKey=landing&variationKey=v1"
    stored = asyncio.run(runtime.response_cache.match(key))
    assert stored.content == b"<html>fresh</html>"


def test_missing_response_url_forwards_to_the_configured_origin(monkeypatch) -> None:
    monkeypatch.setenv("ORIGIN_URL", "https://origin.example.com")
    runtime = _Runtime(_origin)
    background = BackgroundTasks()
    gateway = EdgeCacheGateway(runtime, background=background, settings=Settings())
    request = httpx.Request("GET", "https://shop.example.com/landing?ref=ad")
    asyncio.run(
        gateway.route(
            _settings(cdn_response_url=None, cache_request_to_origin=False),
            request,
            json_response({}),
            PendingMutations(),
            RequestConfiguration(),
        )
    )
    (forwarded,) = runtime.requests
    assert str(forwarded.url) == "https://origin.example.com/landing?ref=ad"
    assert forwarded.headers["X-Edge-Worker-Operation"] == "true"


def test_error_responses_are_not_cached() -> None:
    runtime = _Runtime(lambda request: httpx.Response(503, content=b"down"))
    response = _route(runtime, _settings())
    assert response.status_code == 503
    assert runtime.response_cache.store.store == {}


def test_fetch_failure_raises_origin_fetch_error() -> None:
    def _fail(request):
        raise httpx.ConnectError("connection refused")

    with pytest.raises(OriginFetchError):
        _route(_Runtime(_fail), _settings(cache_request_to_origin=False))


def test_listeners_can_override_cache_key_and_request() -> None:
    listeners = EventListenerRegistry()
    seen = []
    listeners.on("beforeCreateCacheKey", lambda request, matched: {"cacheKey": "custom-key"})

    def _before_request(request):
        return {"modifiedRequest": httpx.Request("GET", "https://other.example.com/x")}

    listeners.on("beforeRequest", _before_request)
    listeners.on("afterCacheResponse", lambda request, response, matched: seen.append(matched.flag_key))

    runtime = _Runtime(_origin)
    _route(runtime, _settings(), listeners=listeners)
    assert str(runtime.requests[0].url) == "https://other.example.com/x"
    assert asyncio.run(runtime.response_cache.match("custom-key")) is not None
    assert seen == ["landing"]


def test_unbuildable_cache_key_fetches_uncached() -> None:
    runtime = _Runtime(_origin)
    response = _route(runtime, _settings(cache_key=None))
    assert response.status_code == 200
    assert len(runtime.requests) == 1
    assert runtime.response_cache.store.store == {}
