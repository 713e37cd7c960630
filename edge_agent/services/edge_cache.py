"""
Edge cache gateway: given the matched routing policy, answer locally, forward to the
origin, or serve/populate the edge cache.

    no policy / forward=false / POST  -> local decision response
    forward=true, cache=false         -> fetch cdnResponseURL (or the request path on ORIGIN_URL)
    forward=true, cache=true (GET)    -> cache lookup (unless overrideCache) -> fetch on miss,
                                         store 2xx responses in the background

Visitor/decision headers and cookies are applied after the cache step, so cached
responses never carry them.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from edge_agent.core.listeners import EventListenerRegistry
from edge_agent.core.mutations import (
    PendingMutations,
    apply_request_mutations,
    apply_response_mutations,
)
from edge_agent.core.request_config import RequestConfiguration
from edge_agent.models.decisions import CdnVariationSettings
from edge_agent.services.runtime import EdgeRuntime
from edge_agent.utils.background import BackgroundTasks
from edge_agent.utils.errors import CacheError, OriginFetchError
from edge_agent.utils.http_messages import copy_response, is_success, origin_target
from edge_agent.utils.observability import log_event
from edge_agent.utils.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def generate_cache_key(settings: CdnVariationSettings, origin_url: str) -> str:
    """
    Cache key URL for a forwarded request.
    VARIATION_KEY -> origin URL + flagKey/variationKey params, so variations cache apart;
    any other value -> origin URL + cacheKey=<value>.
    """
    if not settings.cache_key:
        raise CacheError("cacheKey is missing from the CDN variation settings")
    url = httpx.URL(origin_url)
    if settings.uses_variation_cache_key:
        if not settings.flag_key or not settings.variation_key:
            raise CacheError("VARIATION_KEY cache keys need a flag key and a variation key")
        url = url.copy_merge_params(
            {"flagKey": settings.flag_key, "variationKey": settings.variation_key}
        )
    else:
        url = url.copy_merge_params({"cacheKey": settings.cache_key})
    return str(url)


class EdgeCacheGateway:
    def __init__(
        self,
        runtime: EdgeRuntime,
        *,
        background: BackgroundTasks,
        listeners: Optional[EventListenerRegistry] = None,
        settings: Optional[Settings] = None,
    ):
        self.runtime = runtime
        self.background = background
        self.listeners = listeners or EventListenerRegistry()
        self.settings = settings or get_settings()

    async def route(
        self,
        matched: Optional[CdnVariationSettings],
        request: httpx.Request,
        local_response: httpx.Response,
        mutations: PendingMutations,
        config: RequestConfiguration,
    ) -> httpx.Response:
        is_post = request.method.upper() == "POST"
        if matched is None or not matched.forward_request_to_origin or is_post:
            return apply_response_mutations(local_response, mutations)

        target_url = matched.cdn_response_url or origin_target(request.url, self.settings.origin_url)
        if not matched.cache_request_to_origin:
            response = await self._fetch(request, target_url, mutations)
            return apply_response_mutations(response, mutations)

        cache_key = await self._cache_key(request, matched, target_url)
        if cache_key and not config.override_cache:
            cached = await self._lookup(cache_key)
            if cached is not None:
                result = await self.listeners.trigger("afterReadingCache", request, cached, matched)
                cached = result.get("modifiedResponse") or cached
                log_event(logger, "edge_cache_hit", url=cache_key)
                return apply_response_mutations(cached, mutations)

        response = await self._fetch(request, target_url, mutations)
        if cache_key and is_success(response):
            response = copy_response(response, set_headers={"cache-control": "public"})
            result = await self.listeners.trigger("beforeCacheResponse", request, response)
            to_store = result.get("modifiedResponse") or response
            self.background.add_task(self._store, request, cache_key, to_store, matched)
        return apply_response_mutations(response, mutations)

    async def _cache_key(
        self, request: httpx.Request, matched: CdnVariationSettings, origin_url: str
    ) -> Optional[str]:
        """Cache key, or None when it cannot be built (the request is then fetched uncached)."""
        result = await self.listeners.trigger("beforeCreateCacheKey", request, matched)
        if result.get("cacheKey"):
            return str(result["cacheKey"])
        try:
            return generate_cache_key(matched, origin_url)
        except (CacheError, httpx.InvalidURL) as e:
            log_event(logger, "edge_cache_key_failed", level="warning", url=origin_url, error=str(e))
            return None

    async def _lookup(self, cache_key: str) -> Optional[httpx.Response]:
        try:
            return await self.runtime.response_cache.match(cache_key)
        except Exception as e:
            log_event(logger, "edge_cache_read_failed", level="warning", url=cache_key, error=str(e))
            return None

    async def _fetch(
        self, request: httpx.Request, target_url: str, mutations: PendingMutations
    ) -> httpx.Response:
        outgoing = apply_request_mutations(
            request,
            mutations,
            url=target_url,
            extra_headers={self.settings.worker_operation_header: "true"},
        )
        result = await self.listeners.trigger("beforeRequest", outgoing)
        outgoing = result.get("modifiedRequest") or outgoing
        try:
            response = await self.runtime.fetch(outgoing)
        except httpx.HTTPError as e:
            log_event(logger, "origin_fetch_failed", level="error", url=target_url, error=str(e))
            raise OriginFetchError(f"Origin fetch failed: {e}") from e
        log_event(
            logger,
            "origin_fetched",
            level="debug",
            url=target_url,
            status_code=response.status_code,
        )
        return response

    async def _store(
        self,
        request: httpx.Request,
        cache_key: str,
        response: httpx.Response,
        matched: CdnVariationSettings,
    ) -> None:
        try:
            await self.runtime.response_cache.put(cache_key, response)
        except Exception as e:
            log_event(logger, "edge_cache_write_failed", level="warning", url=cache_key, error=str(e))
            return
        log_event(logger, "edge_cache_stored", url=cache_key)
        await self.listeners.trigger("afterCacheResponse", request, response, matched)
