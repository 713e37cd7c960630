"""
Capabilities the pipeline needs from its host: outbound fetch, a string KV store,
a response cache and background task scheduling.

The pipeline only talks to `EdgeRuntime`; hosts differ in how they provide each capability.
`HttpxEdgeRuntime` is the implementation used by the FastAPI app.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Dict, Optional

import httpx

from edge_agent.utils.background import BackgroundTasks
from edge_agent.utils.cache import BaseCache, get_cache_store
from edge_agent.utils.observability import log_event
from edge_agent.utils.settings import get_settings

logger = logging.getLogger(__name__)


class KVStore:
    """String key/value store (datafiles, flag key lists). Values are stored as-is."""

    def __init__(self, store: BaseCache):
        self.store = store

    async def get(self, key: str) -> Optional[str]:
        value = await asyncio.to_thread(self.store.get, key)
        if value is None:
            return None
        return value if isinstance(value, str) else str(value)

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await asyncio.to_thread(self.store.set, key, str(value), ttl_seconds)


def serialize_response(response: httpx.Response) -> Dict[str, Any]:
    return {
        "status": int(response.status_code),
        "headers": [[k, v] for k, v in response.headers.multi_items()],
        "body": base64.b64encode(response.content).decode("ascii"),
    }


def deserialize_response(data: Any) -> Optional[httpx.Response]:
    if not isinstance(data, dict):
        return None
    try:
        headers = [
            (str(k), str(v))
            for k, v in data.get("headers") or []
            if str(k).lower() not in {"content-encoding", "content-length", "transfer-encoding"}
        ]
        return httpx.Response(
            int(data["status"]),
            headers=headers,
            content=base64.b64decode(data.get("body") or ""),
        )
    except (KeyError, TypeError, ValueError) as e:
        log_event(logger, "edge_cache_entry_corrupt", level="warning", error=str(e))
        return None


class ResponseCache:
    """Edge cache keyed by cache-key URL; entries are whole responses."""

    def __init__(self, store: BaseCache, ttl_seconds: Optional[int] = None):
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def match(self, key: str) -> Optional[httpx.Response]:
        data = await asyncio.to_thread(self.store.get, key)
        if data is None:
            return None
        return deserialize_response(data)

    async def put(self, key: str, response: httpx.Response) -> None:
        await asyncio.to_thread(
            self.store.set, key, serialize_response(response), self.ttl_seconds
        )


class EdgeRuntime:
    kv_store: KVStore
    response_cache: ResponseCache

    async def fetch(self, request: httpx.Request) -> httpx.Response:
        raise NotImplementedError

    def new_background_tasks(self) -> BackgroundTasks:
        return BackgroundTasks()


class HttpxEdgeRuntime(EdgeRuntime):
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        kv_store: Optional[KVStore] = None,
        response_cache: Optional[ResponseCache] = None,
    ):
        settings = get_settings()
        self.client = client
        self.kv_store = kv_store or KVStore(get_cache_store(settings.kv_prefix))
        self.response_cache = response_cache or ResponseCache(
            get_cache_store(settings.edge_cache_prefix),
            ttl_seconds=settings.edge_cache_ttl_seconds,
        )

    async def fetch(self, request: httpx.Request) -> httpx.Response:
        response = await self.client.send(request)
        log_event(
            logger,
            "edge_fetch",
            level="debug",
            method=request.method,
            url=str(request.url),
            status_code=response.status_code,
        )
        return response
