from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from edge_agent.core.request_config import SOURCE_KV, RequestConfiguration
from edge_agent.services.runtime import EdgeRuntime
from edge_agent.utils.cache import BaseCache, InMemoryCache
from edge_agent.utils.errors import DatafileError
from edge_agent.utils.http_messages import is_success
from edge_agent.utils.observability import log_event
from edge_agent.utils.settings import Settings, get_settings

logger = logging.getLogger(__name__)

SOURCE_CDN = "CDN"
SOURCE_MEMORY = "memory"


def _parse(raw: Any) -> Dict[str, Any]:
    data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    if not isinstance(data, dict):
        raise ValueError("datafile must be a JSON object")
    return data


class DatafileSource:
    """
    Load the datafile for a request's SDK key.

    KV store first when DATAFILE_FROM_KV is requested (key = SDK key), then the URL built
    from DATAFILE_URL_TEMPLATE. Fetched datafiles are kept in a process-local TTL cache.
    """

    def __init__(
        self,
        runtime: EdgeRuntime,
        *,
        settings: Optional[Settings] = None,
        cache: Optional[BaseCache] = None,
    ):
        self.runtime = runtime
        self.settings = settings or get_settings()
        self.cache = cache or InMemoryCache()

    def datafile_url(self, sdk_key: str) -> str:
        return self.settings.datafile_url_template.format(sdk_key=sdk_key)

    async def load(self, config: RequestConfiguration) -> Tuple[Dict[str, Any], str]:
        """Return (datafile, where it came from)."""
        sdk_key = config.sdk_key
        if not sdk_key:
            raise DatafileError("An SDK key is required to retrieve the datafile.")

        if config.datafile_from_kv:
            try:
                raw = await self.runtime.kv_store.get(sdk_key)
            except Exception as e:
                log_event(logger, "datafile_kv_read_failed", level="warning", error=str(e))
                raw = None
            if raw:
                try:
                    return _parse(raw), SOURCE_KV
                except ValueError as e:
                    log_event(logger, "datafile_kv_invalid", level="warning", error=str(e))
            else:
                logger.warning("Datafile not found in KV store; falling back to CDN.")

        cached = self.cache.get(sdk_key)
        if isinstance(cached, dict):
            return cached, SOURCE_MEMORY

        url = self.datafile_url(sdk_key)
        try:
            response = await self.runtime.fetch(httpx.Request("GET", url))
        except httpx.HTTPError as e:
            log_event(logger, "datafile_fetch_failed", level="error", url=url, error=str(e))
            raise DatafileError(f"Datafile retrieval error: {e}") from e
        if not is_success(response):
            log_event(
                logger,
                "datafile_fetch_failed",
                level="error",
                url=url,
                status_code=response.status_code,
            )
            raise DatafileError(
                f"Datafile retrieval error: HTTP {response.status_code}"
            )
        try:
            datafile = _parse(response.content)
        except ValueError as e:
            raise DatafileError(f"Datafile retrieval error: {e}") from e

        self.cache.set(sdk_key, datafile, ttl_seconds=self.settings.datafile_cache_ttl_seconds)
        return datafile, SOURCE_CDN
