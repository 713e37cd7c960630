from __future__ import annotations

import logging
from typing import Optional, Sequence
from urllib.parse import urlsplit

from edge_agent.models.decisions import CdnVariationSettings, Decision
from edge_agent.utils.observability import log_event

logger = logging.getLogger(__name__)

_DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_url(url: str, *, ignore_query_parameters: bool = True) -> Optional[str]:
    """
    Comparable form of a URL: https origin + path, one trailing "/" removed.
    The query string is kept only when `ignore_query_parameters` is False.
    Returns None for values that are not absolute URLs.
    """
    try:
        parts = urlsplit(str(url or "").strip())
        if not parts.hostname:
            return None
        port = parts.port
    except ValueError:
        return None

    host = parts.hostname.lower()
    # Compared as https, so 443 is the default whatever the scheme was.
    if port and port not in {443, _DEFAULT_PORTS.get(parts.scheme.lower())}:
        host = f"{host}:{port}"
    path = parts.path or ""
    if path.endswith("/"):
        path = path[:-1]
    out = f"https://{host}{path}"
    if not ignore_query_parameters and parts.query:
        out = f"{out}?{parts.query}"
    return out


class CdnRoutingMatcher:
    """
    Pick the routing policy of the first decision whose experiment URL matches the request.

    `debug_flag_key` matches a decision by flag key without a URL match, for local
    experiment testing only; it is off unless the host passes one in.
    """

    def __init__(self, debug_flag_key: Optional[str] = None):
        self.debug_flag_key = debug_flag_key

    def find_matching_config(
        self,
        request_url: str,
        decisions: Sequence[Decision],
        ignore_query_parameters: bool = True,
    ) -> Optional[CdnVariationSettings]:
        target = normalize_url(request_url, ignore_query_parameters=ignore_query_parameters)
        for decision in decisions:
            settings = decision.cdn_variation_settings
            if settings is None:
                continue
            if self.debug_flag_key and decision.flag_key == self.debug_flag_key:
                log_event(
                    logger,
                    "cdn_routing_debug_match",
                    level="warning",
                    flag_key=decision.flag_key,
                    variation_key=decision.variation_key,
                )
                return settings
            if not settings.cdn_experiment_url or target is None:
                continue
            candidate = normalize_url(
                settings.cdn_experiment_url, ignore_query_parameters=ignore_query_parameters
            )
            if candidate is not None and candidate == target:
                log_event(
                    logger,
                    "cdn_routing_matched",
                    level="debug",
                    flag_key=decision.flag_key,
                    variation_key=decision.variation_key,
                    url=request_url,
                )
                return settings
        return None
