from __future__ import annotations

import json
import logging
import uuid
from typing import Iterable, List, Optional, Tuple
from urllib.parse import quote, unquote

import httpx

from edge_agent.core.request_config import RequestConfiguration
from edge_agent.models.decisions import StoredDecision, StoredDecisionSet
from edge_agent.utils.cookies import get_cookie_value
from edge_agent.utils.observability import log_event
from edge_agent.utils.settings import Settings, get_settings

logger = logging.getLogger(__name__)

SOURCE_OVERRIDE = "override-visitor"
SOURCE_REQUEST = "request-visitor"
SOURCE_COOKIE = "cookie-visitor"
SOURCE_GENERATED = "cdn-generated-visitor"

# Legacy compact form: flag:variation:rule&flag:variation:rule
_LEGACY_ITEM_DELIMITER = "&"
_LEGACY_FIELD_DELIMITER = ":"


def encode_stored_decisions(decisions: Iterable[StoredDecision]) -> Optional[str]:
    """Compact JSON array, URL-quoted so it is safe as a cookie or header value."""
    items = [d.to_dict() for d in decisions]
    if not items:
        return None
    return quote(json.dumps(items, separators=(",", ":")), safe="")


def decode_stored_decisions(raw: Optional[str]) -> List[StoredDecision]:
    """
    Decode the decisions cookie/header value.
    Raises ValueError when the value is neither the JSON form nor the legacy form.
    """
    if not raw:
        return []
    text = unquote(raw.strip())
    if len(text) >= 2 and text.startswith('"') and text.endswith('"'):
        text = text[1:-1]
    if not text:
        return []

    if text.startswith("["):
        data = json.loads(text)
        if not isinstance(data, list):
            raise ValueError("stored decisions must be a JSON array")
        out: List[StoredDecision] = []
        for item in data:
            if not isinstance(item, dict) or not item.get("flagKey"):
                continue
            out.append(
                StoredDecision(
                    flag_key=str(item["flagKey"]),
                    variation_key=item.get("variationKey"),
                    rule_key=item.get("ruleKey"),
                )
            )
        return out

    out = []
    for item in text.split(_LEGACY_ITEM_DELIMITER):
        parts = item.split(_LEGACY_FIELD_DELIMITER)
        if len(parts) != 3 or not parts[0]:
            raise ValueError(f"malformed stored decision: {item!r}")
        out.append(StoredDecision(flag_key=parts[0], variation_key=parts[1], rule_key=parts[2]))
    return out


def partition_stored_decisions(
    saved: Iterable[StoredDecision], active_flags: Iterable[str]
) -> StoredDecisionSet:
    active = set(active_flags)
    saved = tuple(saved)
    return StoredDecisionSet(
        saved=saved,
        valid=tuple(d for d in saved if d.flag_key in active),
        invalid=tuple(d for d in saved if d.flag_key not in active),
    )


class VisitorIdentity:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def resolve(self, request: httpx.Request, config: RequestConfiguration) -> Tuple[str, str]:
        """Return (visitor_id, source)."""
        if config.override_visitor_id:
            return str(uuid.uuid4()), SOURCE_OVERRIDE
        if config.visitor_id:
            return config.visitor_id, SOURCE_REQUEST
        cookie_value = get_cookie_value(
            request.headers.get("cookie"), self.settings.visitor_id_cookie_name
        )
        if cookie_value:
            return cookie_value, SOURCE_COOKIE
        return str(uuid.uuid4()), SOURCE_GENERATED

    def read_stored_decisions(
        self, request: httpx.Request, active_flags: Iterable[str]
    ) -> StoredDecisionSet:
        """
        Stored decisions are a GET convenience: POST requests never read them.
        A malformed cookie is logged and treated as empty.
        """
        if request.method.upper() == "POST":
            return StoredDecisionSet()
        raw = get_cookie_value(
            request.headers.get("cookie"), self.settings.decisions_cookie_name
        ) or request.headers.get(self.settings.decisions_header_name)
        if not raw:
            return StoredDecisionSet()
        try:
            saved = decode_stored_decisions(raw)
        except ValueError as e:
            log_event(logger, "stored_decisions_malformed", level="warning", error=str(e))
            return StoredDecisionSet()

        stored = partition_stored_decisions(saved, active_flags)
        if stored.invalid:
            log_event(
                logger,
                "stored_decisions_invalid",
                flag_keys=[d.flag_key for d in stored.invalid],
            )
        return stored
