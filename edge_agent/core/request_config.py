"""
Per-request configuration resolved from headers, query parameters and the JSON body.

Every option has a canonical header name (configurable in Settings), a query parameter
name and a body key. A source *sets* an option when it supplies a value; the first source
that sets it wins, in the order headers -> query -> body -> default. When
PRIORITIZE_HEADERS_OVER_QUERY_PARAMS is off, query parameters are consulted first.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import httpx

from edge_agent.models.decisions import truthy
from edge_agent.utils.observability import log_event
from edge_agent.utils.settings import Settings, get_settings

logger = logging.getLogger(__name__)

SOURCE_HEADERS = "headers"
SOURCE_QUERY = "query"
SOURCE_BODY = "body"
SOURCE_INITIALIZATION = "initialization"
SOURCE_DEFAULT = "default"
SOURCE_KV = "KV Storage"

_UNSET = object()


@dataclass(frozen=True)
class JsonParseError:
    """Returned (not raised) by `parse_json` for malformed input."""

    raw: str
    error: str


def parse_boolean(value: Any, default: bool = False) -> bool:
    """True iff a string value lowercases to "true"; non-strings and None yield `default`."""
    if not isinstance(value, str):
        return default
    return value.strip().lower() == "true"


def parse_json(value: Optional[str]) -> Any:
    if value is None or not str(value).strip():
        return None
    try:
        return json.loads(value)
    except (TypeError, ValueError) as e:
        log_event(logger, "config_json_parse_failed", level="warning", error=str(e))
        return JsonParseError(raw=str(value), error=str(e))


def _split_keys(raw: Any) -> List[str]:
    if isinstance(raw, str):
        items = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        items = []
        for item in raw:
            if isinstance(item, str):
                items.extend(item.split(","))
    else:
        return []
    return [k.strip() for k in items if k and k.strip()]


def read_json_body(request: httpx.Request) -> Optional[Dict[str, Any]]:
    """JSON object body of a POST request, or None (wrong method/content type, empty, malformed)."""
    if request.method.upper() != "POST":
        return None
    if "application/json" not in (request.headers.get("content-type") or "").lower():
        return None
    raw = request.content
    if not raw or not raw.strip():
        return None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        log_event(logger, "config_body_parse_failed", level="warning", error=str(e))
        return None
    return data if isinstance(data, dict) else None


@dataclass(frozen=True)
class RequestConfiguration:
    sdk_key: Optional[str] = None
    visitor_id: Optional[str] = None
    flag_keys: Tuple[str, ...] = ()
    attributes: Optional[Dict[str, Any]] = None
    event_tags: Optional[Dict[str, Any]] = None
    event_key: Optional[str] = None
    decide_options: Tuple[str, ...] = ()
    forced_decisions: Tuple[Dict[str, Any], ...] = ()
    batch_operations: Tuple[Dict[str, Any], ...] = ()
    odp_event: Optional[Dict[str, Any]] = None

    override_visitor_id: bool = False
    override_cache: bool = False
    decide_all: bool = False
    trimmed_decisions: bool = True
    enabled_flags_only: bool = False
    include_reasons: bool = False
    exclude_variables: bool = False
    ignore_user_profile_service: bool = False
    disable_decision_event: bool = False
    enable_flags_from_kv: bool = False
    datafile_from_kv: bool = False
    enable_response_metadata: bool = False

    set_request_headers: bool = True
    set_response_headers: bool = True
    set_request_cookies: bool = True
    set_response_cookies: bool = True

    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def with_metadata(self, **entries: Any) -> "RequestConfiguration":
        """New configuration with extra metadata; a no-op unless metadata is enabled."""
        if not self.enable_response_metadata:
            return self
        merged = dict(self.metadata)
        merged.update(entries)
        return replace(self, metadata=MappingProxyType(merged))


# field, header setting name, query param, body key, default setting name (None -> False)
_BOOL_OPTIONS: Tuple[Tuple[str, Optional[str], str, str, Optional[str]], ...] = (
    ("override_visitor_id", "override_visitor_id_header", "overrideVisitorId", "overrideVisitorId", None),
    ("override_cache", "override_cache_header", "overrideCache", "overrideCache", None),
    ("decide_all", "decide_all_header", "decideAll", "decideAll", None),
    ("enable_flags_from_kv", "flags_from_kv_header", "enableFlagsFromKV", "enableFlagsFromKV", "flags_from_kv"),
    ("datafile_from_kv", "datafile_from_kv_header", "enableDatafileFromKV", "datafileFromKV", None),
    (
        "enable_response_metadata",
        "response_metadata_header",
        "enableResponseMetadata",
        "enableResponseMetadata",
        None,
    ),
    (
        "set_request_headers",
        "set_request_headers_header",
        "setRequestHeaders",
        "setRequestHeaders",
        "default_set_request_headers",
    ),
    (
        "set_response_headers",
        "set_response_headers_header",
        "setResponseHeaders",
        "setResponseHeaders",
        "default_set_response_headers",
    ),
    (
        "set_request_cookies",
        "set_request_cookies_header",
        "setRequestCookies",
        "setRequestCookies",
        "default_set_request_cookies",
    ),
    (
        "set_response_cookies",
        "set_response_cookies_header",
        "setResponseCookies",
        "setResponseCookies",
        "default_set_response_cookies",
    ),
)

# Toggles whose header-level value comes from the decide-options list.
# decide option, field, body key (the query parameter is the option name itself)
_DECIDE_OPTION_TOGGLES: Tuple[Tuple[str, str, str], ...] = (
    ("ENABLED_FLAGS_ONLY", "enabled_flags_only", "enabledFlagsOnly"),
    ("INCLUDE_REASONS", "include_reasons", "includeReasons"),
    ("EXCLUDE_VARIABLES", "exclude_variables", "excludeVariables"),
    ("IGNORE_USER_PROFILE_SERVICE", "ignore_user_profile_service", "ignoreUserProfileService"),
    ("DISABLE_DECISION_EVENT", "disable_decision_event", "disableDecisionEvent"),
)

# field, header setting name, query param, body key
_STRING_OPTIONS: Tuple[Tuple[str, str, str, str], ...] = (
    ("sdk_key", "sdk_key_header", "sdkKey", "sdkKey"),
    ("visitor_id", "visitor_id_header", "visitorId", "visitorId"),
    ("event_key", "event_key_header", "eventKey", "eventKey"),
)

_METADATA_NAMES = {
    "sdk_key": "sdkKey",
    "visitor_id": "visitorId",
    "flag_keys": "flagKeys",
    "attributes": "attributes",
    "event_tags": "eventTags",
    "event_key": "eventKey",
    "decide_options": "decideOptions",
    "trimmed_decisions": "trimmedDecisions",
}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p[:1].upper() + p[1:] for p in rest)


class ConfigResolver:
    """Merge headers, query parameters and body into one immutable `RequestConfiguration`."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def _ordered(
        self,
        header: Callable[[], Any],
        query: Callable[[], Any],
        body: Callable[[], Any],
    ) -> Tuple[Any, Optional[str]]:
        if self.settings.prioritize_headers_over_query_params:
            candidates = ((SOURCE_HEADERS, header), (SOURCE_QUERY, query), (SOURCE_BODY, body))
        else:
            candidates = ((SOURCE_QUERY, query), (SOURCE_HEADERS, header), (SOURCE_BODY, body))
        for source, getter in candidates:
            value = getter()
            if value is not _UNSET:
                return value, source
        return _UNSET, None

    def resolve(self, request: httpx.Request) -> RequestConfiguration:
        settings = self.settings
        headers = request.headers
        params = request.url.params
        body = read_json_body(request) or {}

        def header_value(setting_name: str) -> Optional[str]:
            return headers.get(getattr(settings, setting_name))

        values: Dict[str, Any] = {}
        sources: Dict[str, str] = {}

        def put(name: str, value: Any, source: Optional[str]) -> None:
            values[name] = value
            if source:
                sources[name] = source

        # Strings
        for name, header_name, query_name, body_key in _STRING_OPTIONS:
            value, source = self._ordered(
                lambda h=header_name: _string_or_unset(header_value(h)),
                lambda q=query_name: _string_or_unset(params.get(q)),
                lambda b=body_key: _string_or_unset(body.get(b)),
            )
            if value is not _UNSET:
                put(name, value, source)
        if "sdk_key" not in values and settings.default_sdk_key:
            put("sdk_key", settings.default_sdk_key, SOURCE_INITIALIZATION)

        # JSON fragments
        for name, header_name, body_key in (
            ("attributes", "attributes_header", "attributes"),
            ("event_tags", "event_tags_header", "eventTags"),
        ):
            value, source = self._ordered(
                lambda h=header_name: _json_object_or_unset(header_value(h)),
                lambda: _UNSET,
                lambda b=body_key: body[b] if isinstance(body.get(b), dict) else _UNSET,
            )
            if value is not _UNSET:
                put(name, value, source)

        parsed_options = _json_list_or_unset(header_value("decide_options_header"))
        header_options = set(parsed_options) if parsed_options is not _UNSET else set()
        decide_options, source = self._ordered(
            lambda: parsed_options,
            lambda: _UNSET,
            lambda: [str(o) for o in body["decideOptions"]]
            if isinstance(body.get("decideOptions"), list)
            else _UNSET,
        )
        if decide_options is not _UNSET:
            put("decide_options", tuple(decide_options), source)

        # Flag keys
        flag_keys, source = self._ordered(
            lambda: _keys_or_unset(header_value("flag_keys_header")),
            lambda: _keys_or_unset(params.get_list("keys")),
            lambda: _keys_or_unset(body.get("flagKeys")),
        )
        if flag_keys is not _UNSET:
            put("flag_keys", tuple(flag_keys), source)

        # Booleans
        for name, header_name, query_name, body_key, default_name in _BOOL_OPTIONS:
            value, source = self._ordered(
                lambda h=header_name: _bool_or_unset(header_value(h)),
                lambda q=query_name: _bool_or_unset(params.get(q)),
                lambda b=body_key: truthy(body[b]) if b in body else _UNSET,
            )
            if value is _UNSET:
                value = bool(getattr(settings, default_name)) if default_name else False
                source = SOURCE_DEFAULT
            put(name, value, source)

        for option, name, body_key in _DECIDE_OPTION_TOGGLES:
            value, source = self._ordered(
                lambda o=option: True if o in header_options else _UNSET,
                lambda o=option: _bool_or_unset(params.get(o)),
                lambda b=body_key: truthy(body[b]) if b in body else _UNSET,
            )
            if value is _UNSET:
                value, source = False, SOURCE_DEFAULT
            put(name, value, source)

        # Trimming is tri-state: only an explicit "true"/"false" sets it.
        trimmed, source = self._ordered(
            lambda: _strict_bool_or_unset(header_value("trimmed_decisions_header")),
            lambda: _strict_bool_or_unset(params.get("trimmedDecisions")),
            lambda: (body["trimmedDecisions"] is not False) if "trimmedDecisions" in body else _UNSET,
        )
        if trimmed is _UNSET:
            trimmed, source = bool(settings.default_trimmed_decisions), SOURCE_DEFAULT
        put("trimmed_decisions", trimmed, source)

        # Body-only inputs
        forced = body.get("forcedDecisions")
        if isinstance(forced, list):
            put("forced_decisions", tuple(d for d in forced if isinstance(d, dict)), SOURCE_BODY)
        operations = body.get("operations")
        if isinstance(operations, list):
            put("batch_operations", tuple(o for o in operations if isinstance(o, dict)), SOURCE_BODY)
        if isinstance(body.get("odpEvent"), dict):
            put("odp_event", body["odpEvent"], SOURCE_BODY)

        metadata: Dict[str, Any] = {}
        if values.get("enable_response_metadata"):
            for name, source in sources.items():
                metadata[f"{_METADATA_NAMES.get(name, _camel(name))}From"] = source
            if values.get("sdk_key"):
                metadata["sdkKey"] = values["sdk_key"]
            for name in ("attributes", "event_tags", "decide_options"):
                if values.get(name):
                    value = values[name]
                    metadata[_METADATA_NAMES[name]] = list(value) if isinstance(value, tuple) else value

        config = RequestConfiguration(**values, metadata=MappingProxyType(metadata))
        log_event(
            logger,
            "request_config_resolved",
            level="debug",
            method=request.method,
            url=str(request.url),
            sources=sources,
        )
        return config


def _string_or_unset(value: Any) -> Any:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return _UNSET


def _bool_or_unset(value: Optional[str]) -> Any:
    if value is None:
        return _UNSET
    return parse_boolean(value)


def _strict_bool_or_unset(value: Optional[str]) -> Any:
    if value is None:
        return _UNSET
    lowered = value.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    return _UNSET


def _json_object_or_unset(raw: Optional[str]) -> Any:
    parsed = parse_json(raw)
    return parsed if isinstance(parsed, dict) else _UNSET


def _json_list_or_unset(raw: Optional[str]) -> Any:
    parsed = parse_json(raw)
    if isinstance(parsed, list):
        return [str(o) for o in parsed]
    return _UNSET


def _keys_or_unset(raw: Any) -> Any:
    keys = _split_keys(raw)
    return keys if keys else _UNSET
