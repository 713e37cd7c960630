from __future__ import annotations

import httpx

from edge_agent.core.request_config import (
    SOURCE_BODY,
    SOURCE_DEFAULT,
    SOURCE_HEADERS,
    SOURCE_INITIALIZATION,
    SOURCE_QUERY,
    ConfigResolver,
    JsonParseError,
    parse_boolean,
    parse_json,
    read_json_body,
)
from edge_agent.utils.settings import Settings


def _resolve(request: httpx.Request, settings: Settings | None = None):
    return ConfigResolver(settings or Settings()).resolve(request)


def test_parse_boolean_only_accepts_true_strings() -> None:
    assert parse_boolean("true") is True
    assert parse_boolean(" TRUE ") is True
    assert parse_boolean("yes") is False
    assert parse_boolean(None) is False
    assert parse_boolean(None, default=True) is True
    assert parse_boolean(1, default=True) is True


def test_parse_json_returns_marker_for_malformed_input() -> None:
    assert parse_json('{"a": 1}') == {"a": 1}
    assert parse_json("") is None
    bad = parse_json("{not json")
    assert isinstance(bad, JsonParseError)
    assert bad.raw == "{not json"


def test_read_json_body_requires_post_and_json_content_type() -> None:
    post = httpx.Request("POST", "https://edge.example.com/v1/decide", json={"visitorId": "v"})
    assert read_json_body(post) == {"visitorId": "v"}

    text = httpx.Request(
        "POST",
        "https://edge.example.com/v1/decide",
        content=b'{"visitorId": "v"}',
        headers={"content-type": "text/plain"},
    )
    assert read_json_body(text) is None

    array = httpx.Request("POST", "https://edge.example.com/v1/decide", json=[1, 2])
    assert read_json_body(array) is None

    assert read_json_body(httpx.Request("GET", "https://edge.example.com/")) is None


def test_headers_win_over_query_by_default() -> None:
    req = httpx.Request(
        "GET",
        "https://edge.example.com/page?visitorId=from-query&enableResponseMetadata=true",
        headers={"X-Edge-Visitor-Id": "from-header"},
    )
    cfg = _resolve(req)
    assert cfg.visitor_id == "from-header"
    assert cfg.metadata["visitorIdFrom"] == SOURCE_HEADERS
    assert cfg.metadata["enableResponseMetadataFrom"] == SOURCE_QUERY


def test_query_wins_when_header_priority_is_disabled(monkeypatch) -> None:
    monkeypatch.setenv("PRIORITIZE_HEADERS_OVER_QUERY_PARAMS", "false")
    req = httpx.Request(
        "GET",
        "https://edge.example.com/page?visitorId=from-query",
        headers={"X-Edge-Visitor-Id": "from-header"},
    )
    assert _resolve(req).visitor_id == "from-query"


def test_a_present_false_value_still_wins() -> None:
    req = httpx.Request(
        "GET",
        "https://edge.example.com/page?setResponseCookies=true",
        headers={"X-Edge-Set-Response-Cookies": "false"},
    )
    assert _resolve(req).set_response_cookies is False


def test_body_values_apply_when_headers_and_query_are_silent() -> None:
    req = httpx.Request(
        "POST",
        "https://edge.example.com/v1/decide",
        json={
            "sdkKey": "body-key",
            "visitorId": "body-visitor",
            "flagKeys": ["hero", "banner"],
            "attributes": {"plan": "pro"},
            "decideOptions": ["EXCLUDE_VARIABLES"],
            "excludeVariables": True,
            "forcedDecisions": [{"flagKey": "hero", "variationKey": "treatment"}, "junk"],
            "enableResponseMetadata": True,
        },
    )
    cfg = _resolve(req)
    assert cfg.sdk_key == "body-key"
    assert cfg.visitor_id == "body-visitor"
    assert cfg.flag_keys == ("hero", "banner")
    assert cfg.attributes == {"plan": "pro"}
    assert cfg.decide_options == ("EXCLUDE_VARIABLES",)
    assert cfg.exclude_variables is True
    assert cfg.forced_decisions == ({"flagKey": "hero", "variationKey": "treatment"},)
    assert cfg.metadata["flagKeysFrom"] == SOURCE_BODY
    assert cfg.metadata["attributes"] == {"plan": "pro"}
    assert cfg.metadata["sdkKey"] == "body-key"


def test_header_beats_query_beats_body_on_one_post() -> None:
    url = "https://edge.example.com/v1/decide?visitorId=from-query&enableResponseMetadata=true"
    body = {"sdkKey": "k", "visitorId": "from-body"}

    all_three = httpx.Request("POST", url, json=body, headers={"X-Edge-Visitor-Id": "from-header"})
    cfg = _resolve(all_three)
    assert cfg.visitor_id == "from-header"
    assert cfg.metadata["visitorIdFrom"] == SOURCE_HEADERS

    no_header = httpx.Request("POST", url, json=body)
    cfg = _resolve(no_header)
    assert cfg.visitor_id == "from-query"
    assert cfg.metadata["visitorIdFrom"] == SOURCE_QUERY


def test_flag_keys_from_header_and_repeated_query_params() -> None:
    header_req = httpx.Request(
        "GET", "https://edge.example.com/", headers={"X-Edge-Flag-Keys": "a, b,,c"}
    )
    assert _resolve(header_req).flag_keys == ("a", "b", "c")

    query_req = httpx.Request("GET", "https://edge.example.com/?keys=a,b&keys=c")
    assert _resolve(query_req).flag_keys == ("a", "b", "c")


def test_decide_options_header_sets_toggles() -> None:
    req = httpx.Request(
        "GET",
        "https://edge.example.com/",
        headers={"X-Edge-Decide-Options": '["ENABLED_FLAGS_ONLY", "INCLUDE_REASONS"]'},
    )
    cfg = _resolve(req)
    assert cfg.decide_options == ("ENABLED_FLAGS_ONLY", "INCLUDE_REASONS")
    assert cfg.enabled_flags_only is True
    assert cfg.include_reasons is True
    assert cfg.exclude_variables is False


def test_malformed_json_headers_are_ignored() -> None:
    req = httpx.Request(
        "GET",
        "https://edge.example.com/",
        headers={"X-Edge-Attributes": "{oops", "X-Edge-Decide-Options": "nope"},
    )
    cfg = _resolve(req)
    assert cfg.attributes is None
    assert cfg.decide_options == ()


def test_trimmed_decisions_only_changes_on_explicit_true_or_false(monkeypatch) -> None:
    base = "https://edge.example.com/"
    assert _resolve(httpx.Request("GET", base)).trimmed_decisions is True
    unclear = httpx.Request("GET", base, headers={"X-Edge-Trimmed-Decisions": "yes"})
    assert _resolve(unclear).trimmed_decisions is True
    off = httpx.Request("GET", base, headers={"X-Edge-Trimmed-Decisions": "false"})
    assert _resolve(off).trimmed_decisions is False
    off_with_query_on = httpx.Request(
        "GET", f"{base}?trimmedDecisions=true", headers={"X-Edge-Trimmed-Decisions": "false"}
    )
    assert _resolve(off_with_query_on).trimmed_decisions is False

    monkeypatch.setenv("DEFAULT_TRIMMED_DECISIONS", "false")
    assert _resolve(httpx.Request("GET", base)).trimmed_decisions is False


def test_sdk_key_falls_back_to_initialization_default(monkeypatch) -> None:
    monkeypatch.setenv("DEFAULT_SDK_KEY", "init-key")
    req = httpx.Request("GET", "https://edge.example.com/?enableResponseMetadata=true")
    cfg = _resolve(req)
    assert cfg.sdk_key == "init-key"
    assert cfg.metadata["sdkKeyFrom"] == SOURCE_INITIALIZATION
    assert cfg.metadata["overrideCacheFrom"] == SOURCE_DEFAULT


def test_metadata_stays_empty_unless_enabled() -> None:
    req = httpx.Request("GET", "https://edge.example.com/", headers={"X-Edge-SDK-Key": "k"})
    cfg = _resolve(req)
    assert dict(cfg.metadata) == {}
    assert cfg.with_metadata(visitorId="v") is cfg


def test_with_metadata_returns_a_new_configuration() -> None:
    req = httpx.Request("GET", "https://edge.example.com/?enableResponseMetadata=true")
    cfg = _resolve(req)
    updated = cfg.with_metadata(visitorIdFrom="cookie-visitor")
    assert updated is not cfg
    assert updated.metadata["visitorIdFrom"] == "cookie-visitor"
    assert "visitorIdFrom" not in cfg.metadata
