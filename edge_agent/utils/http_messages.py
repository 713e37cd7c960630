"""
Helpers for building and copying httpx Request/Response objects.

httpx decodes bodies on read, so a copied response must not keep the upstream
Content-Encoding/Content-Length; httpx recomputes the length from the new content.
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Mapping, Optional, Tuple

import httpx

_DROP_RESPONSE_HEADERS = {"content-encoding", "content-length", "transfer-encoding"}
_DROP_FORWARD_HEADERS = {"host", "content-length", "transfer-encoding", "connection"}


def json_response(payload: Any, status_code: int = 200) -> httpx.Response:
    body = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return httpx.Response(
        status_code,
        headers={"content-type": "application/json"},
        content=body,
    )


def copy_response(
    response: httpx.Response,
    *,
    set_headers: Optional[Mapping[str, str]] = None,
    append_headers: Iterable[Tuple[str, str]] = (),
) -> httpx.Response:
    """Detached copy of `response` with headers replaced (`set_headers`) or added (`append_headers`)."""
    replace = {k.lower() for k in (set_headers or {})}
    headers = [
        (k, v)
        for k, v in response.headers.multi_items()
        if k.lower() not in _DROP_RESPONSE_HEADERS and k.lower() not in replace
    ]
    headers.extend((set_headers or {}).items())
    headers.extend(append_headers)
    return httpx.Response(
        response.status_code,
        headers=headers,
        content=response.content,
    )


def copy_request(
    request: httpx.Request,
    *,
    url: Optional[str] = None,
    set_headers: Optional[Mapping[str, str]] = None,
) -> httpx.Request:
    """Copy of `request` (optionally retargeted at `url`) with headers replaced."""
    replace = {k.lower() for k in (set_headers or {})}
    headers = [
        (k, v)
        for k, v in request.headers.multi_items()
        if k.lower() not in _DROP_FORWARD_HEADERS and k.lower() not in replace
    ]
    headers.extend((set_headers or {}).items())
    content = request.content if request.method.upper() not in {"GET", "HEAD"} else None
    return httpx.Request(
        request.method,
        url or request.url,
        headers=headers,
        content=content,
    )


def origin_target(url: httpx.URL, origin_url: Optional[str]) -> str:
    """`url` with its scheme and host swapped for ORIGIN_URL's; unchanged when none is set."""
    if not origin_url:
        return str(url)
    origin = httpx.URL(origin_url)
    return str(url.copy_with(scheme=origin.scheme, host=origin.host, port=origin.port))


def is_success(response: httpx.Response) -> bool:
    return 200 <= int(response.status_code) < 300
