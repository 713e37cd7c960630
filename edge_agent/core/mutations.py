from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import httpx

from edge_agent.core.request_config import RequestConfiguration
from edge_agent.utils.cookies import build_cookie_header, parse_cookie_header, serialize_set_cookie
from edge_agent.utils.http_messages import copy_request, copy_response
from edge_agent.utils.settings import Settings


@dataclass(frozen=True)
class PendingMutations:
    """
    Headers and cookies carrying the visitor id and serialized decisions.
    Applied after the cache decision so cached bytes never include them.
    """

    request_headers: Tuple[Tuple[str, str], ...] = ()
    request_cookies: Tuple[Tuple[str, str], ...] = ()
    response_headers: Tuple[Tuple[str, str], ...] = ()
    response_cookies: Tuple[str, ...] = ()


def build_mutations(
    config: RequestConfiguration,
    settings: Settings,
    *,
    visitor_id: str,
    serialized_decisions: Optional[str],
    is_post: bool,
) -> PendingMutations:
    values = [(settings.visitor_id_header_name, settings.visitor_id_cookie_name, visitor_id)]
    if serialized_decisions:
        values.append(
            (settings.decisions_header_name, settings.decisions_cookie_name, serialized_decisions)
        )

    request_headers: Tuple[Tuple[str, str], ...] = ()
    request_cookies: Tuple[Tuple[str, str], ...] = ()
    # Forwarded requests only exist for GET; POST responses never reach the origin.
    if not is_post:
        if config.set_request_headers:
            request_headers = tuple((h, v) for h, _, v in values)
        if config.set_request_cookies:
            request_cookies = tuple((c, v) for _, c, v in values)

    response_headers = tuple((h, v) for h, _, v in values) if config.set_response_headers else ()
    response_cookies = (
        tuple(serialize_set_cookie(c, v) for _, c, v in values)
        if config.set_response_cookies
        else ()
    )
    return PendingMutations(
        request_headers=request_headers,
        request_cookies=request_cookies,
        response_headers=response_headers,
        response_cookies=response_cookies,
    )


def apply_request_mutations(
    request: httpx.Request,
    mutations: PendingMutations,
    *,
    url: Optional[str] = None,
    extra_headers: Optional[dict] = None,
) -> httpx.Request:
    set_headers = dict(mutations.request_headers)
    if mutations.request_cookies:
        cookies = parse_cookie_header(request.headers.get("cookie"))
        cookies.update(dict(mutations.request_cookies))
        set_headers["cookie"] = build_cookie_header(cookies)
    set_headers.update(extra_headers or {})
    return copy_request(request, url=url, set_headers=set_headers)


def apply_response_mutations(
    response: httpx.Response, mutations: PendingMutations
) -> httpx.Response:
    if not mutations.response_headers and not mutations.response_cookies:
        return response
    return copy_response(
        response,
        set_headers=dict(mutations.response_headers),
        append_headers=[("set-cookie", c) for c in mutations.response_cookies],
    )
