from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar

from fastapi import Request

from edge_agent.utils.observability import get_request_id_from_headers, log_event

logger = logging.getLogger(__name__)

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    return request_id_var.get() or ""


def request_id_for(request: Request) -> str | None:
    return getattr(getattr(request, "state", None), "request_id", None) or (
        get_request_id_from_headers(request.headers)
    )


async def request_context_middleware(request: Request, call_next):
    """
    Request context middleware:
    - Ensure request_id exists and is echoed via X-Request-Id.
    - Provide a contextvar for downstream logs.
    """
    request_id = request_id_for(request)
    if not request_id:
        request_id = f"req_{uuid.uuid4().hex[:12]}"

    token_rid = request_id_var.set(str(request_id))
    try:
        request.state.request_id = str(request_id)
        response = await call_next(request)
        response.headers["X-Request-Id"] = str(request_id)
        log_event(
            logger,
            "http_request",
            level="debug",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=getattr(response, "status_code", 0),
        )
        return response
    finally:
        request_id_var.reset(token_rid)
