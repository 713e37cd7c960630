"""
HTTP surface of the edge agent.

Every GET/POST that is not `/healthz` is handed to the pipeline as an `httpx.Request`;
the pipeline's `httpx.Response` is copied back out and its background work (cache writes,
event flush) runs after the response has been sent.
"""

from __future__ import annotations

import logging

import httpx
from fastapi import APIRouter, Request, Response

from edge_agent.api.middleware.request_context import get_request_id
from edge_agent.core.pipeline import EdgePipeline, ProcessResult

logger = logging.getLogger(__name__)

router = APIRouter()

_SKIP_OUTBOUND_HEADERS = {"content-encoding", "content-length", "transfer-encoding"}


async def to_edge_request(request: Request) -> httpx.Request:
    headers = list(request.headers.raw)
    request_id = get_request_id()
    if request_id and "x-request-id" not in request.headers:
        headers.append((b"x-request-id", request_id.encode("latin-1")))
    body = await request.body()
    return httpx.Request(
        request.method,
        str(request.url),
        headers=headers,
        content=body or None,
    )


def to_starlette_response(result: ProcessResult) -> Response:
    edge_response = result.response
    response = Response(
        content=edge_response.content,
        status_code=edge_response.status_code,
        background=result.background if len(result.background) else None,
    )
    # Starlette fills in content-length itself; keep repeated headers such as Set-Cookie.
    response.raw_headers = [
        (k, v) for k, v in response.raw_headers if k.lower() == b"content-length"
    ]
    for key, value in edge_response.headers.multi_items():
        if key.lower() in _SKIP_OUTBOUND_HEADERS:
            continue
        response.raw_headers.append((key.lower().encode("latin-1"), value.encode("latin-1")))
    return response


@router.get("/healthz")
async def healthz():
    return {"status": "ok"}


@router.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
async def edge_entrypoint(request: Request, path: str):  # noqa: ARG001
    pipeline: EdgePipeline = request.app.state.pipeline
    edge_request = await to_edge_request(request)
    result = await pipeline.process_request(edge_request)
    return to_starlette_response(result)
