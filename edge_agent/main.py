import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from edge_agent.api import edge
from edge_agent.api.middleware.request_context import (
    request_context_middleware,
    request_id_for,
)
from edge_agent.core.listeners import EventListenerRegistry
from edge_agent.core.pipeline import EdgePipeline
from edge_agent.services.runtime import HttpxEdgeRuntime
from edge_agent.utils.errors import (
    EdgeAgentError,
    ErrorCode,
    build_error_payload,
    error_code_for_http_status,
)
from edge_agent.utils.logging_setup import (
    configure_level,
    setup_file_logging,
    silence_noisy_loggers,
)
from edge_agent.utils.settings import get_settings

logger = logging.getLogger(__name__)


def build_default_pipeline(listeners: Optional[EventListenerRegistry] = None) -> EdgePipeline:
    settings = get_settings()
    client = httpx.AsyncClient(timeout=settings.fetch_timeout_seconds, follow_redirects=False)
    return EdgePipeline(HttpxEdgeRuntime(client), settings=settings, listeners=listeners)


def create_app(
    pipeline: Optional[EdgePipeline] = None,
    listeners: Optional[EventListenerRegistry] = None,
) -> FastAPI:
    settings = get_settings()
    if pipeline is None:
        pipeline = build_default_pipeline(listeners)

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ARG001
        level = configure_level(settings.log_level)
        silence_noisy_loggers()
        if settings.log_to_file:
            setup_file_logging(log_file_path=str(settings.log_file_path), level=level)
        yield
        client = getattr(pipeline.runtime, "client", None)
        if isinstance(client, httpx.AsyncClient):
            await client.aclose()

    app = FastAPI(title="Edge Agent", version="1.0.0", lifespan=lifespan)
    app.state.pipeline = pipeline
    app.middleware("http")(request_context_middleware)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        code = error_code_for_http_status(int(exc.status_code))
        payload = {"detail": exc.detail}
        payload.update(
            build_error_payload(
                code=code,
                message=str(exc.detail),
                request_id=request_id_for(request),
            )
        )
        return JSONResponse(status_code=int(exc.status_code), content=payload)

    @app.exception_handler(EdgeAgentError)
    async def _edge_exception_handler(request: Request, exc: EdgeAgentError):
        logger.warning("Edge agent error: %s", exc)
        payload = build_error_payload(
            code=exc.code,
            message=str(exc),
            request_id=request_id_for(request),
        )
        return JSONResponse(status_code=int(exc.status_code), content=payload)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception: %s", exc, exc_info=True)
        payload = build_error_payload(
            code=ErrorCode.SERVICE_ERROR,
            message="Internal server error",
            request_id=request_id_for(request),
        )
        return JSONResponse(status_code=500, content=payload)

    app.include_router(edge.router)
    return app


app = create_app()
