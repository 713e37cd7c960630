from __future__ import annotations

import json
import time
import logging
import inspect
from functools import wraps
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit
from typing import Any, Dict, Optional

_MAX_LOG_STR = 2000


def _safe_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        if len(value) > _MAX_LOG_STR:
            return value[:_MAX_LOG_STR] + "..."
        return value
    if isinstance(value, (int, float, bool)):
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_safe_value(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    try:
        return str(value)
    except Exception:
        return repr(value)


def redact_url(
    url: str,
    *,
    redact_params: tuple[str, ...] = (
        "sdkkey",
        "access_token",
        "accesstoken",
        "authorization",
        "token",
        "sig",
        "signature",
    ),
) -> str:
    """
    Redact sensitive query params from a URL for logging.
    SDK keys count as secrets here: anyone holding one can pull the project's datafile.
    Never raises; returns a best-effort sanitized URL.
    """
    try:
        s = str(url or "").strip()
        if not s:
            return s
        parts = urlsplit(s)
        if not parts.query:
            return s
        redact_set = {p.lower() for p in redact_params}
        q = []
        for k, v in parse_qsl(parts.query, keep_blank_values=True):
            if str(k).lower() in redact_set:
                q.append((k, "***"))
            else:
                q.append((k, v))
        new_query = urlencode(q, doseq=True)
        return urlunsplit(
            (parts.scheme, parts.netloc, parts.path, new_query, parts.fragment)
        )
    except Exception:
        try:
            return str(url)
        except Exception:
            return ""


def log_event(logger, event: str, *, level: str = "info", **fields: Any) -> None:
    """
    Emit a single-line JSON log with a stable `event` key.
    This is best-effort and must never raise.
    """
    try:
        payload: Dict[str, Any] = {"event": event}
        for k, v in fields.items():
            if v is None:
                continue
            if str(k) == "url":
                v = redact_url(str(v))
            payload[str(k)] = _safe_value(v)
        line = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        fn = getattr(logger, level, None) or getattr(logger, "info", None)
        if fn:
            fn(line)
    except Exception:
        return


def trace_span(name: str) -> Any:
    """
    Lightweight tracing decorator for coroutine functions.
    Emits trace_start/trace_end events via log_event.
    """

    def decorator(fn):
        logger = logging.getLogger(fn.__module__)
        if not inspect.iscoroutinefunction(fn):
            raise TypeError("trace_span only wraps coroutine functions")

        @wraps(fn)
        async def async_wrapper(*args, **kwargs):
            start = time.monotonic()
            log_event(logger, "trace_start", level="debug", span=name)
            try:
                result = await fn(*args, **kwargs)
            except Exception as e:
                log_event(
                    logger,
                    "trace_end",
                    level="warning",
                    span=name,
                    elapsed_ms=int((time.monotonic() - start) * 1000),
                    error_type=e.__class__.__name__,
                    error=str(e),
                )
                raise
            log_event(
                logger,
                "trace_end",
                level="debug",
                span=name,
                elapsed_ms=int((time.monotonic() - start) * 1000),
            )
            return result

        return async_wrapper

    return decorator


def get_request_id_from_headers(headers: Any) -> Optional[str]:
    """
    Extract a correlation id from common headers.
    - X-Request-Id / X-Request-ID
    - X-Correlation-Id
    - CF-Ray (set by Cloudflare in front of the agent)
    Returns stripped string or None.
    """
    try:
        for key in ("x-request-id", "x-correlation-id", "cf-ray"):
            v = headers.get(key) if hasattr(headers, "get") else None
            if not v:
                continue
            s = str(v).strip()
            if s:
                return s
    except Exception:
        return None
    return None
