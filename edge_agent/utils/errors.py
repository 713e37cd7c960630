from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    # 4xx - Client errors
    INVALID_REQUEST = "E4000"
    ENDPOINT_NOT_FOUND = "E4040"

    # 5xx - Service errors
    SERVICE_ERROR = "E5000"
    DATAFILE_UNAVAILABLE = "E5001"
    DECISION_FAILED = "E5002"
    ORIGIN_FETCH_FAILED = "E5003"
    CACHE_UNAVAILABLE = "E5004"
    EVENT_DISPATCH_FAILED = "E5005"


class EdgeAgentError(Exception):
    """Base error for the edge agent."""

    code: ErrorCode = ErrorCode.SERVICE_ERROR
    status_code: int = 500


class InvalidRequestError(EdgeAgentError):
    """The request is missing something the operation needs."""

    code = ErrorCode.INVALID_REQUEST
    status_code = 400


class EndpointNotFoundError(EdgeAgentError):
    """No operation is mapped to the request method and path."""

    code = ErrorCode.ENDPOINT_NOT_FOUND


class DatafileError(EdgeAgentError):
    """The datafile could not be retrieved or parsed."""

    code = ErrorCode.DATAFILE_UNAVAILABLE


class DecisionError(EdgeAgentError):
    """The decision provider failed."""

    code = ErrorCode.DECISION_FAILED


class OriginFetchError(EdgeAgentError):
    """Fetching from the origin (or CDN response URL) failed."""

    code = ErrorCode.ORIGIN_FETCH_FAILED


class ForwardingLoopError(EdgeAgentError):
    """A request the edge already forwarded came back to it."""


class CacheError(EdgeAgentError):
    """Cache key generation or cache write failure."""

    code = ErrorCode.CACHE_UNAVAILABLE


class EventConsolidationError(EdgeAgentError):
    """Queued events could not be merged into one payload."""

    code = ErrorCode.EVENT_DISPATCH_FAILED


class EventDispatchError(EdgeAgentError):
    """The consolidated event could not be delivered."""

    code = ErrorCode.EVENT_DISPATCH_FAILED


def error_code_for_http_status(status_code: int) -> ErrorCode:
    if status_code == 404:
        return ErrorCode.ENDPOINT_NOT_FOUND
    if 400 <= int(status_code) < 500:
        return ErrorCode.INVALID_REQUEST
    return ErrorCode.SERVICE_ERROR


def build_error_payload(
    *,
    code: ErrorCode,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Canonical error body for every user-visible failure.

    `error` carries the message (older clients parse this key); `message` is an alias.
    """
    payload: Dict[str, Any] = {"code": code.value, "error": str(message), "message": str(message)}
    if details is not None:
        payload["details"] = details
    if request_id:
        payload["request_id"] = str(request_id)
    return payload
