from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

SUPPORTED_EVENTS = (
    "beforeProcessingRequest",
    "afterProcessingRequest",
    "afterReadingCookie",
    "beforeDecide",
    "afterDecide",
    "beforeCreateCacheKey",
    "afterReadingCache",
    "beforeRequest",
    "beforeCacheResponse",
    "afterCacheResponse",
    "beforeResponse",
    "afterResponse",
    "beforeDispatchingEvents",
    "afterDispatchingEvents",
)


class EventListenerRegistry:
    """
    Hooks into the request pipeline, constructed by the host and passed in.

    A listener may be sync or async. When it returns a dict, the pipeline reads the keys it
    understands for that event (e.g. `modifiedResponse`, `cacheKey`); later listeners'
    keys override earlier ones. Listener exceptions propagate to the caller.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Callable[..., Any]]] = {e: [] for e in SUPPORTED_EVENTS}

    def on(self, event: str, listener: Callable[..., Any]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Event {event} not supported")
        self._listeners[event].append(listener)

    async def trigger(self, event: str, *args: Any) -> Dict[str, Any]:
        combined: Dict[str, Any] = {}
        listeners = self._listeners.get(event, ())
        if listeners:
            logger.debug("Triggering %s (%d listeners)", event, len(listeners))
        for listener in listeners:
            result = listener(*args)
            if inspect.isawaitable(result):
                result = await result
            if isinstance(result, dict):
                combined.update(result)
        return combined
