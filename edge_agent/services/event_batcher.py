from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Optional

import httpx

from edge_agent.core.listeners import EventListenerRegistry
from edge_agent.services.runtime import EdgeRuntime
from edge_agent.utils.errors import EventConsolidationError, EventDispatchError
from edge_agent.utils.http_messages import is_success
from edge_agent.utils.observability import log_event

logger = logging.getLogger(__name__)


class EventBatcher:
    """
    Per-request queue of analytics events, sent as one POST after the response.

    Delivery is at-most-once: the queue is cleared after every flush attempt and failures
    are logged, never retried.
    """

    def __init__(
        self,
        runtime: EdgeRuntime,
        *,
        listeners: Optional[EventListenerRegistry] = None,
    ):
        self.runtime = runtime
        self.listeners = listeners or EventListenerRegistry()
        self._queue: List[Dict[str, Any]] = []

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def pending(self) -> List[Dict[str, Any]]:
        return list(self._queue)

    def enqueue(self, event: Dict[str, Any]) -> None:
        self._queue.append(event)

    def consolidate(self) -> Optional[Dict[str, Any]]:
        """Merge every queued event's `visitors` into a copy of the first event."""
        if not self._queue:
            return None
        base = copy.deepcopy(self._queue[0])
        visitors = base.get("visitors")
        base["visitors"] = list(visitors) if isinstance(visitors, list) else []
        for index, event in enumerate(self._queue[1:], start=1):
            more = event.get("visitors") if isinstance(event, dict) else None
            if not isinstance(more, list):
                raise EventConsolidationError(f"Queued event {index} has no visitors array")
            base["visitors"].extend(more)
        return base

    async def flush(self, endpoint: str) -> bool:
        """POST the consolidated event once. Returns True when the endpoint answered 2xx."""
        if not self._queue:
            return False
        queued = len(self._queue)
        try:
            event = self.consolidate()
            url = endpoint
            result = await self.listeners.trigger("beforeDispatchingEvents", url, event)
            url = result.get("modifiedUrl") or url
            event = result.get("modifiedEvents") or event

            request = httpx.Request("POST", url, json=event)
            response = await self.runtime.fetch(request)
            if not is_success(response):
                raise EventDispatchError(
                    f"Event endpoint returned HTTP {response.status_code}"
                )
            await self.listeners.trigger("afterDispatchingEvents", url, event, response)
            log_event(logger, "events_dispatched", url=url, events=queued)
            return True
        except Exception as e:
            log_event(
                logger,
                "events_dispatch_failed",
                level="warning",
                url=endpoint,
                events=queued,
                error_type=e.__class__.__name__,
                error=str(e),
            )
            return False
        finally:
            self._queue.clear()
