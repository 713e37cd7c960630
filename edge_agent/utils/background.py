from __future__ import annotations

import logging

from starlette.background import BackgroundTasks as StarletteBackgroundTasks

from edge_agent.utils.observability import log_event

logger = logging.getLogger(__name__)


class BackgroundTasks(StarletteBackgroundTasks):
    """
    Work scheduled to run after the response is produced (cache writes, event dispatch).

    Handed to the Starlette response as-is, or drained by hosts that are not ASGI apps.
    Tasks run in registration order, are never retried and never cancelled; a failing task is
    logged and the remaining ones still run. If the host tears the worker down before draining,
    the pending work is lost.
    """

    def __len__(self) -> int:
        return len(self.tasks)

    async def __call__(self) -> None:
        await self.drain()

    async def drain(self) -> int:
        """Run all pending tasks; returns how many failed."""
        tasks, self.tasks = self.tasks, []
        failed = 0
        for task in tasks:
            try:
                await task()
            except Exception as e:
                failed += 1
                log_event(
                    logger,
                    "background_task_failed",
                    level="warning",
                    task=getattr(task.func, "__qualname__", repr(task.func)),
                    error_type=e.__class__.__name__,
                    error=str(e),
                )
        return failed
