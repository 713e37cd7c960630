from __future__ import annotations

import asyncio

from starlette.background import BackgroundTasks as StarletteBackgroundTasks

from edge_agent.utils.background import BackgroundTasks


def test_drain_runs_tasks_in_order_and_survives_failures() -> None:
    seen = []
    tasks = BackgroundTasks()

    async def _async(value):
        seen.append(value)

    def _boom():
        raise RuntimeError("boom")

    tasks.add_task(_async, 1)
    tasks.add_task(_boom)
    tasks.add_task(seen.append, 2)
    assert len(tasks) == 3

    failed = asyncio.run(tasks.drain())
    assert failed == 1
    assert seen == [1, 2]
    assert len(tasks) == 0
    assert asyncio.run(tasks.drain()) == 0


def test_calling_the_tasks_like_starlette_keeps_going_after_a_failure() -> None:
    seen = []
    tasks = BackgroundTasks()

    async def _fail():
        raise ValueError("cache down")

    async def _flush():
        seen.append("flushed")

    tasks.add_task(_fail)
    tasks.add_task(_flush)
    assert isinstance(tasks, StarletteBackgroundTasks)

    asyncio.run(tasks())
    assert seen == ["flushed"]
