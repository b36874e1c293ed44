from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Mapping, TypeVar

from ..core.logging import get_logger

logger = get_logger(name=__name__)

T = TypeVar("T")


class AgentSupervisor:
    """Spawns agent tasks with a bounded number of children running at once.

    Tasks stay addressable by agent id after they finish so callers can join
    them later; :meth:`shutdown` is the only place tasks get cancelled.
    """

    def __init__(self, *, max_children: int = 10) -> None:
        self._slots = asyncio.Semaphore(max(1, max_children))
        self._tasks: dict[str, asyncio.Task] = {}
        self._closed = False

    def spawn(self, agent_id: str, factory: Callable[[], Awaitable[T]]) -> "asyncio.Task[T]":
        if self._closed:
            raise RuntimeError("Supervisor has been shut down")

        async def guarded() -> T:
            async with self._slots:
                return await factory()

        task = asyncio.create_task(guarded(), name=f"agent:{agent_id}")
        self._tasks[agent_id] = task
        return task

    @property
    def tasks(self) -> Mapping[str, asyncio.Task]:
        return dict(self._tasks)

    def running(self) -> list[str]:
        return [agent_id for agent_id, task in self._tasks.items() if not task.done()]

    def forget(self, agent_id: str) -> None:
        task = self._tasks.get(agent_id)
        if task is not None and task.done():
            del self._tasks[agent_id]

    async def shutdown(self, *, timeout: float = 5.0) -> None:
        self._closed = True
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            done, still_pending = await asyncio.wait(pending, timeout=timeout)
            if still_pending:
                logger.warning("agent_supervisor_shutdown_incomplete", pending=len(still_pending))
        logger.info("agent_supervisor_stopped", cancelled=len(pending))


__all__ = ["AgentSupervisor"]
