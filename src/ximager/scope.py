from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from types import TracebackType
from typing import Any

logger = logging.getLogger(__name__)


class TaskScope:
    """Owns a set of background tasks and tears all of them down on close.

    ``close()`` cancels every task still pending and waits for each to finish,
    so once it returns no task spawned here can run again. Used as an async
    context manager, the teardown happens on every exit path.
    """

    def __init__(self, name: str = "scope") -> None:
        self.name = name
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task[Any]:
        if self._closed:
            coro.close()
            raise RuntimeError(f"TaskScope {self.name!r} is closed")
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        return task

    async def close(self) -> None:
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for task, result in zip(tasks, results):
                if isinstance(result, Exception):
                    logger.warning("Task %s in scope %r failed: %s", task.get_name(), self.name, result)
        self._tasks.clear()

    async def __aenter__(self) -> "TaskScope":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
