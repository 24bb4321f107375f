"""Task tracking service for fleet-sync.

Sync cycles started by a trigger and the periodic reconciliation loop run as
asyncio tasks. The service holds a reference to each of them until it is done,
logs failures nobody awaited, and cancels whatever is left on shutdown.
"""

import asyncio
from functools import partial
import logging
from typing import Any, Coroutine
from abc import ABC, abstractmethod

_LOGGER = logging.getLogger(__name__)

__all__: list[str] = []


class TaskService(ABC):
    """Service for tracking and cancelling asynchronous tasks."""

    @abstractmethod
    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new sync task.

        Args:
            coro: The coroutine to run as a task
            name: Optional task name, shown when the task fails

        Returns:
            The created task
        """

    @abstractmethod
    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a long running task such as the reconciliation loop."""

    @abstractmethod
    async def cancel_all(self) -> None:
        """Cancel every tracked task, background tasks included, and wait for them."""


class TaskServiceImpl(TaskService):
    """Task service that keeps sync and background tasks in separate sets."""

    def __init__(self) -> None:
        """Initialize the task service."""
        self._active_tasks: set[asyncio.Task[Any]] = set()
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new sync task."""
        return self._track(self._active_tasks, coro, name)

    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new background task."""
        return self._track(self._background_tasks, coro, name)

    def _track(
        self,
        task_set: set[asyncio.Task[Any]],
        coro: Coroutine[None, None, Any],
        name: str | None,
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        task_set.add(task)
        task.add_done_callback(partial(self._task_done, task_set))
        return task

    def _task_done(
        self, task_set: set[asyncio.Task[Any]], task: asyncio.Task[Any]
    ) -> None:
        """Callback when a task is done."""
        task_set.discard(task)
        if task.cancelled():
            return
        if (err := task.exception()) is not None:
            _LOGGER.error("Task %s failed: %s", task.get_name(), err)

    async def cancel_all(self) -> None:
        """Cancel every tracked task and wait for them to finish."""
        tasks = [*self._background_tasks, *self._active_tasks]
        for task in tasks:
            task.cancel()
        if tasks:
            _LOGGER.debug("Cancelled %d tasks", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)
