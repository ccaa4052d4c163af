"""Typed background tasks with observable completion.

Work started from a request handler (manual sync, reschedule after a
settings change) is described by a frozen task dataclass and submitted to a
``TaskRunner``.  The runner dispatches each task kind explicitly, keeps a
reference to every pending asyncio task, and returns a ``TaskHandle`` whose
result or exception can be awaited, inspected, or delivered to a callback.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Union

from src.highlights.sync.coordinator import SyncCoordinator
from src.highlights.sync.scheduler import ScheduleController

logger = logging.getLogger("marginalia.highlights.sync.tasks")


@dataclass(frozen=True)
class RunSyncTask:
    """Run one sync of ``kind`` now."""

    kind: str


@dataclass(frozen=True)
class RescheduleTask:
    """Re-read the settings of ``kind`` and replace its timer."""

    kind: str


SyncTask = Union[RunSyncTask, RescheduleTask]


class TaskHandle:
    """Completion handle for one submitted task."""

    def __init__(self, task: SyncTask, future: asyncio.Task) -> None:
        self.task = task
        self._future = future

    def done(self) -> bool:
        return self._future.done()

    def result(self) -> Any:
        """Return the task's result; re-raises its exception if it failed."""
        return self._future.result()

    def exception(self) -> BaseException | None:
        return self._future.exception()

    async def wait(self) -> Any:
        """Wait for completion and return the result (or raise its exception)."""
        return await asyncio.shield(self._future)

    def cancel(self) -> bool:
        return self._future.cancel()


class TaskRunner:
    """Dispatch typed sync tasks onto the running event loop.

    Usage::

        runner = TaskRunner(coordinators, controllers)
        handle = runner.submit(RunSyncTask("readwise"))   # may raise ConcurrencyConflictError
        status = await handle.wait()
    """

    def __init__(
        self,
        coordinators: dict[str, SyncCoordinator],
        controllers: dict[str, ScheduleController],
    ) -> None:
        self._coordinators = coordinators
        self._controllers = controllers
        self._pending: set[asyncio.Task] = set()

    def submit(
        self,
        task: SyncTask,
        on_done: Callable[[TaskHandle], None] | None = None,
    ) -> TaskHandle:
        """Start ``task`` in the background and return its handle.

        Errors that can be detected before any work starts are raised here,
        synchronously: ConcurrencyConflictError for a sync already running,
        KeyError for an unknown kind, TypeError for an unknown task type.
        """
        coro = self._dispatch(task)
        future = asyncio.create_task(coro, name=f"{type(task).__name__}:{task.kind}")
        handle = TaskHandle(task, future)
        self._pending.add(future)

        def _finished(fut: asyncio.Task) -> None:
            self._pending.discard(fut)
            if fut.cancelled() and isinstance(task, RunSyncTask):
                # Cancelled before its first step, the run never reached its finally
                self._coordinators[task.kind].release_unstarted(coro)
            if not fut.cancelled() and fut.exception() is not None:
                logger.error(
                    "Background task %s failed: %r", fut.get_name(), fut.exception()
                )
            if on_done is not None:
                on_done(handle)

        future.add_done_callback(_finished)
        return handle

    def _dispatch(self, task: SyncTask) -> Coroutine[Any, Any, Any]:
        if isinstance(task, RunSyncTask):
            return self._coordinator(task.kind).claim()
        if isinstance(task, RescheduleTask):
            return self._controller(task.kind).reschedule()
        raise TypeError(f"Unsupported task type: {type(task).__name__}")

    def _coordinator(self, kind: str) -> SyncCoordinator:
        if kind not in self._coordinators:
            raise KeyError(f"Unknown sync kind '{kind}'")
        return self._coordinators[kind]

    def _controller(self, kind: str) -> ScheduleController:
        if kind not in self._controllers:
            raise KeyError(f"Unknown sync kind '{kind}'")
        return self._controllers[kind]

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def shutdown(self) -> None:
        """Cancel every pending task and wait for them to settle."""
        tasks = list(self._pending)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d pending background task(s)", len(tasks))
