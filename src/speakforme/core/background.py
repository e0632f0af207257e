"""Detached side effects with their own error boundary.

Actionable detection, escalation scanning and similar secondary work must
never slow down or fail the suggestion path. They run as background
asyncio.Tasks: the caller schedules them and moves on, failures are
logged here and go no further.

The manager keeps strong references to running tasks (the event loop only
holds weak ones) and drops them on completion.
"""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine

import structlog

logger = structlog.get_logger()


class BackgroundTasks:
    """Registry of fire-and-forget tasks."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._failed = 0

    def fire_and_forget(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """Schedule *coro* detached from the caller."""

        async def _guarded() -> None:
            try:
                await coro
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._failed += 1
                logger.error(
                    "background_task_failed",
                    task=name,
                    error=str(e),
                    exc_info=True,
                )

        task = asyncio.create_task(_guarded(), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for all outstanding tasks (shutdown, tests)."""
        while self._tasks:
            pending = list(self._tasks)
            done, not_done = await asyncio.wait(pending, timeout=timeout)
            if not_done:
                logger.warning("background_drain_timeout", pending=len(not_done))
                for task in not_done:
                    task.cancel()
                await asyncio.gather(*not_done, return_exceptions=True)
                return

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def failed(self) -> int:
        return self._failed


_background: BackgroundTasks | None = None


def get_background_tasks() -> BackgroundTasks:
    """Get or create the process-global background task registry."""
    global _background
    if _background is None:
        _background = BackgroundTasks()
    return _background


def fire_and_forget(coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
    return get_background_tasks().fire_and_forget(coro, name)
