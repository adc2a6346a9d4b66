"""Asyncio scheduling primitives for job polling, ceilings and sweeps.

Every scheduled unit of work is an asyncio.Task wrapped in a TimerHandle so
owners can cancel it when a job reaches a terminal state.
"""

import asyncio
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)

Callback = Callable[[], Awaitable[object]]


class TimerHandle:
    """Cancellable handle around a scheduled task."""

    def __init__(self, task: asyncio.Task, name: str) -> None:
        self._task = task
        self.name = name

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()

    @property
    def active(self) -> bool:
        return not self._task.done()

    async def wait(self) -> None:
        """Wait for the task to finish; cancellation is not an error here."""
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise


class Scheduler:
    """Creates tasks for one-shot delays, fixed-interval loops and immediate work."""

    def spawn(self, callback: Callback, *, name: str) -> TimerHandle:
        """Run callback once, as soon as the loop gets to it."""
        return self.after(0, callback, name=name)

    def after(self, delay: float, callback: Callback, *, name: str) -> TimerHandle:
        """Run callback once after delay seconds."""

        async def _run() -> None:
            if delay > 0:
                await asyncio.sleep(delay)
            try:
                await callback()
            except Exception as exc:
                logger.error("scheduled_task_failed", task=name, error=str(exc),
                             error_type=type(exc).__name__, exc_info=True)

        return TimerHandle(asyncio.create_task(_run(), name=name), name)

    def every(self, interval: float, callback: Callback, *, name: str) -> TimerHandle:
        """Run callback every interval seconds until cancelled.

        Iterations are serialized: the next interval starts once the callback
        returns. Callback errors are logged and the loop keeps going.
        """

        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    await callback()
                except Exception as exc:
                    logger.warning("scheduled_iteration_failed", task=name, error=str(exc),
                                   error_type=type(exc).__name__)

        return TimerHandle(asyncio.create_task(_loop(), name=name), name)
