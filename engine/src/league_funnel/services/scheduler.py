from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Protocol

from loguru import logger

AsyncCallback = Callable[[], Awaitable[None]]


class ScheduledCall(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: AsyncCallback) -> ScheduledCall: ...


class _DelayedTask:
    def __init__(self, delay: float, callback: AsyncCallback) -> None:
        self._started = False
        self._task: asyncio.Task[None] = asyncio.create_task(self._run(delay, callback))

    async def _run(self, delay: float, callback: AsyncCallback) -> None:
        await asyncio.sleep(delay)
        self._started = True
        try:
            await callback()
        except Exception:  # noqa: BLE001
            logger.exception("scheduled callback failed")

    def cancel(self) -> None:
        # Only the wait is cancellable; a callback that already started runs to completion.
        if not self._started:
            self._task.cancel()

    @property
    def task(self) -> asyncio.Task[None]:
        return self._task


class AsyncioScheduler:
    """Runs callbacks on the current event loop after a delay."""

    def __init__(self) -> None:
        self._last: Optional[_DelayedTask] = None

    def call_later(self, delay: float, callback: AsyncCallback) -> ScheduledCall:
        self._last = _DelayedTask(delay, callback)
        return self._last

    async def drain(self) -> None:
        """Wait for the most recently scheduled call to finish."""

        if self._last is None:
            return
        await asyncio.wait({self._last.task})
