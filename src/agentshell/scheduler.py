from __future__ import annotations

import asyncio
import inspect
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None] | None]


class TimerHandle(ABC):
    @abstractmethod
    def cancel(self) -> None:
        """Prevent the callback from running if it has not fired yet."""


class Scheduler(ABC):
    """Timers and wall-clock time for the engine.

    Callbacks may be plain functions or coroutine functions. A callback that
    raises is logged and never propagates into the caller's event loop.
    """

    @abstractmethod
    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        """Run ``callback`` after ``delay`` seconds."""

    @abstractmethod
    def time(self) -> float:
        """Wall-clock seconds since the epoch, comparable with file mtimes."""


async def run_callback(callback: TimerCallback) -> None:
    try:
        result = callback()
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Timer callback failed")


class _AsyncioTimer(TimerHandle):
    def __init__(self) -> None:
        self.handle: asyncio.TimerHandle | None = None
        self.task: asyncio.Task[None] | None = None
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True
        if self.handle is not None:
            self.handle.cancel()


class AsyncioScheduler(Scheduler):
    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        timer = _AsyncioTimer()

        def _fire() -> None:
            if timer.cancelled:
                return
            task = self.loop.create_task(run_callback(callback))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            timer.task = task

        timer.handle = self.loop.call_later(max(0.0, delay), _fire)
        return timer

    def time(self) -> float:
        return time.time()
