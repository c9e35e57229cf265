"""Periodic task runner with clean cancellation."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Union[None, Awaitable[None]]]


class PeriodicTask:
    """Run ``callback`` every ``interval`` seconds until stopped.

    A failing tick is logged and the next tick still happens. Waiting is done
    on a stop event, so :meth:`stop` takes effect immediately instead of after
    the current interval.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: TickCallback,
        *,
        run_immediately: bool = True,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._run_immediately = run_immediately
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop_event), name=self.name)

    async def stop(self) -> None:
        task = self._task
        if self._stop_event is not None:
            self._stop_event.set()
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self, stop_event: asyncio.Event) -> None:
        if not self._run_immediately:
            await self._sleep_with_stop(stop_event)
        while not stop_event.is_set():
            await self._tick()
            await self._sleep_with_stop(stop_event)

    async def _tick(self) -> None:
        self.ticks += 1
        try:
            outcome = self._callback()
            if asyncio.iscoroutine(outcome):
                await outcome
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Periodic task %s failed", self.name)

    async def _sleep_with_stop(self, stop_event: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass


__all__ = ["PeriodicTask", "TickCallback"]
