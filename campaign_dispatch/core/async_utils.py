from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTicker:
    """
    Cancellable periodic callback owned by the component that starts it.

    - The callback is awaited; a slow tick delays the next one instead of overlapping.
    - Exceptions raised by the callback are logged and the ticker keeps running.
    - ``stop()`` called from inside the callback lets the current tick finish
      and ends the loop; from any other task it cancels and awaits the ticker.
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        *,
        name: str,
        run_immediately: bool = False,
    ) -> None:
        self.interval = interval
        self.name = name
        self._callback = callback
        self._run_immediately = run_immediately
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _owns_loop(self) -> bool:
        # A ticker stopped (or restarted) from inside its own callback exits after that tick
        return self._task is asyncio.current_task()

    async def _run(self) -> None:
        if self._run_immediately:
            await self._tick()
        while self._owns_loop():
            await asyncio.sleep(self.interval)
            if not self._owns_loop():
                break
            await self._tick()

    async def _tick(self) -> None:
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Periodic task %s failed", self.name)
