"""Debounced triggers for scroll, mutation and startup events."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[object]]


class Debouncer:
    """Single-slot timer: each trigger replaces the pending one.

    When the delay elapses without a newer trigger, ``callback`` is started
    as a task on the running loop.
    """

    def __init__(self, delay: float, callback: Callback, *, name: str = "trigger") -> None:
        self.delay = delay
        self.callback = callback
        self.name = name
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    async def wait(self) -> None:
        """Wait for the pending timer and the callback it started."""

        while self._handle is not None:
            await asyncio.sleep(max(self.delay / 4, 0.001))
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    def _fire(self) -> None:
        self._handle = None
        logger.debug("Firing %s", self.name)
        self._task = asyncio.get_running_loop().create_task(self.callback())
        self._task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s callback failed: %s", self.name, exc)
