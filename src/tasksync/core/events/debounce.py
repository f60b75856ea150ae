"""
Resettable asyncio timer.

``trigger()`` (re)starts the timer; the callback runs once the timer has
been left alone for ``delay`` seconds. N triggers inside the window give
exactly one call. A callback that is already running is never cancelled by
a new trigger; the new trigger schedules a fresh call after it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class Debouncer:
    """
    Coalesce bursts of triggers into one delayed call.

    Args:
        delay: Quiet period in seconds
        callback: Coroutine function to run after the quiet period
        name: Used in log messages
    """

    def __init__(
        self,
        delay: float,
        callback: Callable[[], Awaitable[Any]],
        *,
        name: str = "debounce",
    ) -> None:
        self.delay = delay
        self.callback = callback
        self.name = name
        self.fire_count = 0
        self._timer: asyncio.Task[None] | None = None
        self._running: asyncio.Task[None] | None = None

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def trigger(self) -> None:
        """Start the quiet period, or restart it if already waiting."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().create_task(self._wait_then_fire())

    async def _wait_then_fire(self) -> None:
        await asyncio.sleep(self.delay)
        # From here on this call can no longer be reset
        self._timer = None
        self._running = asyncio.current_task()
        self.fire_count += 1
        logger.debug("%s fired (%d)", self.name, self.fire_count)
        try:
            await self.callback()
        except Exception:
            logger.exception("%s callback failed", self.name)
        finally:
            self._running = None

    def cancel(self) -> None:
        """Drop a waiting call. A call already running is left alone."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def wait(self) -> None:
        """Wait for the waiting and running calls (if any) to finish."""
        for task in (self._timer, self._running):
            if task is not None and not task.done():
                try:
                    await task
                except asyncio.CancelledError:
                    if task.cancelled():
                        continue
                    raise
