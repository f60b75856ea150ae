"""
Bounded event channel and its connection state machine.

Transports push both entity deltas and lifecycle signals into one bounded
queue, so a single consumer sees them in arrival order:

    channel = EventChannel()
    channel.signal(ChannelSignal.CONNECTING)
    channel.signal(ChannelSignal.CONNECTED)
    channel.publish('{"type": "task_updated", "entityId": "task-1", "payload": {...}}')

How the underlying connection is established is up to the transport.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from tasksync.core.events.models import (
    ChannelItem,
    ChannelSignal,
    ChannelState,
    parse_message,
)

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_SIZE = 1000


class EventChannel:
    """
    Bounded FIFO of channel items.

    When the buffer is full, ``offer`` drops the item and records an
    overflow; the consumer answers an overflow with a full resync, since
    the dropped deltas cannot be recovered otherwise.
    """

    def __init__(self, maxsize: int = DEFAULT_CHANNEL_SIZE) -> None:
        self._queue: asyncio.Queue[ChannelItem] = asyncio.Queue(maxsize=maxsize)
        self._overflowed = False

    async def put(self, item: ChannelItem) -> None:
        """Add an item, waiting for room."""
        await self._queue.put(item)

    def offer(self, item: ChannelItem) -> bool:
        """Add an item without waiting. Returns False if it was dropped."""
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            if not self._overflowed:
                logger.warning("Event channel full, dropping events until drained")
            self._overflowed = True
            return False
        return True

    def signal(self, signal: ChannelSignal) -> bool:
        return self.offer(signal)

    def publish(self, message: str | bytes | Mapping[str, Any]) -> int:
        """Parse a raw transport message and offer the resulting items."""
        accepted = 0
        for item in parse_message(message):
            if self.offer(item):
                accepted += 1
        return accepted

    async def get(self) -> ChannelItem:
        return await self._queue.get()

    def get_nowait(self) -> ChannelItem:
        return self._queue.get_nowait()

    @property
    def maxsize(self) -> int:
        return self._queue.maxsize

    def consume_overflow(self) -> bool:
        """Return and reset the overflow flag."""
        overflowed, self._overflowed = self._overflowed, False
        return overflowed

    def qsize(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()


class ChannelStateMachine:
    """
    Connection state of one event channel.

    disconnected -> connecting -> connected -> disconnected (drop)
    -> reconnecting -> connected. Any other transition is logged and ignored.
    """

    def __init__(self) -> None:
        self.state = ChannelState.DISCONNECTED
        self.has_connected = False

    def apply(self, signal: ChannelSignal) -> tuple[ChannelState, ChannelState] | None:
        """
        Apply a lifecycle signal.

        Returns:
            (previous, new) state, or None if the signal was ignored
        """
        previous = self.state
        new: ChannelState | None = None

        if signal == ChannelSignal.CONNECTING:
            if previous == ChannelState.DISCONNECTED:
                new = ChannelState.RECONNECTING if self.has_connected else ChannelState.CONNECTING
        elif signal == ChannelSignal.CONNECTED:
            if previous in (ChannelState.CONNECTING, ChannelState.RECONNECTING):
                new = ChannelState.CONNECTED
            elif previous == ChannelState.DISCONNECTED:
                # Transport skipped the connecting signal
                new = ChannelState.CONNECTED
                if self.has_connected:
                    previous = ChannelState.RECONNECTING
        elif signal == ChannelSignal.DISCONNECTED:
            if previous != ChannelState.DISCONNECTED:
                new = ChannelState.DISCONNECTED

        if new is None:
            logger.warning("Ignoring %s signal in state %s", signal.value, previous.value)
            return None

        if new == ChannelState.CONNECTED:
            self.has_connected = True
        self.state = new
        logger.debug("Event channel %s -> %s", previous.value, new.value)
        return previous, new
