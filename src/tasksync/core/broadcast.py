"""
Cross-tab change broadcasting.

Several engine instances ("tabs") can share one durable store. Whenever one
of them writes, it posts an advisory message on a named channel so the others
can refresh from the store instead of polling the network.

Delivery is at-most-once and best effort: a receiver must treat a message as
a hint to re-read the store, never as the data itself. Messages a tab posts
are not delivered back to that same tab.

Example:
    >>> hub = BroadcastHub()
    >>> tab_a = CrossTabBroadcaster(hub, tab_id="a")
    >>> tab_b = CrossTabBroadcaster(hub, tab_id="b")
    >>> seen = []
    >>> unsubscribe = tab_b.subscribe(seen.append)
    >>> tab_a.broadcast(EntityKind.TASK, "task-1", ChangeType.CACHE_UPDATED)
    >>> seen[0].entity_id
    'task-1'
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from tasksync.core.entities import EntityKind

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "tasksync-sync-channel"


class ChangeType(str, Enum):
    """Kinds of cross-tab message."""

    CACHE_UPDATED = "cache_updated"
    ENTITY_DELETED = "entity_deleted"
    CACHE_INVALIDATED = "cache_invalidated"
    MUTATION_QUEUED = "mutation_queued"
    MUTATION_SYNCED = "mutation_synced"
    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"


class BroadcastMessage(BaseModel):
    """A single advisory message posted to other tabs."""

    change_type: ChangeType
    entity_kind: EntityKind | None = None
    entity_id: str | None = None
    data: dict[str, Any] | None = None
    tab_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


BroadcastCallback = Callable[[BroadcastMessage], None]


class BroadcastHub:
    """
    In-process registry of named broadcast channels.

    Stands in for a same-origin broadcast channel: every tab attached to the
    same hub and channel name hears the others.
    """

    def __init__(self) -> None:
        self._channels: dict[str, dict[str, BroadcastCallback]] = {}

    def listen(self, channel: str, listener_id: str, callback: BroadcastCallback) -> None:
        self._channels.setdefault(channel, {})[listener_id] = callback

    def unlisten(self, channel: str, listener_id: str) -> None:
        listeners = self._channels.get(channel)
        if listeners is not None:
            listeners.pop(listener_id, None)

    def post(self, channel: str, message: BroadcastMessage) -> None:
        for listener_id, callback in list(self._channels.get(channel, {}).items()):
            try:
                callback(message)
            except Exception:
                logger.exception("Broadcast listener %s failed", listener_id)


default_hub = BroadcastHub()


def generate_tab_id() -> str:
    """Generate an id identifying one tab (engine instance)."""
    return f"tab_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class CrossTabBroadcaster:
    """
    Posts and receives cross-tab change messages for one tab.

    Args:
        hub: Hub shared by all tabs of the same origin (defaults to the
            process-wide hub).
        channel: Channel name.
        tab_id: This tab's id; generated when omitted.
        enabled: When False, broadcasts are silently skipped.
    """

    def __init__(
        self,
        hub: BroadcastHub | None = None,
        *,
        channel: str = DEFAULT_CHANNEL,
        tab_id: str | None = None,
        enabled: bool = True,
    ) -> None:
        self.hub = hub or default_hub
        self.channel = channel
        self.tab_id = tab_id or generate_tab_id()
        self.enabled = enabled
        self._subscribers: dict[int, tuple[BroadcastCallback, frozenset[ChangeType] | None]] = {}
        self._next_subscriber = 0
        self.hub.listen(self.channel, self.tab_id, self._receive)

    def _receive(self, message: BroadcastMessage) -> None:
        if message.tab_id == self.tab_id:
            return
        logger.debug(
            "Received %s from %s: %s %s",
            message.change_type.value,
            message.tab_id,
            message.entity_kind.value if message.entity_kind else "",
            message.entity_id or "",
        )
        for callback, change_types in list(self._subscribers.values()):
            if change_types is not None and message.change_type not in change_types:
                continue
            try:
                callback(message)
            except Exception:
                logger.exception("Cross-tab subscriber failed on %s", message.change_type.value)

    def subscribe(
        self,
        callback: BroadcastCallback,
        change_types: Iterable[ChangeType] | None = None,
    ) -> Callable[[], None]:
        """
        Subscribe to messages from other tabs.

        Returns:
            A callable that removes the subscription.
        """
        key = self._next_subscriber
        self._next_subscriber += 1
        wanted = frozenset(change_types) if change_types is not None else None
        self._subscribers[key] = (callback, wanted)

        def unsubscribe() -> None:
            self._subscribers.pop(key, None)

        return unsubscribe

    def broadcast(
        self,
        entity_kind: EntityKind | None,
        entity_id: str | None,
        change_type: ChangeType,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Post a message to the other tabs. Never raises."""
        if not self.enabled:
            return
        message = BroadcastMessage(
            change_type=change_type,
            entity_kind=entity_kind,
            entity_id=entity_id,
            data=data,
            tab_id=self.tab_id,
        )
        self.hub.post(self.channel, message)

    def close(self) -> None:
        """Detach from the hub and drop all subscribers."""
        self.hub.unlisten(self.channel, self.tab_id)
        self._subscribers.clear()
