"""
Live event reconciler.

Consumes an EventChannel, tracks its connection state and applies entity
deltas from other actors to local state:

- created: insert unless an entity with that id already exists (our own
  optimistic copy may have got there first).
- updated: shallow-merge the fields present in the delta; client-authoritative
  fields are skipped while the entity has a local edit in flight.
- deleted: remove the entity and clear the active selection if it pointed
  at it.

Events missed while disconnected are not an error: on every reconnect a full
resync is scheduled after a quiet period, and further reconnects inside that
window reset the timer so a flapping connection costs one refetch.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from pydantic import ValidationError

from tasksync.core.entities import (
    Entity,
    EntityKind,
    SyncStatus,
    apply_fields,
    entity_class,
    parse_entity,
)
from tasksync.core.events.channel import ChannelStateMachine, EventChannel
from tasksync.core.events.debounce import Debouncer
from tasksync.core.events.models import (
    ChannelItem,
    ChannelSignal,
    ChannelState,
    EventOperation,
    LiveEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_QUIET_PERIOD = 2.0


class EventTarget(Protocol):
    """Local state the reconciler writes into (implemented by the engine)."""

    def get_entity(self, kind: EntityKind, entity_id: str) -> Entity | None: ...

    def put_entity(self, entity: Entity) -> None: ...

    def remove_entity(self, kind: EntityKind, entity_id: str) -> None: ...

    def has_local_edit(self, kind: EntityKind, entity_id: str) -> bool: ...


class LiveEventReconciler:
    """
    Apply push-channel deltas and schedule resyncs after reconnects.

    Args:
        channel: Channel to consume
        target: Local state to apply deltas to
        resync: Coroutine function performing a full refetch
        quiet_period: Seconds to wait after the last reconnect before resyncing
    """

    def __init__(
        self,
        channel: EventChannel,
        target: EventTarget,
        resync: Callable[[], Awaitable[object]],
        *,
        quiet_period: float = DEFAULT_QUIET_PERIOD,
    ) -> None:
        self.channel = channel
        self.target = target
        self.machine = ChannelStateMachine()
        self.resync_debouncer = Debouncer(quiet_period, resync, name="reconnect resync")
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ChannelState:
        return self.machine.state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())

    async def run(self) -> None:
        """Consume the channel until cancelled."""
        while True:
            item = await self.channel.get()
            self.handle(item)

    async def stop(self) -> None:
        """Stop consuming and drop any scheduled resync."""
        self.resync_debouncer.cancel()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def handle(self, item: ChannelItem) -> None:
        """Process one channel item."""
        if self.channel.consume_overflow():
            logger.info("Event channel overflowed, scheduling resync")
            self.resync_debouncer.trigger()

        if isinstance(item, ChannelSignal):
            self._handle_signal(item)
            return

        if self.machine.state != ChannelState.CONNECTED:
            logger.debug(
                "Dropping %s %s while %s",
                item.operation.value,
                item.entity_id,
                self.machine.state.value,
            )
            return
        self.apply_event(item)

    def _handle_signal(self, signal: ChannelSignal) -> None:
        transition = self.machine.apply(signal)
        if transition is None:
            return
        previous, new = transition
        if previous == ChannelState.RECONNECTING and new == ChannelState.CONNECTED:
            logger.info("Event channel reconnected, resync in %.1fs", self.resync_debouncer.delay)
            self.resync_debouncer.trigger()

    def apply_event(self, event: LiveEvent) -> None:
        """Apply one delta to local state, following the per-operation rules."""
        kind, entity_id = event.entity_kind, event.entity_id
        existing = self.target.get_entity(kind, entity_id)

        if event.operation == EventOperation.DELETED:
            if existing is not None:
                self.target.remove_entity(kind, entity_id)
                logger.debug("Removed %s %s (remote delete)", kind.value, entity_id)
            return

        if event.operation == EventOperation.CREATED and existing is not None:
            logger.debug("Ignoring create of existing %s %s", kind.value, entity_id)
            return

        if existing is None:
            # A create, or an update for something not cached yet
            try:
                entity = parse_entity(kind, {**event.payload, "id": entity_id})
            except ValidationError as e:
                logger.warning("Ignoring invalid %s event for %s: %s", kind.value, entity_id, e)
                return
            entity = entity.model_copy(update={"sync_status": SyncStatus.SYNCED})
            self.target.put_entity(entity)
            logger.debug("Inserted %s %s (remote %s)", kind.value, entity_id, event.operation.value)
            return

        skip: frozenset[str] = frozenset()
        if self.target.has_local_edit(kind, entity_id):
            skip = entity_class(kind).client_authoritative
        fields = {
            key: value
            for key, value in event.payload.items()
            if key not in ("syncStatus", "sync_status")
        }
        try:
            updated = apply_fields(existing, fields, skip=skip)
        except ValidationError as e:
            logger.warning("Ignoring invalid update for %s %s: %s", kind.value, entity_id, e)
            return
        self.target.put_entity(updated)
        logger.debug("Merged remote update into %s %s", kind.value, entity_id)
