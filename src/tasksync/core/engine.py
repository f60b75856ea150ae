"""
Sync engine.

The single object the presentation layer talks to. It owns the in-memory
merged view and wires the local store, mutation queue, live event reconciler
and manual order resolver together:

    engine = SyncEngine(store, remote, ConnectivitySnapshot())
    task = engine.mutate(OpKind.CREATE, Task(id="", title="Buy milk"))
    await engine.wait_idle()
    engine.get_merged_view(EntityKind.TASK)

``mutate`` returns immediately with the optimistic result; delivery happens
in a background flush. Everything that changes the view is reported to
``subscribe`` callbacks as EntityChange values, and failures that need the
user's attention are reported once per mutation as SyncNotification values.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Iterable, Mapping
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any

from pydantic import ValidationError

from tasksync.core.broadcast import BroadcastMessage, ChangeType, CrossTabBroadcaster
from tasksync.core.config import SyncConfig
from tasksync.core.entities import (
    Entity,
    EntityKind,
    ListMember,
    SyncStatus,
    Task,
    TaskList,
    apply_fields,
    is_temp_id,
    new_temp_id,
    parse_entity,
    to_record,
    to_wire_payload,
    with_status,
)
from tasksync.core.events import EventChannel, LiveEventReconciler
from tasksync.core.ordering import (
    DragSession,
    DropPosition,
    ManualOrderResolver,
    ReorderOutcome,
    ReorderResult,
)
from tasksync.core.store import LocalStore
from tasksync.core.sync import (
    ConnectivitySnapshot,
    FlushResult,
    MergedView,
    MutationQueue,
    NotificationLevel,
    OpKind,
    PendingMutation,
    QueueEvent,
    QueueEventType,
    RemoteAuthority,
    RetryPolicy,
    SyncNotification,
    entity_path,
    merge_server_snapshot,
)
from tasksync.core.sync.queue import Clock

logger = logging.getLogger(__name__)

RESYNC_KINDS = (EntityKind.LIST, EntityKind.TASK)


class ChangeKind(str, Enum):
    UPSERTED = "upserted"
    REMOVED = "removed"
    RENAMED = "renamed"
    ORDER = "order"
    RELOADED = "reloaded"


@dataclass(frozen=True)
class EntityChange:
    """Something in the merged view changed; re-render what depends on it."""

    change: ChangeKind
    kind: EntityKind | None = None
    entity_id: str | None = None
    entity: Entity | None = None
    previous_id: str | None = None


ChangeCallback = Callable[[EntityChange], None]
NotificationCallback = Callable[[SyncNotification], None]


class SyncEngine:
    """
    Optimistic mutation and reconciliation engine for one tab.

    Args:
        store: Durable local store (may be shared with other tabs)
        remote: Remote authority
        connectivity: Injected online/offline flag
        config: Engine configuration
        broadcaster: Cross-tab broadcaster (defaults to the store's)
        clock: Wall clock for retry scheduling
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteAuthority,
        connectivity: ConnectivitySnapshot | None = None,
        config: SyncConfig | None = None,
        *,
        broadcaster: CrossTabBroadcaster | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or SyncConfig()
        self.store = store
        self.remote = remote
        self.connectivity = connectivity or ConnectivitySnapshot()
        self.broadcaster = broadcaster if broadcaster is not None else store.broadcaster
        self.view = MergedView()
        self.queue = MutationQueue(
            store,
            remote,
            self.connectivity,
            RetryPolicy.from_config(self.config.retry),
            broadcaster=self.broadcaster,
            clock=clock,
            claim_timeout=self.config.store.claim_timeout,
        )
        self.ordering = ManualOrderResolver(
            store,
            self.queue,
            self,
            virtual_scopes=(self.config.ordering.my_tasks_scope,),
        )
        self.reconciler: LiveEventReconciler | None = None
        self._selection: tuple[EntityKind, str] | None = None
        self._subscribers: list[ChangeCallback] = []
        self._notification_subscribers: list[NotificationCallback] = []
        self._notifications: dict[str, SyncNotification] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._retry_timer: asyncio.Task[None] | None = None

        self._unsubscribers: list[Callable[[], None]] = [
            self.queue.subscribe(self._on_queue_event),
            self.connectivity.subscribe(self._on_connectivity),
        ]
        if self.broadcaster is not None:
            self._unsubscribers.append(self.broadcaster.subscribe(self._on_broadcast))

        self.store.clear_old_id_mappings(timedelta(days=self.config.store.id_mapping_ttl_days))
        self.load()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register for EntityChange notifications. Returns an unsubscribe callable."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, change: EntityChange) -> None:
        for callback in list(self._subscribers):
            try:
                callback(change)
            except Exception:
                logger.exception("Change subscriber failed")

    def subscribe_notifications(self, callback: NotificationCallback) -> Callable[[], None]:
        self._notification_subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._notification_subscribers:
                self._notification_subscribers.remove(callback)

        return unsubscribe

    @property
    def notifications(self) -> list[SyncNotification]:
        """Notifications not yet dismissed, oldest first."""
        return [n for n in self._notifications.values() if not n.dismissed]

    def dismiss(self, notification_id: str) -> bool:
        for note in self._notifications.values():
            if note.id == notification_id and not note.dismissed:
                note.dismissed = True
                return True
        return False

    def _surface(
        self,
        mutation: PendingMutation,
        message: str,
        reason: str | None,
        level: NotificationLevel = NotificationLevel.ERROR,
    ) -> None:
        # At most one notification per mutation
        if mutation.id in self._notifications:
            return
        note = SyncNotification(
            mutation_id=mutation.id,
            entity_kind=mutation.entity_kind,
            entity_id=mutation.order_scope or mutation.entity_id,
            level=level,
            message=message,
            reason=reason,
        )
        self._notifications[mutation.id] = note
        logger.warning("%s%s", message, f": {reason}" if reason else "")
        for callback in list(self._notification_subscribers):
            try:
                callback(note)
            except Exception:
                logger.exception("Notification subscriber failed")

    # ------------------------------------------------------------------
    # View
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Hydrate the in-memory view from the durable store."""
        for kind in EntityKind:
            self.view.replace(kind, self.store.list_by_index(kind))
        self._notify(EntityChange(ChangeKind.RELOADED))

    def get_merged_view(self, kind: EntityKind | str) -> list[Entity]:
        """Current consistent snapshot of one kind, for rendering."""
        return self.view.entities(EntityKind(kind))

    def get_entity(self, kind: EntityKind, entity_id: str) -> Entity | None:
        return self.view.get(kind, entity_id)

    def tasks_in_order(self, scope_id: str) -> list[Task]:
        """Tasks of a list (or virtual scope) sorted by its manual order."""
        tasks: list[Task] = []
        for task_id in self.ordering.current_order(scope_id):
            task = self.view.get(EntityKind.TASK, task_id)
            if isinstance(task, Task):
                tasks.append(task)
        return tasks

    def _upsert(self, entity: Entity) -> None:
        self.view.upsert(entity)
        self._notify(EntityChange(ChangeKind.UPSERTED, entity.kind, entity.id, entity))

    def _remove(self, kind: EntityKind, entity_id: str) -> None:
        removed = self.view.remove(kind, entity_id)
        if self._selection == (kind, entity_id):
            self._selection = None
        if removed is not None:
            self._notify(EntityChange(ChangeKind.REMOVED, kind, entity_id))

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    @property
    def selection(self) -> tuple[EntityKind, str] | None:
        return self._selection

    def select(self, kind: EntityKind | None, entity_id: str | None = None) -> None:
        """Set (or with None, clear) the user's active selection."""
        if kind is None or entity_id is None:
            self._selection = None
        else:
            self._selection = (EntityKind(kind), entity_id)

    # ------------------------------------------------------------------
    # Hooks for the reconciler and the resolver
    # ------------------------------------------------------------------

    def put_entity(self, entity: Entity) -> None:
        self.store.put(entity)
        self._upsert(entity)

    def remove_entity(self, kind: EntityKind, entity_id: str) -> None:
        self.store.delete(kind, entity_id)
        self._remove(kind, entity_id)

    def has_local_edit(self, kind: EntityKind, entity_id: str) -> bool:
        return self.queue.has_pending(kind, entity_id)

    def member_ids(self, scope_id: str) -> list[str]:
        """Ids of the tasks currently belonging to a list or virtual scope."""
        tasks = [t for t in self.view.entities(EntityKind.TASK) if isinstance(t, Task)]
        if scope_id == self.config.ordering.my_tasks_scope:
            user_id = self.config.remote.user_id
            return [t.id for t in tasks if user_id is None or t.assignee_id == user_id]
        return [t.id for t in tasks if scope_id in t.list_ids]

    def order_changed(self, scope_id: str) -> None:
        self._notify(EntityChange(ChangeKind.ORDER, EntityKind.LIST, scope_id))

    def entity_changed(self, entity: Entity) -> None:
        self._upsert(entity)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _path(self, entity: Entity, *, with_id: bool = True) -> str:
        list_id = entity.list_id if isinstance(entity, ListMember) else None
        return entity_path(entity.kind, entity.id if with_id else None, list_id=list_id)

    def mutate(
        self,
        op_kind: OpKind | str,
        entity: Entity,
        patch: Mapping[str, Any] | None = None,
    ) -> Entity | None:
        """
        Apply a user write optimistically and queue it for delivery.

        Args:
            op_kind: create, update or delete
            entity: The entity written (for updates and deletes, only its
                kind and id matter when ``patch`` is given)
            patch: Fields to change (update) or to set on the new entity (create)

        Returns:
            The optimistic entity (None for deletes)
        """
        op_kind = OpKind(op_kind)
        kind = entity.kind
        cls = type(entity)

        if op_kind == OpKind.CREATE:
            if not entity.id:
                entity = entity.model_copy(update={"id": new_temp_id()})
            if patch:
                entity = apply_fields(entity, patch)
            created = with_status(entity, SyncStatus.PENDING)
            self.store.put(created)
            self._upsert(created)
            self.queue.enqueue(
                OpKind.CREATE,
                kind,
                created.id,
                self._path(created, with_id=False),
                "POST",
                to_wire_payload(cls, to_record(created)),
            )
            self._schedule_flush()
            return created

        current = self.view.get(kind, entity.id) or self.store.get(kind, entity.id) or entity

        if op_kind == OpKind.UPDATE:
            if patch is None:
                patch = {
                    key: value
                    for key, value in to_record(entity).items()
                    if key not in ("id", "syncStatus")
                }
            updated = with_status(apply_fields(current, patch), SyncStatus.PENDING)
            self.store.put(updated)
            self._upsert(updated)
            self.queue.enqueue(
                OpKind.UPDATE,
                kind,
                current.id,
                self._path(current),
                "PUT",
                to_wire_payload(cls, patch),
                snapshot=to_record(current),
            )
            self._schedule_flush()
            return updated

        self.store.delete(kind, current.id)
        self._remove(kind, current.id)
        if is_temp_id(current.id) and self.queue.discard_unsent(kind, current.id):
            return None
        self.queue.enqueue(
            OpKind.DELETE,
            kind,
            current.id,
            self._path(current),
            "DELETE",
            snapshot=to_record(current),
        )
        self._schedule_flush()
        return None

    async def reorder(
        self,
        scope_id: str,
        moved_id: str,
        target_id: str | None = None,
        position: DropPosition | str = DropPosition.END,
    ) -> ReorderResult:
        """Move one item within a list's manual order."""
        result = await self.ordering.reorder(scope_id, moved_id, target_id, DropPosition(position))
        self._surface_rollback(result)
        return result

    async def move_between_lists(
        self,
        task_id: str,
        target_list_id: str,
        *,
        source_list_id: str | None = None,
        add: bool = False,
    ) -> ReorderResult:
        result = await self.ordering.move_between_lists(
            task_id, target_list_id, source_list_id=source_list_id, add=add
        )
        self._surface_rollback(result)
        return result

    def begin_drag(self, scope_id: str, moved_id: str) -> DragSession:
        session = DragSession(
            hover_throttle=self.config.ordering.hover_throttle,
            flip_throttle=self.config.ordering.flip_throttle,
        )
        session.begin(scope_id, moved_id)
        return session

    async def commit_drag(self, session: DragSession) -> ReorderResult:
        result = await self.ordering.commit_drag(session)
        self._surface_rollback(result)
        return result

    def _surface_rollback(self, result: ReorderResult) -> None:
        if result.outcome != ReorderOutcome.ROLLED_BACK or result.mutation_id is None:
            return
        if result.mutation_id in self._notifications:
            return
        mutation = PendingMutation(
            id=result.mutation_id,
            op_kind=OpKind.UPDATE,
            entity_kind=EntityKind.LIST,
            entity_id=result.scope_id,
            target_path="",
            method="POST",
            order_scope=result.scope_id,
        )
        self._surface(mutation, f"Could not save the order of {result.scope_id}", result.reason)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any] | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule_flush(self) -> None:
        if self.connectivity.is_offline:
            return
        self._spawn(self._background_flush())

    async def _background_flush(self) -> None:
        try:
            await self.flush()
        except Exception:
            logger.exception("Background flush failed")

    async def flush(self) -> FlushResult:
        """Deliver queued mutations now."""
        result = await self.queue.flush()
        self._arm_retry_timer()
        return result

    def _arm_retry_timer(self) -> None:
        next_at = self.queue.next_retry_at()
        if self._retry_timer is not None and not self._retry_timer.done():
            self._retry_timer.cancel()
            self._retry_timer = None
        if next_at is None or self.connectivity.is_offline:
            return
        delay = max(0.0, (next_at - self.queue.now()).total_seconds())
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._retry_timer = loop.create_task(self._flush_after(delay))

    async def _flush_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._retry_timer = None
        await self._background_flush()

    async def resync(self, kinds: Iterable[EntityKind] | None = None) -> dict[str, int]:
        """
        Refetch full collections and merge them with local optimistic state.

        Synced local records the server no longer returns are deleted; list
        ordering arrays are seeded from ``manualSortOrder`` unless a reorder
        of that list is still queued.

        Returns:
            Entity count per kind after the merge
        """
        counts: dict[str, int] = {}
        if self.broadcaster is not None:
            self.broadcaster.broadcast(None, None, ChangeType.SYNC_STARTED)

        async with self.queue.exclusive():
            for kind in kinds or RESYNC_KINDS:
                raw = await self.remote.fetch_collection(kind)
                counts[kind.value] = self._merge_snapshot(kind, raw)

        self._notify(EntityChange(ChangeKind.RELOADED))
        if self.broadcaster is not None:
            self.broadcaster.broadcast(None, None, ChangeType.SYNC_COMPLETED, counts)
        logger.info(
            "Resync complete: %s", ", ".join(f"{n} {kind}s" for kind, n in counts.items())
        )
        return counts

    async def _resync_all(self) -> None:
        await self.resync()

    def _merge_snapshot(self, kind: EntityKind, raw: list[dict[str, Any]]) -> int:
        server_entities: list[Entity] = []
        for item in raw:
            try:
                server_entities.append(parse_entity(kind, item))
            except ValidationError as e:
                logger.warning("Skipping invalid %s from server: %s", kind.value, e)

        local = self.store.list_by_index(kind)
        merged = merge_server_snapshot(
            kind,
            server_entities,
            local,
            pending_patches=self.queue.pending_patches(kind),
            pending_deletes=self.queue.pending_deletes(kind),
        )

        merged_ids = {entity.id for entity in merged}
        local_by_id = {entity.id: entity for entity in local}
        for entity in local:
            if entity.id not in merged_ids:
                self.store.delete(kind, entity.id)
        for entity in merged:
            previous = local_by_id.get(entity.id)
            if previous is None or to_record(previous) != to_record(entity):
                self.store.put(entity)

        if kind == EntityKind.LIST:
            for task_list in merged:
                if (
                    isinstance(task_list, TaskList)
                    and task_list.manual_sort_order is not None
                    and not is_temp_id(task_list.id)
                    and not self.queue.has_pending_order(task_list.id)
                ):
                    self.store.put_order(task_list.id, list(task_list.manual_sort_order))

        self.view.replace(kind, merged)
        if self._selection is not None and self._selection[0] == kind:
            if self._selection[1] not in merged_ids:
                self._selection = None
        return len(merged)

    # ------------------------------------------------------------------
    # Reactions
    # ------------------------------------------------------------------

    def _on_connectivity(self, offline: bool) -> None:
        if not offline:
            self._schedule_flush()

    def _on_queue_event(self, event: QueueEvent) -> None:
        mutation = event.mutation

        if event.type == QueueEventType.REMAPPED:
            if event.temp_id is None or event.real_id is None:
                return
            self.view.rename(mutation.entity_kind, event.temp_id, event.real_id)
            if self._selection == (mutation.entity_kind, event.temp_id):
                self._selection = (mutation.entity_kind, event.real_id)
            self._refresh_from_store()
            self._notify(
                EntityChange(
                    ChangeKind.RENAMED,
                    mutation.entity_kind,
                    event.real_id,
                    self.view.get(mutation.entity_kind, event.real_id),
                    previous_id=event.temp_id,
                )
            )
            return

        for scope_id in mutation.order_snapshots:
            if event.type in (QueueEventType.REJECTED, QueueEventType.CANCELLED):
                self.order_changed(scope_id)
        if mutation.order_scope is not None and event.type in (
            QueueEventType.REJECTED,
            QueueEventType.CANCELLED,
        ):
            self.order_changed(mutation.order_scope)

        if event.removed:
            self._remove(mutation.entity_kind, mutation.entity_id)
        elif event.entity is not None:
            self._upsert(event.entity)

        if event.type == QueueEventType.RETRY_SCHEDULED:
            self._arm_retry_timer()
        elif event.type == QueueEventType.FAILED:
            self._surface(
                mutation,
                f"Could not sync {mutation.entity_kind.value} {mutation.entity_id} "
                f"after {mutation.attempts} attempts",
                event.reason,
            )
        elif event.type == QueueEventType.REJECTED:
            self._surface(
                mutation,
                f"The server rejected your change to {mutation.entity_kind.value} "
                f"{mutation.order_scope or mutation.entity_id}",
                event.reason,
            )

    def _refresh_from_store(self) -> None:
        """Re-read every viewed entity from the store, keeping view order."""
        for kind in EntityKind:
            for entity in self.view.entities(kind):
                fresh = self.store.get(kind, entity.id)
                if fresh is not None and fresh != entity:
                    self.view.upsert(fresh)

    def _on_broadcast(self, message: BroadcastMessage) -> None:
        """Another tab changed the shared store: re-read rather than trust the message."""
        change = message.change_type
        if change in (ChangeType.CACHE_INVALIDATED, ChangeType.SYNC_COMPLETED):
            self.load()
            return
        if message.data and message.data.get("order") and message.entity_id:
            self.order_changed(message.entity_id)
            return
        if change == ChangeType.MUTATION_SYNCED and message.data:
            temp_id, real_id = message.data.get("tempId"), message.data.get("realId")
            if temp_id and real_id and message.entity_kind is not None:
                self.view.rename(message.entity_kind, temp_id, real_id)
                self._refresh_from_store()
            if self.queue.stats().pending:
                # Our own writes may have been waiting behind that one
                self._schedule_flush()
            return
        if message.entity_kind is None or not message.entity_id:
            return
        if change in (ChangeType.CACHE_UPDATED, ChangeType.ENTITY_DELETED):
            fresh = self.store.get(message.entity_kind, message.entity_id)
            if fresh is None:
                self._remove(message.entity_kind, message.entity_id)
            else:
                self._upsert(fresh)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def attach_channel(self, channel: EventChannel | None = None) -> LiveEventReconciler:
        """
        Start applying live events from ``channel``.

        Without a channel one is created, sized by ``events.channel_size``;
        the transport feeds it through ``engine.reconciler.channel``.
        """
        if self.reconciler is not None:
            raise RuntimeError("An event channel is already attached")
        if channel is None:
            channel = EventChannel(maxsize=self.config.events.channel_size)
        self.reconciler = LiveEventReconciler(
            channel,
            self,
            self._resync_all,
            quiet_period=self.config.events.resync_quiet_period,
        )
        self.reconciler.start()
        return self.reconciler

    async def wait_idle(self) -> None:
        """Wait for background flushes started so far (and any they start)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        if self.reconciler is not None:
            await self.reconciler.stop()
            self.reconciler = None
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None
        await self.wait_idle()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
