"""
Mutation queue.

The ordered, durable log of not-yet-confirmed writes. Every user write is
enqueued first, whatever the connectivity, and the queue is the single
source of intent:

- ``enqueue`` persists the mutation and always succeeds.
- ``flush`` delivers due mutations in enqueue order. A mutation that cannot
  be delivered in this pass (backoff not elapsed, transient failure,
  unresolved temporary reference, earlier failed mutation) blocks every later
  mutation for the same entity, so causally dependent writes are never
  delivered out of order.
- Only one flush runs at a time. An enqueue during a flush requests one more
  pass instead of starting a parallel flusher.
- Tabs share the mutation log, so each send is preceded by a durable claim
  in the store. A mutation another tab has claimed is skipped (and blocks
  its entity) until that tab settles it; claims older than
  ``claim_timeout`` belong to a tab that died mid-send and are taken over.

Outcomes:

- Confirmed: the mutation is removed; for creates the authoritative id is
  recorded and remapped everywhere (store, relationship lists, ordering
  arrays, remaining queued mutations).
- Transient failure: attempts += 1 and the next attempt is pushed out by the
  retry policy; past the retry cap the mutation and its entity become
  ``failed`` and stay until retried or discarded.
- Permanent rejection: the mutation is removed and the pre-mutation snapshot
  restored, with later still-queued patches for the entity re-applied.

Subscribers receive a QueueEvent for every local state change so the
in-memory view and notifications can follow.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import ValidationError

from tasksync.core.broadcast import ChangeType, CrossTabBroadcaster, generate_tab_id
from tasksync.core.entities import (
    Entity,
    EntityKind,
    SyncStatus,
    apply_fields,
    entity_class,
    field_name,
    find_temp_ids,
    is_temp_id,
    parse_entity,
    path_temp_ids,
    replace_id_refs,
    replace_path_id,
    to_record,
    unwrap_payload,
    with_status,
)
from tasksync.core.store import LocalStore, record_key
from tasksync.core.sync.connectivity import ConnectivitySnapshot
from tasksync.core.sync.merge import reconcile_entity
from tasksync.core.sync.models import (
    DeliveryOutcome,
    FlushResult,
    MutationStatus,
    OpKind,
    PendingMutation,
    QueueEvent,
    QueueEventType,
    QueueStats,
)
from tasksync.core.sync.remote import PermanentRejectionError, RemoteAuthority
from tasksync.core.sync.retry import RetryPolicy, is_retryable_error

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
QueueListener = Callable[[QueueEvent], None]

# How many recent delivery outcomes to remember for deliver()
_OUTCOME_HISTORY = 256

# Seconds before a claim left by a vanished tab may be taken over
DEFAULT_CLAIM_TIMEOUT = 120.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MutationQueue:
    """
    Durable queue of pending mutations for one store.

    Args:
        store: Local store holding the mutation log and the entities
        remote: Remote authority mutations are delivered to
        connectivity: Injected online/offline flag
        retry_policy: Backoff schedule and retry cap
        broadcaster: Cross-tab broadcaster for queued/synced signals
        clock: Returns the current time (tests inject a fake)
        owner: Name this queue claims mutations under (defaults to the
            broadcaster's tab id)
        claim_timeout: Seconds after which another tab's claim is stale
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteAuthority,
        connectivity: ConnectivitySnapshot,
        retry_policy: RetryPolicy | None = None,
        *,
        broadcaster: CrossTabBroadcaster | None = None,
        clock: Clock | None = None,
        owner: str | None = None,
        claim_timeout: float = DEFAULT_CLAIM_TIMEOUT,
    ) -> None:
        self.store = store
        self.remote = remote
        self.connectivity = connectivity
        self.policy = retry_policy or RetryPolicy()
        self.broadcaster = broadcaster
        self._clock = clock or _utcnow
        if owner is None:
            owner = broadcaster.tab_id if broadcaster is not None else generate_tab_id()
        self.owner = owner
        self.claim_timeout = claim_timeout
        self._lock = asyncio.Lock()
        self._pass_requested = False
        self._in_flight: str | None = None
        self._listeners: list[QueueListener] = []
        self._outcomes: OrderedDict[str, tuple[DeliveryOutcome, str | None]] = OrderedDict()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, listener: QueueListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: QueueEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Queue listener failed on %s", event.type.value)

    def _signal(
        self,
        mutation: PendingMutation,
        change_type: ChangeType,
        data: dict[str, Any] | None = None,
    ) -> None:
        if self.broadcaster is not None:
            self.broadcaster.broadcast(mutation.entity_kind, mutation.entity_id, change_type, data)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save(self, mutation: PendingMutation) -> None:
        self.store.put_mutation(
            mutation.id,
            mutation.entity_key,
            mutation.status.value,
            mutation.model_dump(mode="json"),
        )

    def list_mutations(self, status: MutationStatus | None = None) -> list[PendingMutation]:
        """Queued mutations in enqueue order."""
        bodies = self.store.list_mutations(status.value if status else None)
        return [PendingMutation.model_validate(body) for body in bodies]

    def get(self, mutation_id: str) -> PendingMutation | None:
        body = self.store.get_mutation(mutation_id)
        return PendingMutation.model_validate(body) if body is not None else None

    def for_entity(self, kind: EntityKind, entity_id: str) -> list[PendingMutation]:
        """Entity-body mutations (not ordering writes) for one entity."""
        key = record_key(kind, entity_id)
        return [m for m in self.list_mutations() if m.order_scope is None and m.entity_key == key]

    def has_pending(self, kind: EntityKind, entity_id: str) -> bool:
        return bool(self.for_entity(kind, entity_id))

    def has_pending_order(self, scope_id: str) -> bool:
        return any(m.order_scope == scope_id for m in self.list_mutations())

    def pending_patches(self, kind: EntityKind) -> dict[str, list[dict[str, Any]]]:
        """Entity id -> queued update payloads, oldest first."""
        patches: dict[str, list[dict[str, Any]]] = {}
        for m in self.list_mutations():
            if m.entity_kind == kind and m.order_scope is None and m.op_kind == OpKind.UPDATE:
                if m.payload:
                    patches.setdefault(m.entity_id, []).append(m.payload)
        return patches

    def pending_deletes(self, kind: EntityKind) -> set[str]:
        return {
            m.entity_id
            for m in self.list_mutations()
            if m.entity_kind == kind and m.order_scope is None and m.op_kind == OpKind.DELETE
        }

    def stats(self) -> QueueStats:
        return QueueStats(
            pending=self.store.count_mutations(MutationStatus.PENDING.value),
            failed=self.store.count_mutations(MutationStatus.FAILED.value),
        )

    def next_retry_at(self) -> datetime | None:
        """Earliest scheduled retry among pending mutations."""
        scheduled = [
            m.next_attempt_at
            for m in self.list_mutations(MutationStatus.PENDING)
            if m.next_attempt_at is not None
        ]
        return min(scheduled) if scheduled else None

    def now(self) -> datetime:
        return self._clock()

    @property
    def is_flushing(self) -> bool:
        return self._lock.locked()

    def _stale_before(self) -> str:
        return (self._clock() - timedelta(seconds=self.claim_timeout)).isoformat()

    def claimed_elsewhere(self, mutation_id: str) -> bool:
        """True while another tab holds a live claim on the mutation."""
        claim = self.store.get_mutation_claim(mutation_id)
        if claim is None:
            return False
        owner, claimed_at = claim
        return owner != self.owner and claimed_at >= self._stale_before()

    @contextlib.asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        """Hold off flushes (e.g. while a resync merges a snapshot)."""
        async with self._lock:
            yield

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(
        self,
        op_kind: OpKind,
        entity_kind: EntityKind,
        entity_id: str,
        target_path: str,
        method: str,
        payload: dict[str, Any] | None = None,
        *,
        snapshot: dict[str, Any] | None = None,
        order_snapshots: dict[str, list[str] | None] | None = None,
        order_scope: str | None = None,
        parent_id: str | None = None,
    ) -> str:
        """
        Record a mutation durably.

        Always succeeds; delivery happens on the next flush.

        Returns:
            The mutation id
        """
        mutation = PendingMutation(
            op_kind=op_kind,
            entity_kind=entity_kind,
            entity_id=entity_id,
            target_path=target_path,
            method=method.upper(),
            payload=payload,
            snapshot=snapshot,
            order_snapshots=order_snapshots or {},
            order_scope=order_scope,
            parent_id=parent_id,
            temp_id=entity_id if op_kind == OpKind.CREATE and is_temp_id(entity_id) else None,
            enqueued_at=self._clock(),
        )
        self._save(mutation)
        if self._lock.locked():
            self._pass_requested = True
        logger.debug(
            "Queued %s %s %s/%s (%s %s)",
            mutation.id,
            op_kind.value,
            entity_kind.value,
            entity_id,
            mutation.method,
            target_path,
        )
        self._signal(mutation, ChangeType.MUTATION_QUEUED, {"mutationId": mutation.id})
        return mutation.id

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    async def flush(self) -> FlushResult:
        """
        Deliver every due mutation, in enqueue order.

        Returns immediately with an empty result while offline.
        """
        result = FlushResult()
        async with self._lock:
            while True:
                self._pass_requested = False
                if self.connectivity.is_offline:
                    logger.debug("Offline, flush deferred")
                    break
                await self._flush_pass(result)
                if not self._pass_requested:
                    break

        if result.attempted:
            logger.info(
                "Flush complete: %d delivered, %d rejected, %d retrying, %d failed",
                len(result.delivered),
                len(result.rejected),
                len(result.retried),
                len(result.failed),
            )
        return result

    async def _flush_pass(self, result: FlushResult) -> None:
        now = self._clock()
        blocked = {m.entity_key for m in self.list_mutations(MutationStatus.FAILED)}

        for queued in self.list_mutations(MutationStatus.PENDING):
            if self.connectivity.is_offline:
                break
            # Re-read: an earlier confirmation may have remapped this one
            mutation = self.get(queued.id)
            if mutation is None or mutation.status != MutationStatus.PENDING:
                continue
            key = mutation.entity_key
            if (
                key in blocked
                or not mutation.is_due(now)
                or self.claimed_elsewhere(mutation.id)
            ):
                blocked.add(key)
                result.deferred.append(mutation.id)
                continue
            resolved = self._resolve_references(mutation)
            if resolved is None:
                blocked.add(key)
                result.deferred.append(mutation.id)
                continue
            outcome = await self._deliver(resolved, result)
            if outcome not in (DeliveryOutcome.DELIVERED, DeliveryOutcome.REJECTED):
                blocked.add(resolved.entity_key)

    async def deliver(self, mutation_id: str) -> DeliveryOutcome:
        """
        Deliver one mutation now, if nothing queued before it is in the way.

        Used by write paths that report a definite outcome to the caller
        (manual reorder). Waits for any running flush first.
        """
        async with self._lock:
            mutation = self.get(mutation_id)
            if mutation is None:
                recorded = self._outcomes.get(mutation_id)
                return recorded[0] if recorded else DeliveryOutcome.MISSING
            if mutation.status == MutationStatus.FAILED:
                return DeliveryOutcome.FAILED
            if self.claimed_elsewhere(mutation.id):
                return DeliveryOutcome.DEFERRED
            if self.connectivity.is_offline or not mutation.is_due(self._clock()):
                return DeliveryOutcome.DEFERRED
            for earlier in self.list_mutations():
                if earlier.id == mutation.id:
                    break
                if earlier.entity_key == mutation.entity_key:
                    return DeliveryOutcome.DEFERRED
            resolved = self._resolve_references(mutation)
            if resolved is None:
                return DeliveryOutcome.DEFERRED
            return await self._deliver(resolved, FlushResult())

    def _resolve_references(self, mutation: PendingMutation) -> PendingMutation | None:
        """
        Replace temporary ids already confirmed elsewhere.

        Returns None while a referenced temporary id is still unconfirmed
        (other than a create's own id).
        """
        referenced = path_temp_ids(mutation.target_path) | find_temp_ids(mutation.payload)
        if mutation.op_kind == OpKind.CREATE:
            referenced.discard(mutation.entity_id)
        if not referenced:
            return mutation

        path, payload, entity_id = mutation.target_path, mutation.payload, mutation.entity_id
        for temp_id in sorted(referenced):
            real_id = self.store.resolve_id(temp_id)
            if real_id is None:
                logger.debug("Mutation %s waits for %s", mutation.id, temp_id)
                return None
            path = replace_path_id(path, temp_id, real_id)
            payload = replace_id_refs(payload, temp_id, real_id)
            if entity_id == temp_id:
                entity_id = real_id

        resolved = mutation.model_copy(
            update={"target_path": path, "payload": payload, "entity_id": entity_id}
        )
        self._save(resolved)
        return resolved

    def _record(
        self,
        mutation_id: str,
        outcome: DeliveryOutcome,
        reason: str | None = None,
    ) -> None:
        self._outcomes[mutation_id] = (outcome, reason)
        while len(self._outcomes) > _OUTCOME_HISTORY:
            self._outcomes.popitem(last=False)

    def outcome_reason(self, mutation_id: str) -> str | None:
        """Error text of the latest delivery attempt of a mutation, if it failed."""
        recorded = self._outcomes.get(mutation_id)
        return recorded[1] if recorded else None

    async def _deliver(self, mutation: PendingMutation, result: FlushResult) -> DeliveryOutcome:
        now = self._clock().isoformat()
        if not self.store.claim_mutation(mutation.id, self.owner, now, self._stale_before()):
            logger.debug("Mutation %s is being delivered by another tab", mutation.id)
            result.deferred.append(mutation.id)
            return DeliveryOutcome.DEFERRED
        self._in_flight = mutation.id
        try:
            return await self._send(mutation, result)
        finally:
            self._in_flight = None
            self.store.release_mutation(mutation.id, self.owner)

    async def _send(self, mutation: PendingMutation, result: FlushResult) -> DeliveryOutcome:
        try:
            body = await self.remote.send(mutation.method, mutation.target_path, mutation.payload)
        except PermanentRejectionError as e:
            self._record(mutation.id, DeliveryOutcome.REJECTED, e.reason or str(e))
            self._reject(mutation, e)
            result.rejected.append(mutation.id)
            return DeliveryOutcome.REJECTED
        except Exception as e:
            if not is_retryable_error(e):
                raise
            outcome = self._schedule_retry(mutation, str(e))
            if outcome == DeliveryOutcome.FAILED:
                result.failed.append(mutation.id)
            else:
                result.retried.append(mutation.id)
            self._record(mutation.id, outcome, str(e))
            return outcome

        self._confirm(mutation, body, result)
        result.delivered.append(mutation.id)
        self._record(mutation.id, DeliveryOutcome.DELIVERED)
        return DeliveryOutcome.DELIVERED

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _confirm(
        self, mutation: PendingMutation, body: dict[str, Any], result: FlushResult
    ) -> None:
        self.store.delete_mutation(mutation.id)
        entity: Entity | None = None
        real_id: str | None = None

        if mutation.order_scope is not None:
            entity = self._settle_order(mutation)
        elif mutation.op_kind != OpKind.DELETE:
            fields = unwrap_payload(mutation.entity_kind, body)
            entity_id = mutation.entity_id
            server_id = fields.get("id")
            if (
                mutation.op_kind == OpKind.CREATE
                and is_temp_id(entity_id)
                and isinstance(server_id, str)
                and server_id
                and server_id != entity_id
            ):
                real_id = server_id
                self._remap(mutation, real_id)
                result.id_mappings[entity_id] = real_id
                entity_id = real_id
            entity = self._settle_entity(mutation.entity_kind, entity_id, fields)

        logger.debug("Confirmed %s (%s %s)", mutation.id, mutation.method, mutation.target_path)
        self._emit(QueueEvent(QueueEventType.CONFIRMED, mutation, entity=entity))
        self._signal(
            mutation,
            ChangeType.MUTATION_SYNCED,
            {"mutationId": mutation.id, "tempId": mutation.temp_id, "realId": real_id},
        )

    def _settle_entity(
        self,
        kind: EntityKind,
        entity_id: str,
        fields: dict[str, Any],
    ) -> Entity | None:
        """Write the confirmed server body, keeping still-queued local edits."""
        local = self.store.get(kind, entity_id)
        remaining = self.for_entity(kind, entity_id)
        if any(m.op_kind == OpKind.DELETE for m in remaining):
            # Deleted locally while the write was in flight
            return None
        patches = [m.payload for m in remaining if m.op_kind == OpKind.UPDATE and m.payload]

        entity: Entity | None
        if not fields:
            entity = local
        else:
            cls = entity_class(kind)
            base = to_record(local) if local is not None else {}
            try:
                server = parse_entity(kind, {**base, **fields, "id": entity_id})
            except ValidationError as e:
                logger.warning(
                    "Ignoring invalid server body for %s %s: %s", kind.value, entity_id, e
                )
                server = None
            if server is None:
                entity = local
            else:
                entity = reconcile_entity(
                    server,
                    local,
                    patches,
                    server_fields={field_name(cls, key) for key in fields},
                )

        if entity is None:
            return None
        # A temporary id stays pending until the authority names the entity
        unconfirmed = bool(remaining) or is_temp_id(entity.id)
        entity = with_status(entity, SyncStatus.PENDING if unconfirmed else SyncStatus.SYNCED)
        self.store.put(entity)
        return entity

    def _settle_order(self, mutation: PendingMutation) -> Entity | None:
        """Mirror a confirmed ordering array into the list entity, if cached."""
        scope_id = mutation.order_scope
        order = (mutation.payload or {}).get("order")
        if scope_id is None or not isinstance(order, list):
            return None
        task_list = self.store.get(EntityKind.LIST, scope_id)
        if task_list is None:
            return None
        task_list = task_list.model_copy(update={"manual_sort_order": list(order)})
        self.store.put(task_list)
        return task_list

    def _remap(self, mutation: PendingMutation, real_id: str) -> None:
        """Replace a confirmed temporary id in the store and in every queued mutation."""
        temp_id = mutation.entity_id
        self.store.remap_id(mutation.entity_kind, temp_id, real_id)

        for other in self.list_mutations():
            updated = other.model_copy(
                update={
                    "entity_id": real_id if other.entity_id == temp_id else other.entity_id,
                    "target_path": replace_path_id(other.target_path, temp_id, real_id),
                    "payload": replace_id_refs(other.payload, temp_id, real_id),
                    "snapshot": replace_id_refs(other.snapshot, temp_id, real_id),
                    "order_snapshots": {
                        (real_id if scope == temp_id else scope): replace_id_refs(
                            ids, temp_id, real_id
                        )
                        for scope, ids in other.order_snapshots.items()
                    },
                    "order_scope": real_id if other.order_scope == temp_id else other.order_scope,
                }
            )
            if updated != other:
                self._save(updated)

        logger.info("Confirmed %s %s as %s", mutation.entity_kind.value, temp_id, real_id)
        self._emit(
            QueueEvent(QueueEventType.REMAPPED, mutation, temp_id=temp_id, real_id=real_id)
        )

    def _schedule_retry(self, mutation: PendingMutation, error: str) -> DeliveryOutcome:
        attempts = mutation.attempts + 1

        if self.policy.exhausted(attempts):
            failed = mutation.model_copy(
                update={
                    "attempts": attempts,
                    "status": MutationStatus.FAILED,
                    "last_error": error,
                    "next_attempt_at": None,
                }
            )
            self._save(failed)
            entity = self._mark_entity(failed, SyncStatus.FAILED)
            logger.warning(
                "Mutation %s failed after %d attempts: %s", mutation.id, attempts, error
            )
            self._emit(QueueEvent(QueueEventType.FAILED, failed, entity=entity, reason=error))
            return DeliveryOutcome.FAILED

        delay = self.policy.calculate_delay(attempts - 1)
        retry = mutation.model_copy(
            update={
                "attempts": attempts,
                "last_error": error,
                "next_attempt_at": self._clock() + timedelta(seconds=delay),
            }
        )
        self._save(retry)
        logger.info(
            "Delivery of %s failed (attempt %d), retrying in %.1fs: %s",
            mutation.id,
            attempts,
            delay,
            error,
        )
        self._emit(QueueEvent(QueueEventType.RETRY_SCHEDULED, retry, reason=error))
        return DeliveryOutcome.RETRY

    def _mark_entity(self, mutation: PendingMutation, status: SyncStatus) -> Entity | None:
        if mutation.order_scope is not None:
            return None
        entity = self.store.get(mutation.entity_kind, mutation.entity_id)
        if entity is None:
            return None
        if entity.sync_status != status:
            entity = with_status(entity, status)
            self.store.put(entity)
        return entity

    def _reject(self, mutation: PendingMutation, error: PermanentRejectionError) -> None:
        self.store.delete_mutation(mutation.id)
        entity, removed = self._rollback(mutation)
        logger.warning(
            "Mutation %s rejected (%s), rolled back %s %s",
            mutation.id,
            error,
            mutation.entity_kind.value,
            mutation.order_scope or mutation.entity_id,
        )
        self._emit(
            QueueEvent(
                QueueEventType.REJECTED,
                mutation,
                entity=entity,
                reason=error.reason or str(error),
                removed=removed,
            )
        )

    def _rollback(self, mutation: PendingMutation) -> tuple[Entity | None, bool]:
        """
        Undo a mutation that will never be delivered.

        The mutation must already be removed from the log. Returns the
        restored entity (if any) and whether the entity no longer exists
        locally.
        """
        for scope_id, previous in mutation.order_snapshots.items():
            later = [m for m in self.list_mutations() if scope_id in m.order_snapshots]
            if later:
                # The next write for this scope now starts from our snapshot
                successor = later[0]
                self._save(
                    successor.model_copy(
                        update={
                            "order_snapshots": {
                                **successor.order_snapshots,
                                scope_id: previous,
                            }
                        }
                    )
                )
                continue
            if previous is None:
                self.store.delete_order(scope_id)
            else:
                self.store.put_order(scope_id, previous)

        if mutation.order_scope is not None:
            return None, False

        kind, entity_id = mutation.entity_kind, mutation.entity_id
        later = self.for_entity(kind, entity_id)

        if mutation.op_kind == OpKind.CREATE:
            for m in later:
                self.store.delete_mutation(m.id)
            self.store.delete(kind, entity_id)
            for scope_id, ids in self.store.list_orders().items():
                if entity_id in ids:
                    self.store.put_order(scope_id, [i for i in ids if i != entity_id])
            return None, True

        if later:
            self._save(later[0].model_copy(update={"snapshot": mutation.snapshot}))
            if any(m.op_kind == OpKind.DELETE for m in later):
                return None, True

        if mutation.snapshot is None:
            return self.store.get(kind, entity_id), False

        entity = parse_entity(kind, mutation.snapshot)
        for m in later:
            if m.op_kind == OpKind.UPDATE and m.payload:
                entity = apply_fields(entity, m.payload)
        entity = with_status(entity, SyncStatus.PENDING if later else SyncStatus.SYNCED)
        self.store.put(entity)
        return entity, False

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def retry_failed(self) -> int:
        """Move every failed mutation back to pending with a fresh retry budget."""
        count = 0
        for mutation in self.list_mutations(MutationStatus.FAILED):
            reset = mutation.model_copy(
                update={
                    "status": MutationStatus.PENDING,
                    "attempts": 0,
                    "next_attempt_at": None,
                    "last_error": None,
                }
            )
            self._save(reset)
            entity = self._mark_entity(reset, SyncStatus.PENDING)
            self._emit(QueueEvent(QueueEventType.RESTORED, reset, entity=entity))
            count += 1
        if count:
            logger.info("Retrying %d failed mutations", count)
        return count

    def cancel(self, mutation_id: str) -> bool:
        """
        Discard a mutation and roll back its optimistic change.

        Returns False if the mutation does not exist or is being delivered.
        """
        mutation = self.get(mutation_id)
        if mutation is None:
            return False
        if mutation.id == self._in_flight or self.claimed_elsewhere(mutation.id):
            logger.warning("Cannot discard %s while it is being delivered", mutation_id)
            return False
        self.store.delete_mutation(mutation.id)
        entity, removed = self._rollback(mutation)
        logger.info("Discarded mutation %s", mutation_id)
        self._emit(QueueEvent(QueueEventType.CANCELLED, mutation, entity=entity, removed=removed))
        return True

    def clear(self) -> int:
        """Discard every queued mutation, newest first, rolling each back."""
        count = 0
        for mutation in reversed(self.list_mutations()):
            if self.cancel(mutation.id):
                count += 1
        return count

    def discard_unsent(self, kind: EntityKind, entity_id: str) -> bool:
        """
        Drop every mutation of an entity whose create never left the device.

        Deleting such an entity needs no network call at all. Returns False
        (and changes nothing) when the create has been sent or is in flight.
        """
        mutations = self.for_entity(kind, entity_id)
        if not mutations or mutations[0].op_kind != OpKind.CREATE:
            return False
        if any(m.id == self._in_flight or self.claimed_elsewhere(m.id) for m in mutations):
            return False
        for m in mutations:
            self.store.delete_mutation(m.id)
        logger.debug("Dropped %d unsent mutations for %s", len(mutations), entity_id)
        return True
