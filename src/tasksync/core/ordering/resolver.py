"""
Manual order resolver.

Every list (and the virtual "my tasks" grouping) keeps an explicit ordering
array of member ids. A list's array is written to the list's manual-order
endpoint; the "my tasks" array is part of the user's preferences. A drag
gesture is turned into a new array, applied optimistically, written through
the mutation queue and rolled back exactly if the authority refuses it.

Invariant: after any sequence of reorders, committed or rolled back, the
effective order of a list is a permutation of its current member ids.
Stored arrays are normalized lazily: ids that left the list are pruned and
members not yet in the array are appended at the end.

Concurrent edits from other tabs follow "last commit wins per list":
membership is recomputed when a reorder commits, so an item another tab
moved away is pruned rather than resurrected.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from typing import Any, Protocol

from tasksync.core.entities import Entity, EntityKind, SyncStatus, Task, to_record
from tasksync.core.ordering.models import (
    MY_TASKS_SCOPE,
    DragState,
    DropPosition,
    DropTarget,
    ReorderOutcome,
    ReorderResult,
)
from tasksync.core.store import LocalStore
from tasksync.core.sync import (
    MY_TASKS_PREFERENCES_PATH,
    DeliveryOutcome,
    MutationQueue,
    OpKind,
    entity_path,
    order_path,
)

logger = logging.getLogger(__name__)

DEFAULT_HOVER_THROTTLE = 0.08
DEFAULT_FLIP_THROTTLE = 0.04


def normalize_order(existing: Iterable[str], member_ids: Iterable[str]) -> list[str]:
    """
    Make an ordering array cover exactly the current members.

    Keeps the relative order of ``existing``, drops ids that are no longer
    members and duplicates, then appends unseen members in the order given.
    """
    members = list(dict.fromkeys(member_ids))
    member_set = set(members)
    order: list[str] = []
    seen: set[str] = set()
    for item_id in existing:
        if item_id in member_set and item_id not in seen:
            order.append(item_id)
            seen.add(item_id)
    order.extend(item_id for item_id in members if item_id not in seen)
    return order


def compute_reorder(
    order: list[str],
    moved_id: str,
    target_id: str | None,
    position: DropPosition,
) -> list[str]:
    """
    Move ``moved_id`` next to ``target_id`` (or to the end).

    Raises:
        ValueError: If ``moved_id`` or a required ``target_id`` is not in ``order``
    """
    if moved_id not in order:
        raise ValueError(f"{moved_id} is not in the order")
    if position == DropPosition.END:
        return [item_id for item_id in order if item_id != moved_id] + [moved_id]
    if target_id is None or target_id not in order:
        raise ValueError(f"Drop target {target_id} is not in the order")
    if target_id == moved_id:
        return list(order)

    result = [item_id for item_id in order if item_id != moved_id]
    index = result.index(target_id)
    if position == DropPosition.BELOW:
        index += 1
    result.insert(index, moved_id)
    return result


class DragSession:
    """
    State of one drag gesture.

    idle -> dragging -> (hovering)* -> committing -> idle, or
    committing -> rolled_back -> idle when the commit fails.

    Hover updates are throttled: a different target is accepted at most every
    ``hover_throttle`` seconds, an above/below flip on the same target at most
    every ``flip_throttle`` seconds.
    """

    def __init__(
        self,
        *,
        hover_throttle: float = DEFAULT_HOVER_THROTTLE,
        flip_throttle: float = DEFAULT_FLIP_THROTTLE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.hover_throttle = hover_throttle
        self.flip_throttle = flip_throttle
        self._clock = clock
        self.state = DragState.IDLE
        self.scope_id: str | None = None
        self.moved_id: str | None = None
        self.current: tuple[str, str | None, DropPosition] | None = None
        self._last_accepted: float | None = None

    def _require(self, *states: DragState) -> None:
        if self.state not in states:
            raise RuntimeError(f"Drag session is {self.state.value}")

    def begin(self, scope_id: str, moved_id: str) -> None:
        self._require(DragState.IDLE, DragState.ROLLED_BACK)
        self.state = DragState.DRAGGING
        self.scope_id = scope_id
        self.moved_id = moved_id
        self.current = None
        self._last_accepted = None

    def hover(
        self,
        target_id: str | None,
        position: DropPosition,
        *,
        list_id: str | None = None,
    ) -> bool:
        """
        Report the pointer over ``target_id``. Returns True if accepted.
        """
        self._require(DragState.DRAGGING, DragState.HOVERING)
        if target_id is not None and target_id == self.moved_id:
            return False
        assert self.scope_id is not None
        candidate = (list_id or self.scope_id, target_id, position)
        if candidate == self.current:
            return False

        now = self._clock()
        if self.current is not None and self._last_accepted is not None:
            same_target = self.current[:2] == candidate[:2]
            threshold = self.flip_throttle if same_target else self.hover_throttle
            if now - self._last_accepted < threshold:
                return False

        self.current = candidate
        self._last_accepted = now
        self.state = DragState.HOVERING
        return True

    def hover_end(self, list_id: str | None = None) -> bool:
        """Report the pointer past the last item of a list."""
        return self.hover(None, DropPosition.END, list_id=list_id)

    def drop(self) -> DropTarget | None:
        """End the gesture. Returns None when nothing was hovered."""
        self._require(DragState.DRAGGING, DragState.HOVERING)
        if self.current is None:
            self.reset()
            return None
        assert self.scope_id is not None and self.moved_id is not None
        list_id, target_id, position = self.current
        self.state = DragState.COMMITTING
        return DropTarget(
            list_id=list_id,
            target_id=target_id,
            position=position,
            source_list_id=self.scope_id,
            moved_id=self.moved_id,
        )

    def finish(self, outcome: ReorderOutcome) -> None:
        self._require(DragState.COMMITTING)
        if outcome in (ReorderOutcome.ROLLED_BACK, ReorderOutcome.REJECTED):
            self.state = DragState.ROLLED_BACK
        else:
            self.reset()

    def reset(self) -> None:
        self.state = DragState.IDLE
        self.scope_id = None
        self.moved_id = None
        self.current = None
        self._last_accepted = None


class OrderingHost(Protocol):
    """What the resolver needs from the engine."""

    def member_ids(self, scope_id: str) -> list[str]: ...

    def order_changed(self, scope_id: str) -> None: ...

    def entity_changed(self, entity: Entity) -> None: ...


class ManualOrderResolver:
    """
    Optimistic write path for ordering arrays.

    Args:
        store: Local store holding the ordering arrays
        queue: Mutation queue used to reach the authority
        host: Supplies list membership and re-renders after changes
        virtual_scopes: Scopes with no list behind them; their order is saved
            in the user's my-tasks preferences
    """

    def __init__(
        self,
        store: LocalStore,
        queue: MutationQueue,
        host: OrderingHost,
        *,
        virtual_scopes: Iterable[str] = (MY_TASKS_SCOPE,),
    ) -> None:
        self.store = store
        self.queue = queue
        self.host = host
        self.virtual_scopes = frozenset(virtual_scopes)

    def current_order(self, scope_id: str) -> list[str]:
        """The effective order: the stored array normalized to current members."""
        return normalize_order(self.store.get_order(scope_id) or [], self.host.member_ids(scope_id))

    def _apply(self, scope_id: str, order: list[str]) -> None:
        self.store.put_order(scope_id, order)
        self.host.order_changed(scope_id)

    def _order_write(self, scope_id: str, order: list[str]) -> tuple[str, str, dict[str, Any]]:
        """Method, path and body that persist ``order`` for a scope."""
        if scope_id in self.virtual_scopes:
            return "PATCH", MY_TASKS_PREFERENCES_PATH, {"manualSortOrder": order}
        return "POST", order_path(scope_id), {"order": order}

    async def reorder(
        self,
        scope_id: str,
        moved_id: str,
        target_id: str | None = None,
        position: DropPosition = DropPosition.END,
    ) -> ReorderResult:
        """
        Move one item within a list.

        Returns:
            The outcome and the order now in effect
        """
        stored = self.store.get_order(scope_id)
        previous = list(stored) if stored is not None else None
        current = normalize_order(stored or [], self.host.member_ids(scope_id))

        try:
            new_order = compute_reorder(current, moved_id, target_id, position)
        except ValueError as e:
            return ReorderResult(
                outcome=ReorderOutcome.REJECTED,
                scope_id=scope_id,
                order=current,
                previous=previous,
                reason=str(e),
            )

        # Stale ids in the stored array are pruned by the next real write
        if new_order == current:
            return ReorderResult(
                outcome=ReorderOutcome.NOOP, scope_id=scope_id, order=current, previous=previous
            )

        self._apply(scope_id, new_order)
        method, path, body = self._order_write(scope_id, new_order)
        mutation_id = self.queue.enqueue(
            OpKind.UPDATE,
            EntityKind.LIST,
            scope_id,
            path,
            method,
            body,
            order_snapshots={scope_id: previous},
            order_scope=scope_id,
        )
        if self.queue.connectivity.is_offline:
            return ReorderResult(
                outcome=ReorderOutcome.QUEUED,
                scope_id=scope_id,
                order=new_order,
                previous=previous,
                mutation_id=mutation_id,
            )

        outcome = await self.queue.deliver(mutation_id)
        if outcome == DeliveryOutcome.DELIVERED:
            return ReorderResult(
                outcome=ReorderOutcome.COMMITTED,
                scope_id=scope_id,
                order=new_order,
                previous=previous,
                mutation_id=mutation_id,
            )

        if outcome in (DeliveryOutcome.RETRY, DeliveryOutcome.FAILED):
            # A reorder is not kept around for retries: restore it now
            reason = self.queue.outcome_reason(mutation_id)
            self.queue.cancel(mutation_id)
        elif outcome == DeliveryOutcome.REJECTED:
            reason = self.queue.outcome_reason(mutation_id)
        else:
            return ReorderResult(
                outcome=ReorderOutcome.QUEUED,
                scope_id=scope_id,
                order=new_order,
                previous=previous,
                mutation_id=mutation_id,
            )

        logger.warning("Reorder of %s rolled back: %s", scope_id, reason)
        self.host.order_changed(scope_id)
        return ReorderResult(
            outcome=ReorderOutcome.ROLLED_BACK,
            scope_id=scope_id,
            order=self.current_order(scope_id),
            previous=previous,
            reason=reason,
            mutation_id=mutation_id,
        )

    async def move_between_lists(
        self,
        task_id: str,
        target_list_id: str,
        *,
        source_list_id: str | None = None,
        add: bool = False,
    ) -> ReorderResult:
        """
        Change which lists a task belongs to.

        Without ``add`` the task leaves ``source_list_id`` (or every list when
        no source is given) and joins ``target_list_id``; with ``add`` it
        joins without leaving. The task is appended to the target's ordering
        array and removed from the arrays of the lists it left. Rejection
        restores the task and every touched array.
        """
        task = self.store.get(EntityKind.TASK, task_id)
        if not isinstance(task, Task):
            return ReorderResult(
                outcome=ReorderOutcome.REJECTED,
                scope_id=target_list_id,
                reason=f"Unknown task {task_id}",
            )

        old_ids = list(task.list_ids)
        if add:
            new_ids = list(old_ids)
        elif source_list_id is not None:
            new_ids = [list_id for list_id in old_ids if list_id != source_list_id]
        else:
            new_ids = []
        if target_list_id not in new_ids:
            new_ids.append(target_list_id)

        if new_ids == old_ids:
            return ReorderResult(
                outcome=ReorderOutcome.NOOP,
                scope_id=target_list_id,
                order=self.current_order(target_list_id),
            )

        added = [list_id for list_id in new_ids if list_id not in old_ids]
        removed = [list_id for list_id in old_ids if list_id not in new_ids]
        order_snapshots: dict[str, list[str] | None] = {}
        for list_id in added + removed:
            stored = self.store.get_order(list_id)
            if stored is None:
                continue
            order_snapshots[list_id] = list(stored)
            remaining = [item_id for item_id in stored if item_id != task_id]
            self.store.put_order(list_id, remaining + [task_id] if list_id in added else remaining)

        snapshot = to_record(task)
        updated = task.model_copy(update={"list_ids": new_ids, "sync_status": SyncStatus.PENDING})
        self.store.put(updated)
        self.host.entity_changed(updated)
        for list_id in added + removed:
            self.host.order_changed(list_id)

        mutation_id = self.queue.enqueue(
            OpKind.UPDATE,
            EntityKind.TASK,
            task_id,
            entity_path(EntityKind.TASK, task_id),
            "PUT",
            {"listIds": new_ids},
            snapshot=snapshot,
            order_snapshots=order_snapshots,
        )
        logger.debug("Moved %s from %s to %s", task_id, removed, added)

        outcome = DeliveryOutcome.DEFERRED
        if not self.queue.connectivity.is_offline:
            outcome = await self.queue.deliver(mutation_id)

        if outcome == DeliveryOutcome.REJECTED:
            for list_id in added + removed:
                self.host.order_changed(list_id)
            return ReorderResult(
                outcome=ReorderOutcome.ROLLED_BACK,
                scope_id=target_list_id,
                order=self.current_order(target_list_id),
                reason=self.queue.outcome_reason(mutation_id),
                mutation_id=mutation_id,
            )
        return ReorderResult(
            outcome=(
                ReorderOutcome.COMMITTED
                if outcome == DeliveryOutcome.DELIVERED
                else ReorderOutcome.QUEUED
            ),
            scope_id=target_list_id,
            order=self.current_order(target_list_id),
            mutation_id=mutation_id,
        )

    async def commit_drag(self, session: DragSession) -> ReorderResult:
        """Drop a drag session and commit the resulting reorder or move."""
        scope_id = session.scope_id or ""
        target = session.drop()
        if target is None:
            return ReorderResult(
                outcome=ReorderOutcome.NOOP,
                scope_id=scope_id,
                order=self.current_order(scope_id) if scope_id else [],
            )

        if target.is_move:
            result = await self.move_between_lists(
                target.moved_id, target.list_id, source_list_id=target.source_list_id
            )
            if result.applied and target.position != DropPosition.END:
                placed = await self.reorder(
                    target.list_id, target.moved_id, target.target_id, target.position
                )
                if placed.outcome != ReorderOutcome.NOOP:
                    result = result.model_copy(update={"order": placed.order})
        else:
            result = await self.reorder(
                target.list_id, target.moved_id, target.target_id, target.position
            )

        session.finish(result.outcome)
        return result
