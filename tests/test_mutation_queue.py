"""Tests for the durable mutation queue."""

import asyncio

import pytest

from tasksync.core.entities import EntityKind, SyncStatus, Task, TaskList, to_record
from tasksync.core.store import LocalStore
from tasksync.core.sync import (
    ConnectivitySnapshot,
    DeliveryOutcome,
    MutationQueue,
    MutationStatus,
    OpKind,
    OrderingConflictError,
    PermanentRejectionError,
    QueueEventType,
    RetryPolicy,
    TransientDeliveryError,
    order_path,
)


def record_events(queue: MutationQueue) -> list:
    events: list = []
    queue.subscribe(events.append)
    return events


def optimistic_update(store, queue, task: Task, patch: dict) -> str:
    """Apply a patch locally the way the engine does and queue it."""
    store.put(task.model_copy(update={**patch, "sync_status": SyncStatus.PENDING}))
    return queue.enqueue(
        OpKind.UPDATE,
        EntityKind.TASK,
        task.id,
        f"/api/tasks/{task.id}",
        "PUT",
        patch,
        snapshot=to_record(task),
    )


class TestEnqueue:
    """Tests for recording intent."""

    def test_enqueue_persists(self, queue) -> None:
        """Test a queued mutation is immediately visible in the log."""
        mutation_id = queue.enqueue(
            OpKind.UPDATE, EntityKind.TASK, "task-1", "/api/tasks/task-1", "put", {"title": "x"}
        )
        mutation = queue.get(mutation_id)
        assert mutation.method == "PUT"
        assert mutation.status == MutationStatus.PENDING
        assert queue.stats().pending == 1
        assert queue.has_pending(EntityKind.TASK, "task-1")

    def test_enqueue_works_offline(self, store, remote, clock) -> None:
        """Test enqueue never depends on connectivity."""
        queue = MutationQueue(store, remote, ConnectivitySnapshot(offline=True), clock=clock)
        queue.enqueue(OpKind.DELETE, EntityKind.TASK, "task-1", "/api/tasks/task-1", "DELETE")
        assert queue.stats().total == 1

    def test_create_records_temp_id(self, queue) -> None:
        mutation_id = queue.enqueue(
            OpKind.CREATE, EntityKind.TASK, "temp-abc", "/api/tasks", "POST", {"title": "x"}
        )
        assert queue.get(mutation_id).temp_id == "temp-abc"

    def test_queue_survives_restart(self, tmp_path, remote, connectivity, clock) -> None:
        """Test the log is durable across store instances."""
        db_path = tmp_path / "store.db"
        first = LocalStore(db_path)
        MutationQueue(first, remote, connectivity, clock=clock).enqueue(
            OpKind.UPDATE, EntityKind.TASK, "task-1", "/api/tasks/task-1", "PUT", {"title": "a"}
        )
        first.close()

        second = LocalStore(db_path)
        restored = MutationQueue(second, remote, connectivity, clock=clock).list_mutations()
        second.close()
        assert [m.payload for m in restored] == [{"title": "a"}]

    def test_pending_patches_and_deletes(self, queue) -> None:
        queue.enqueue(OpKind.UPDATE, EntityKind.TASK, "a", "/api/tasks/a", "PUT", {"title": "1"})
        queue.enqueue(OpKind.UPDATE, EntityKind.TASK, "a", "/api/tasks/a", "PUT", {"done": True})
        queue.enqueue(OpKind.DELETE, EntityKind.TASK, "b", "/api/tasks/b", "DELETE")
        assert queue.pending_patches(EntityKind.TASK) == {"a": [{"title": "1"}, {"done": True}]}
        assert queue.pending_deletes(EntityKind.TASK) == {"b"}


class TestFlush:
    """Tests for in-order delivery and id remapping."""

    @pytest.mark.asyncio
    async def test_flush_offline_sends_nothing(self, store, remote, clock) -> None:
        queue = MutationQueue(store, remote, ConnectivitySnapshot(offline=True), clock=clock)
        queue.enqueue(OpKind.UPDATE, EntityKind.TASK, "a", "/api/tasks/a", "PUT", {"title": "x"})
        result = await queue.flush()
        assert result.attempted == 0
        assert remote.sent == []

    @pytest.mark.asyncio
    async def test_create_then_update_is_remapped(self, store, queue, remote) -> None:
        """Test the update queued against a temp id is sent to the real id."""
        store.put(Task(id="temp-1", title="Draft", sync_status=SyncStatus.PENDING))
        queue.enqueue(OpKind.CREATE, EntityKind.TASK, "temp-1", "/api/tasks", "POST", {"title": "Draft"})
        queue.enqueue(
            OpKind.UPDATE, EntityKind.TASK, "temp-1", "/api/tasks/temp-1", "PUT", {"completed": True}
        )
        events = record_events(queue)

        result = await queue.flush()

        assert remote.sent == [
            ("POST", "/api/tasks", {"title": "Draft"}),
            ("PUT", "/api/tasks/task-101", {"completed": True}),
        ]
        assert result.id_mappings == {"temp-1": "task-101"}
        assert store.get(EntityKind.TASK, "temp-1") is None
        task = store.get(EntityKind.TASK, "task-101")
        assert task.completed is True
        assert task.sync_status == SyncStatus.SYNCED
        assert store.resolve_id("temp-1") == "task-101"
        assert queue.stats().total == 0
        remapped = [e for e in events if e.type == QueueEventType.REMAPPED]
        assert [(e.temp_id, e.real_id) for e in remapped] == [("temp-1", "task-101")]

    @pytest.mark.asyncio
    async def test_reference_to_temp_id_waits(self, store, queue, remote) -> None:
        """Test a payload naming an unconfirmed temp id is held back, then rewritten."""
        queue.enqueue(
            OpKind.UPDATE, EntityKind.TASK, "task-1", "/api/tasks/task-1", "PUT",
            {"listIds": ["temp-list"]},
        )
        result = await queue.flush()
        assert remote.sent == []
        assert result.deferred

        store.save_id_mapping("temp-list", "list-5", EntityKind.LIST)
        await queue.flush()
        assert remote.sent == [("PUT", "/api/tasks/task-1", {"listIds": ["list-5"]})]

    @pytest.mark.asyncio
    async def test_single_flusher(self, queue, remote) -> None:
        """Test overlapping flushes never deliver a mutation twice."""
        remote.gate = asyncio.Event()
        queue.enqueue(OpKind.UPDATE, EntityKind.TASK, "a", "/api/tasks/a", "PUT", {"title": "1"})

        first = asyncio.create_task(queue.flush())
        while not remote.sent:
            await asyncio.sleep(0)
        assert queue.is_flushing
        second = asyncio.create_task(queue.flush())
        queue.enqueue(OpKind.UPDATE, EntityKind.TASK, "b", "/api/tasks/b", "PUT", {"title": "2"})
        remote.gate.set()
        await asyncio.gather(first, second)

        assert remote.paths() == ["/api/tasks/a", "/api/tasks/b"]
        assert queue.stats().total == 0

    @pytest.mark.asyncio
    async def test_delete_confirmed(self, store, queue, remote) -> None:
        queue.enqueue(OpKind.DELETE, EntityKind.TASK, "task-1", "/api/tasks/task-1", "DELETE")
        result = await queue.flush()
        assert result.delivered
        assert remote.sent == [("DELETE", "/api/tasks/task-1", None)]

    @pytest.mark.asyncio
    async def test_delete_while_create_in_flight(self, store, queue, remote) -> None:
        """Test a confirmed create does not resurrect an entity deleted meanwhile."""
        store.put(Task(id="temp-1", sync_status=SyncStatus.PENDING))
        queue.enqueue(OpKind.CREATE, EntityKind.TASK, "temp-1", "/api/tasks", "POST", {"title": "x"})
        remote.gate = asyncio.Event()
        flushing = asyncio.create_task(queue.flush())
        while not remote.sent:
            await asyncio.sleep(0)

        store.delete(EntityKind.TASK, "temp-1")
        assert not queue.discard_unsent(EntityKind.TASK, "temp-1")
        queue.enqueue(OpKind.DELETE, EntityKind.TASK, "temp-1", "/api/tasks/temp-1", "DELETE")
        remote.gate.set()
        await flushing

        assert remote.sent[-1] == ("DELETE", "/api/tasks/task-101", None)
        assert store.get(EntityKind.TASK, "task-101") is None


class TestRetry:
    """Tests for transient failures and backoff."""

    @pytest.mark.asyncio
    async def test_backoff_then_failed(self, store, queue, remote, clock) -> None:
        """Test delays of 1s, 2s, 4s and failure on the fourth failed attempt."""
        task = Task(id="task-1", title="Old")
        store.put(task)
        remote.respond("PUT", "/api/tasks/task-1", TransientDeliveryError("HTTP 503"), times=4)
        mutation_id = optimistic_update(store, queue, task, {"title": "New"})
        events = record_events(queue)

        await queue.flush()
        assert queue.get(mutation_id).attempts == 1
        assert (queue.next_retry_at() - clock()).total_seconds() == 1.0

        # Not due yet: nothing is sent
        await queue.flush()
        assert len(remote.sent) == 1

        for delay, attempts in ((1, 2), (2, 3)):
            clock.advance(delay)
            await queue.flush()
            assert queue.get(mutation_id).attempts == attempts
        assert (queue.next_retry_at() - clock()).total_seconds() == 4.0

        clock.advance(4)
        result = await queue.flush()
        assert result.failed == [mutation_id]
        failed = queue.get(mutation_id)
        assert failed.status == MutationStatus.FAILED
        assert failed.attempts == 4
        assert failed.last_error == "HTTP 503"
        assert store.get(EntityKind.TASK, "task-1").sync_status == SyncStatus.FAILED
        assert store.get(EntityKind.TASK, "task-1").title == "New"
        assert [e.type for e in events].count(QueueEventType.FAILED) == 1

        clock.advance(60)
        await queue.flush()
        assert len(remote.sent) == 4

    @pytest.mark.asyncio
    async def test_retry_failed_restores_budget(self, store, queue, remote, clock) -> None:
        task = Task(id="task-1")
        store.put(task)
        queue.policy = RetryPolicy(max_retries=0)
        remote.respond("PUT", "/api/tasks/task-1", TransientDeliveryError("timeout"))
        mutation_id = optimistic_update(store, queue, task, {"title": "New"})

        await queue.flush()
        assert queue.stats().failed == 1

        assert queue.retry_failed() == 1
        assert queue.get(mutation_id).attempts == 0
        assert store.get(EntityKind.TASK, "task-1").sync_status == SyncStatus.PENDING

        await queue.flush()
        assert queue.stats().total == 0
        assert store.get(EntityKind.TASK, "task-1").sync_status == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_later_mutations_wait_behind_a_retry(self, store, queue, remote, clock) -> None:
        """Test same-entity writes stay in order while other entities proceed."""
        remote.respond("PUT", "/api/tasks/a", TransientDeliveryError("HTTP 502"))
        queue.enqueue(OpKind.UPDATE, EntityKind.TASK, "a", "/api/tasks/a", "PUT", {"title": "1"})
        queue.enqueue(OpKind.UPDATE, EntityKind.TASK, "a", "/api/tasks/a", "PUT", {"title": "2"})
        queue.enqueue(OpKind.UPDATE, EntityKind.TASK, "b", "/api/tasks/b", "PUT", {"title": "3"})

        await queue.flush()
        assert remote.paths() == ["/api/tasks/a", "/api/tasks/b"]

        clock.advance(1)
        await queue.flush()
        assert [p for _, _, p in remote.sent[2:]] == [{"title": "1"}, {"title": "2"}]

    @pytest.mark.asyncio
    async def test_failed_mutation_blocks_its_entity(self, store, queue, remote, clock) -> None:
        queue.policy = RetryPolicy(max_retries=0)
        remote.respond("PUT", "/api/tasks/a", TransientDeliveryError("HTTP 500"))
        queue.enqueue(OpKind.UPDATE, EntityKind.TASK, "a", "/api/tasks/a", "PUT", {"title": "1"})
        await queue.flush()

        queue.enqueue(OpKind.UPDATE, EntityKind.TASK, "a", "/api/tasks/a", "PUT", {"title": "2"})
        result = await queue.flush()
        assert len(remote.sent) == 1
        assert len(result.deferred) == 1


class TestRejection:
    """Tests for permanent rejections and rollback."""

    @pytest.mark.asyncio
    async def test_rejected_update_restores_snapshot(self, store, queue, remote) -> None:
        """Test rollback restores the snapshot and re-applies later queued patches."""
        task = Task(id="task-1", title="Old")
        store.put(task)
        remote.respond("PUT", "/api/tasks/task-1", PermanentRejectionError(422, "title taken"))
        optimistic_update(store, queue, task, {"title": "New"})
        queue.enqueue(
            OpKind.UPDATE, EntityKind.TASK, "task-1", "/api/tasks/task-1", "PUT", {"completed": True}
        )
        events = record_events(queue)

        result = await queue.flush()

        assert len(result.rejected) == 1
        assert len(result.delivered) == 1
        restored = store.get(EntityKind.TASK, "task-1")
        assert restored.title == "Old"
        assert restored.completed is True
        assert restored.sync_status == SyncStatus.SYNCED
        rejected = [e for e in events if e.type == QueueEventType.REJECTED]
        assert rejected[0].reason == "title taken"
        assert rejected[0].entity.title == "Old"

    @pytest.mark.asyncio
    async def test_rejected_create_removes_everything(self, store, queue, remote) -> None:
        """Test a refused create drops the entity, its later writes and its order slots."""
        store.put(Task(id="temp-1", sync_status=SyncStatus.PENDING))
        store.put_order("list-1", ["task-a", "temp-1"])
        remote.respond("POST", "/api/tasks", PermanentRejectionError(400, "bad task"))
        queue.enqueue(OpKind.CREATE, EntityKind.TASK, "temp-1", "/api/tasks", "POST", {"title": ""})
        queue.enqueue(
            OpKind.UPDATE, EntityKind.TASK, "temp-1", "/api/tasks/temp-1", "PUT", {"title": "x"}
        )
        events = record_events(queue)

        await queue.flush()

        assert len(remote.sent) == 1
        assert store.get(EntityKind.TASK, "temp-1") is None
        assert store.get_order("list-1") == ["task-a"]
        assert queue.stats().total == 0
        assert events[-1].type == QueueEventType.REJECTED
        assert events[-1].removed is True

    @pytest.mark.asyncio
    async def test_rejected_reorder_restores_order(self, store, queue, remote) -> None:
        store.put_order("list-1", ["b", "a"])
        remote.respond("POST", order_path("list-1"), OrderingConflictError(409, "stale"))
        mutation_id = queue.enqueue(
            OpKind.UPDATE, EntityKind.LIST, "list-1", order_path("list-1"), "POST",
            {"order": ["b", "a"]},
            order_snapshots={"list-1": ["a", "b"]},
            order_scope="list-1",
        )

        outcome = await queue.deliver(mutation_id)

        assert outcome == DeliveryOutcome.REJECTED
        assert queue.outcome_reason(mutation_id) == "stale"
        assert store.get_order("list-1") == ["a", "b"]

    @pytest.mark.asyncio
    async def test_confirmed_reorder_updates_list(self, store, queue, remote) -> None:
        store.put(TaskList(id="list-1", manual_sort_order=["a", "b"]))
        mutation_id = queue.enqueue(
            OpKind.UPDATE, EntityKind.LIST, "list-1", order_path("list-1"), "POST",
            {"order": ["b", "a"]},
            order_scope="list-1",
        )
        assert await queue.deliver(mutation_id) == DeliveryOutcome.DELIVERED
        assert store.get(EntityKind.LIST, "list-1").manual_sort_order == ["b", "a"]
        assert await queue.deliver(mutation_id) == DeliveryOutcome.DELIVERED
        assert await queue.deliver("mut-unknown") == DeliveryOutcome.MISSING


class TestOperatorActions:
    """Tests for cancel, clear and discard_unsent."""

    def test_cancel_rolls_back(self, store, queue) -> None:
        task = Task(id="task-1", title="Old")
        store.put(task)
        mutation_id = optimistic_update(store, queue, task, {"title": "New"})
        events = record_events(queue)

        assert queue.cancel(mutation_id) is True
        assert store.get(EntityKind.TASK, "task-1").title == "Old"
        assert queue.get(mutation_id) is None
        assert events[-1].type == QueueEventType.CANCELLED
        assert queue.cancel(mutation_id) is False

    def test_clear_restores_oldest_snapshot(self, store, queue) -> None:
        task = Task(id="task-1", title="v1")
        store.put(task)
        optimistic_update(store, queue, task, {"title": "v2"})
        optimistic_update(store, queue, store.get(EntityKind.TASK, "task-1"), {"title": "v3"})

        assert queue.clear() == 2
        restored = store.get(EntityKind.TASK, "task-1")
        assert restored.title == "v1"
        assert restored.sync_status == SyncStatus.SYNCED

    def test_order_snapshot_passes_to_next_write(self, store, queue) -> None:
        """Test cancelling an earlier reorder leaves the later one in charge."""
        store.put_order("list-1", ["c", "b", "a"])
        first = queue.enqueue(
            OpKind.UPDATE, EntityKind.LIST, "list-1", order_path("list-1"), "POST",
            {"order": ["b", "a", "c"]}, order_snapshots={"list-1": ["a", "b", "c"]},
            order_scope="list-1",
        )
        second = queue.enqueue(
            OpKind.UPDATE, EntityKind.LIST, "list-1", order_path("list-1"), "POST",
            {"order": ["c", "b", "a"]}, order_snapshots={"list-1": ["b", "a", "c"]},
            order_scope="list-1",
        )

        queue.cancel(first)
        assert store.get_order("list-1") == ["c", "b", "a"]
        assert queue.get(second).order_snapshots == {"list-1": ["a", "b", "c"]}

        queue.cancel(second)
        assert store.get_order("list-1") == ["a", "b", "c"]

    def test_discard_unsent_create(self, queue) -> None:
        queue.enqueue(OpKind.CREATE, EntityKind.TASK, "temp-1", "/api/tasks", "POST", {})
        queue.enqueue(OpKind.UPDATE, EntityKind.TASK, "temp-1", "/api/tasks/temp-1", "PUT", {})
        assert queue.discard_unsent(EntityKind.TASK, "temp-1") is True
        assert queue.stats().total == 0

    def test_discard_unsent_requires_create(self, queue) -> None:
        queue.enqueue(OpKind.UPDATE, EntityKind.TASK, "task-1", "/api/tasks/task-1", "PUT", {})
        assert queue.discard_unsent(EntityKind.TASK, "task-1") is False
        assert queue.stats().total == 1


class TestDeliveryClaims:
    """Tests for several tabs' queues sharing one mutation log."""

    @pytest.mark.asyncio
    async def test_mutation_claimed_by_another_tab_is_skipped(
        self, store, queue, remote, clock
    ) -> None:
        first = queue.enqueue(OpKind.UPDATE, EntityKind.TASK, "a", "/api/tasks/a", "PUT", {"n": 1})
        queue.enqueue(OpKind.UPDATE, EntityKind.TASK, "a", "/api/tasks/a", "PUT", {"n": 2})
        queue.enqueue(OpKind.UPDATE, EntityKind.TASK, "b", "/api/tasks/b", "PUT", {"n": 3})
        now = clock().isoformat()
        assert store.claim_mutation(first, "other-tab", now, now)

        result = await queue.flush()

        assert remote.paths() == ["/api/tasks/b"]
        assert first in result.deferred
        assert queue.cancel(first) is False
        assert await queue.deliver(first) == DeliveryOutcome.DEFERRED

        store.release_mutation(first, "other-tab")
        await queue.flush()
        assert [payload for _, _, payload in remote.sent] == [{"n": 3}, {"n": 1}, {"n": 2}]

    @pytest.mark.asyncio
    async def test_abandoned_claim_is_taken_over(self, store, remote, connectivity, clock) -> None:
        queue = MutationQueue(store, remote, connectivity, clock=clock, claim_timeout=60)
        mutation_id = queue.enqueue(
            OpKind.UPDATE, EntityKind.TASK, "a", "/api/tasks/a", "PUT", {"n": 1}
        )
        now = clock().isoformat()
        store.claim_mutation(mutation_id, "closed-tab", now, now)

        await queue.flush()
        assert remote.sent == []

        clock.advance(61)
        await queue.flush()
        assert remote.paths() == ["/api/tasks/a"]
        assert queue.stats().total == 0

    @pytest.mark.asyncio
    async def test_two_tabs_deliver_each_mutation_once(self, tmp_path, remote, clock) -> None:
        """Test a create in flight in one tab is not sent again by the other."""
        store_a = LocalStore(tmp_path / "shared.db")
        store_b = LocalStore(tmp_path / "shared.db")
        queue_a = MutationQueue(store_a, remote, ConnectivitySnapshot(), clock=clock, owner="tab-a")
        queue_b = MutationQueue(store_b, remote, ConnectivitySnapshot(), clock=clock, owner="tab-b")
        remote.gate = asyncio.Event()

        queue_a.enqueue(OpKind.CREATE, EntityKind.TASK, "temp-a", "/api/tasks", "POST", {"t": "A"})
        flush_a = asyncio.create_task(queue_a.flush())
        while not remote.sent:
            await asyncio.sleep(0)
        queue_b.enqueue(OpKind.CREATE, EntityKind.TASK, "temp-b", "/api/tasks", "POST", {"t": "B"})
        flush_b = asyncio.create_task(queue_b.flush())
        while len(remote.sent) < 2:
            await asyncio.sleep(0)
        remote.gate.set()
        await asyncio.gather(flush_a, flush_b)

        assert sorted(payload["t"] for _, _, payload in remote.sent) == ["A", "B"]
        assert store_a.count_mutations() == 0
        assert store_b.resolve_id("temp-a") is not None
        assert store_b.resolve_id("temp-a") != store_b.resolve_id("temp-b")
        store_a.close()
        store_b.close()
