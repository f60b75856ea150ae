"""Tests for cross-tab broadcasting."""

from tasksync.core.broadcast import (
    BroadcastHub,
    ChangeType,
    CrossTabBroadcaster,
    generate_tab_id,
)
from tasksync.core.entities import EntityKind


class TestCrossTabBroadcaster:
    """Tests for posting and receiving between tabs."""

    def test_other_tabs_receive(self) -> None:
        """Test a message reaches every other tab on the channel."""
        hub = BroadcastHub()
        a = CrossTabBroadcaster(hub, tab_id="a")
        b = CrossTabBroadcaster(hub, tab_id="b")
        c = CrossTabBroadcaster(hub, tab_id="c")
        seen_b, seen_c = [], []
        b.subscribe(seen_b.append)
        c.subscribe(seen_c.append)

        a.broadcast(EntityKind.TASK, "task-1", ChangeType.CACHE_UPDATED)

        assert [m.entity_id for m in seen_b] == ["task-1"]
        assert [m.tab_id for m in seen_c] == ["a"]

    def test_own_messages_are_ignored(self) -> None:
        """Test a tab never hears itself."""
        hub = BroadcastHub()
        a = CrossTabBroadcaster(hub, tab_id="a")
        seen = []
        a.subscribe(seen.append)
        a.broadcast(EntityKind.TASK, "task-1", ChangeType.CACHE_UPDATED)
        assert seen == []

    def test_channels_are_separate(self) -> None:
        """Test messages stay on their channel."""
        hub = BroadcastHub()
        a = CrossTabBroadcaster(hub, channel="one", tab_id="a")
        b = CrossTabBroadcaster(hub, channel="two", tab_id="b")
        seen = []
        b.subscribe(seen.append)
        a.broadcast(None, None, ChangeType.CACHE_INVALIDATED)
        assert seen == []

    def test_change_type_filter(self) -> None:
        """Test subscribers can restrict the change types they receive."""
        hub = BroadcastHub()
        a = CrossTabBroadcaster(hub, tab_id="a")
        b = CrossTabBroadcaster(hub, tab_id="b")
        seen = []
        b.subscribe(seen.append, change_types=[ChangeType.MUTATION_SYNCED])
        a.broadcast(EntityKind.TASK, "t", ChangeType.CACHE_UPDATED)
        a.broadcast(EntityKind.TASK, "t", ChangeType.MUTATION_SYNCED, {"mutationId": "m1"})
        assert [m.change_type for m in seen] == [ChangeType.MUTATION_SYNCED]
        assert seen[0].data == {"mutationId": "m1"}

    def test_unsubscribe_and_close(self) -> None:
        hub = BroadcastHub()
        a = CrossTabBroadcaster(hub, tab_id="a")
        b = CrossTabBroadcaster(hub, tab_id="b")
        seen = []
        unsubscribe = b.subscribe(seen.append)
        unsubscribe()
        a.broadcast(EntityKind.TASK, "t", ChangeType.CACHE_UPDATED)
        assert seen == []

        b.subscribe(seen.append)
        b.close()
        a.broadcast(EntityKind.TASK, "t", ChangeType.CACHE_UPDATED)
        assert seen == []

    def test_failing_subscriber_does_not_break_others(self) -> None:
        """Test a raising subscriber is logged and skipped."""
        hub = BroadcastHub()
        a = CrossTabBroadcaster(hub, tab_id="a")
        b = CrossTabBroadcaster(hub, tab_id="b")
        seen = []

        def broken(message) -> None:
            raise RuntimeError("boom")

        b.subscribe(broken)
        b.subscribe(seen.append)
        a.broadcast(EntityKind.TASK, "t", ChangeType.CACHE_UPDATED)
        assert len(seen) == 1

    def test_disabled_broadcaster_is_silent(self) -> None:
        hub = BroadcastHub()
        a = CrossTabBroadcaster(hub, tab_id="a", enabled=False)
        b = CrossTabBroadcaster(hub, tab_id="b")
        seen = []
        b.subscribe(seen.append)
        a.broadcast(EntityKind.TASK, "t", ChangeType.CACHE_UPDATED)
        assert seen == []

    def test_generated_tab_ids_are_unique(self) -> None:
        assert generate_tab_id() != generate_tab_id()
        assert generate_tab_id().startswith("tab_")
