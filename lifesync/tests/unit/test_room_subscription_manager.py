"""
Tests for the server-side room subscription index.
"""

import pytest

from lifesync.exceptions import SubscriptionError
from lifesync.realtime.event_types import RoomKey, RoomType
from lifesync.realtime.room_subscription_manager import (
    RoomSubscriptionManager,
    default_access_policy,
    filters_match,
)

PROJECT = RoomKey.of(RoomType.PROJECT, "p1")


@pytest.fixture
def index() -> RoomSubscriptionManager:
    return RoomSubscriptionManager()


class TestAccessPolicy:
    """Default access policy."""

    def test_user_room_is_private(self):
        """Test that only the owner may join a user room."""
        assert default_access_policy("alice", RoomKey.user("alice"))
        assert not default_access_policy("bob", RoomKey.user("alice"))

    def test_shared_rooms_are_open(self):
        """Test that project, task, team and global rooms admit any authenticated user."""
        for room_type in (RoomType.PROJECT, RoomType.TASK, RoomType.TEAM, RoomType.GLOBAL):
            assert default_access_policy("bob", RoomKey.of(room_type, "x"))


class TestSubscribe:
    """Subscribe and unsubscribe."""

    @pytest.mark.asyncio
    async def test_subscribe_registers_both_directions(self, index):
        """Test that a subscription is visible per room and per connection."""
        subscription, created = await index.subscribe("c1", "alice", PROJECT, {"status": "open"})

        assert created
        assert subscription.filters == {"status": "open"}
        assert index.is_subscribed("c1", PROJECT)
        assert index.rooms_for("c1") == {PROJECT}
        assert index.member_user_ids(PROJECT) == {"alice"}

    @pytest.mark.asyncio
    async def test_resubscribe_replaces_filters(self, index):
        """Test that subscribing twice keeps one subscription with the latest filters."""
        await index.subscribe("c1", "alice", PROJECT, {"status": "open"})
        subscription, created = await index.subscribe("c1", "alice", PROJECT, {"status": "done"})

        assert not created
        assert index.subscriber_count(PROJECT) == 1
        assert subscription.filters == {"status": "done"}

    @pytest.mark.asyncio
    async def test_denied_subscription_raises(self, index):
        """Test that the access policy rejection is a terminal SubscriptionError."""
        with pytest.raises(SubscriptionError) as exc_info:
            await index.subscribe("c1", "bob", RoomKey.user("alice"))

        assert exc_info.value.terminal
        assert exc_info.value.room == "user:alice"
        assert not index.is_subscribed("c1", RoomKey.user("alice"))

    @pytest.mark.asyncio
    async def test_async_access_policy(self):
        """Test that an async access policy is awaited."""

        async def only_team(user_id, room):
            return room.room_type is RoomType.TEAM

        index = RoomSubscriptionManager(access_policy=only_team)

        await index.subscribe("c1", "alice", RoomKey.of("team", "t1"))
        with pytest.raises(SubscriptionError):
            await index.subscribe("c1", "alice", PROJECT)

    @pytest.mark.asyncio
    async def test_last_unsubscribe_removes_room(self, index):
        """Test that a room with no subscribers disappears from the index."""
        await index.subscribe("c1", "alice", PROJECT)
        await index.subscribe("c2", "bob", PROJECT)

        await index.unsubscribe("c1", PROJECT)
        assert index.room_count == 1
        removed = await index.unsubscribe("c2", PROJECT)

        assert removed is not None and removed.user_id == "bob"
        assert index.room_count == 0
        assert index.rooms_for("c2") == set()

    @pytest.mark.asyncio
    async def test_unsubscribe_unknown_returns_none(self, index):
        """Test that removing a missing subscription is a no-op."""
        assert await index.unsubscribe("ghost", PROJECT) is None

    @pytest.mark.asyncio
    async def test_remove_connection_drops_every_room(self, index):
        """Test that closing a connection removes all its subscriptions."""
        other = RoomKey.of("task", "t1")
        await index.subscribe("c1", "alice", PROJECT)
        await index.subscribe("c1", "alice", other)
        await index.subscribe("c2", "bob", other)

        removed = await index.remove_connection("c1")

        assert {s.room for s in removed} == {PROJECT, other}
        assert index.rooms_for("c1") == set()
        assert index.subscriber_count(other) == 1
        assert index.get_stats() == {
            "rooms": 1,
            "rooms_by_type": {"task": 1},
            "subscriptions": 1,
            "connections": 1,
        }


class TestFilters:
    """Subscription filter predicates."""

    def test_empty_filters_match_everything(self):
        """Test that no filters accept every payload."""
        assert filters_match({}, {"anything": 1})

    def test_all_fields_must_match(self):
        """Test that every filter field must be present and equal."""
        assert filters_match({"status": "open", "priority": 1}, {"status": "open", "priority": 1, "x": 2})
        assert not filters_match({"status": "open"}, {"status": "done"})
        assert not filters_match({"status": "open"}, {})

    @pytest.mark.asyncio
    async def test_matching_subscriptions_applies_filters(self, index):
        """Test that only subscriptions whose filters accept the payload are returned."""
        await index.subscribe("c1", "alice", PROJECT, {"status": "open"})
        await index.subscribe("c2", "bob", PROJECT)

        matched = index.matching_subscriptions(PROJECT, {"status": "done"})

        assert [s.connection_id for s in matched] == ["c2"]
