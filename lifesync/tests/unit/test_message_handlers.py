"""
Tests for inbound message dispatch.
"""

import json

import pytest

from lifesync.config.models import RateLimitConfig
from lifesync.realtime.message_handlers import RealtimeMessageHandler
from lifesync.realtime.rate_limiter import RateLimiterSet

SUBSCRIBE_TASK = json.dumps({"type": "subscribe", "data": {"room_type": "task", "room_id": "t1"}})


def handler_with(realtime_stack, **kwargs) -> RealtimeMessageHandler:
    return RealtimeMessageHandler(
        realtime_stack.connections,
        realtime_stack.subscriptions,
        realtime_stack.broadcaster,
        realtime_stack.presence,
        **kwargs,
    )


class TestBasicDispatch:
    """Ping and malformed frames."""

    @pytest.mark.asyncio
    async def test_ping_gets_pong(self, realtime_stack):
        """Test that ping is answered with pong echoing the timestamp."""
        alice, transport = await realtime_stack.connect("alice")

        await realtime_stack.send(alice, "ping", {"timestamp": 123})
        await realtime_stack.settle()

        pongs = transport.of_type("pong")
        assert len(pongs) == 1
        assert pongs[0]["data"] == {"timestamp": 123}

    @pytest.mark.asyncio
    async def test_invalid_json(self, realtime_stack):
        """Test that a non-JSON frame gets an invalid_format error and the connection survives."""
        alice, transport = await realtime_stack.connect("alice")

        await realtime_stack.handler.handle_text(alice, "{not json")
        await realtime_stack.settle()

        errors = transport.of_type("error")
        assert errors[-1]["error_type"] == "invalid_format"
        assert realtime_stack.connections.get_connection(alice.connection_id) is not None

    @pytest.mark.asyncio
    async def test_non_object_json(self, realtime_stack):
        """Test that a JSON array is rejected as invalid_format."""
        alice, transport = await realtime_stack.connect("alice")

        await realtime_stack.handler.handle_text(alice, "[1, 2]")
        await realtime_stack.settle()

        assert transport.of_type("error")[-1]["error_type"] == "invalid_format"

    @pytest.mark.asyncio
    async def test_unknown_type(self, realtime_stack):
        """Test that an unknown message type is named in the error details."""
        alice, transport = await realtime_stack.connect("alice")

        await realtime_stack.send(alice, "teleport", {})
        await realtime_stack.settle()

        error = transport.of_type("error")[-1]
        assert error["error_type"] == "unknown_message_type"
        assert error["details"] == {"message_type": "teleport"}

    @pytest.mark.asyncio
    async def test_oversized_frame(self, realtime_stack):
        """Test that frames over the size cap are refused before parsing."""
        alice, transport = await realtime_stack.connect("alice")

        await realtime_stack.handler.handle_text(alice, json.dumps({"type": "ping", "data": {"x": "a" * 70_000}}))
        await realtime_stack.settle()

        assert transport.of_type("error")[-1]["error_type"] == "invalid_format"

    @pytest.mark.asyncio
    async def test_counters(self, realtime_stack):
        """Test that handled and rejected messages are counted separately."""
        alice, _ = await realtime_stack.connect("alice")

        await realtime_stack.send(alice, "ping")
        await realtime_stack.handler.handle_text(alice, "nope")

        assert realtime_stack.handler.get_stats() == {"messages_handled": 1, "messages_rejected": 1}


class TestSubscriptions:
    """subscribe and unsubscribe."""

    @pytest.mark.asyncio
    async def test_subscribe_confirmed_with_filters(self, realtime_stack):
        """Test that a project subscription is confirmed and echoes its filters."""
        alice, transport = await realtime_stack.connect("alice")

        await realtime_stack.send(
            alice, "subscribe", {"room_type": "project", "room_id": "p1", "filters": {"status": "open"}}
        )
        await realtime_stack.settle()

        confirmed = transport.of_type("subscription:confirmed")
        assert len(confirmed) == 1
        assert confirmed[0]["data"]["room"] == "project:p1"
        assert confirmed[0]["data"]["filters"] == {"status": "open"}

    @pytest.mark.asyncio
    async def test_other_users_room_is_denied(self, realtime_stack):
        """Test that subscribing to someone else's user room yields subscription:error."""
        alice, transport = await realtime_stack.connect("alice")

        await realtime_stack.send(alice, "subscribe", {"room_type": "user", "room_id": "bob"})
        await realtime_stack.settle()

        assert transport.of_type("subscription:confirmed") == []
        errors = transport.of_type("subscription:error")
        assert errors[0]["data"]["room"] == "user:bob"

    @pytest.mark.asyncio
    async def test_subscribe_without_room_id(self, realtime_stack):
        """Test that an incomplete room request is a validation error."""
        alice, transport = await realtime_stack.connect("alice")

        await realtime_stack.send(alice, "subscribe", {"room_type": "project"})
        await realtime_stack.settle()

        assert transport.of_type("error")[-1]["error_type"] == "validation_error"

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self, realtime_stack):
        """Test that after unsubscribe, project events no longer arrive."""
        alice, transport = await realtime_stack.connect("alice")
        room = {"room_type": "project", "room_id": "p1"}
        await realtime_stack.send(alice, "subscribe", room)
        await realtime_stack.send(alice, "unsubscribe", room)

        await realtime_stack.data_sync.project_updated({"id": "p1", "name": "x"}, "bob")
        await realtime_stack.settle()

        assert transport.of_type("project:updated") == []

    @pytest.mark.asyncio
    async def test_unsubscribe_unknown_room_is_quiet(self, realtime_stack):
        """Test that unsubscribing from a room never joined produces no error."""
        alice, transport = await realtime_stack.connect("alice")

        await realtime_stack.send(alice, "unsubscribe", {"room_type": "project", "room_id": "nope"})
        await realtime_stack.settle()

        assert transport.of_type("error") == []

    @pytest.mark.asyncio
    async def test_room_data_provider(self, realtime_stack):
        """Test that the provider's snapshot follows the confirmation as room:data."""
        calls = []

        async def provider(user_id, room):
            calls.append((user_id, room.name))
            return {"tasks": [{"id": "t1"}]}

        handler = handler_with(realtime_stack, room_data_provider=provider)
        alice, transport = await realtime_stack.connect("alice")

        await handler.handle_text(alice, SUBSCRIBE_TASK)
        await realtime_stack.settle()

        assert calls == [("alice", "task:t1")]
        assert transport.types()[-2:] == ["subscription:confirmed", "room:data"]
        assert transport.of_type("room:data")[0]["data"]["data"] == {"tasks": [{"id": "t1"}]}

    @pytest.mark.asyncio
    async def test_room_data_provider_returning_none(self, realtime_stack):
        """Test that a provider with nothing to say sends no room:data."""
        handler = handler_with(realtime_stack, room_data_provider=lambda user_id, room: None)
        alice, transport = await realtime_stack.connect("alice")

        await handler.handle_text(alice, SUBSCRIBE_TASK)
        await realtime_stack.settle()

        assert transport.of_type("room:data") == []


class TestPresenceMessages:
    """presence:heartbeat and presence:update."""

    @pytest.mark.asyncio
    async def test_heartbeat_updates_presence(self, realtime_stack):
        """Test that a heartbeat reaches the presence service."""
        alice, _ = await realtime_stack.connect("alice")

        await realtime_stack.send(alice, "presence:heartbeat", {"status": "away"})

        assert realtime_stack.presence.get("alice").status.value == "away"

    @pytest.mark.asyncio
    async def test_bad_heartbeat_is_validation_error(self, realtime_stack):
        """Test that a malformed heartbeat is answered with validation_error."""
        alice, transport = await realtime_stack.connect("alice")

        await realtime_stack.send(alice, "presence:heartbeat", {"status": "sleeping"})
        await realtime_stack.settle()

        assert transport.of_type("error")[-1]["error_type"] == "validation_error"


class TestRateLimiting:
    """The events traffic class."""

    @pytest.mark.asyncio
    async def test_messages_over_budget_are_refused(self, realtime_stack, clock):
        """Test that the third message in a window of two gets rate_limit:exceeded and is not handled."""
        limiters = RateLimiterSet.from_config(RateLimitConfig(events_max_requests=2), clock=clock)
        handler = handler_with(realtime_stack, rate_limiters=limiters)
        alice, transport = await realtime_stack.connect("alice")
        ping = json.dumps({"type": "ping", "data": {}})

        for _ in range(3):
            await handler.handle_text(alice, ping)
        await realtime_stack.settle()

        assert len(transport.of_type("pong")) == 2
        exceeded = transport.of_type("rate_limit:exceeded")
        assert len(exceeded) == 1
        assert exceeded[0]["data"]["limit_type"] == "events"
        assert exceeded[0]["data"]["retry_after"] >= 0

    @pytest.mark.asyncio
    async def test_budget_resets_next_window(self, realtime_stack, clock):
        """Test that a new window admits messages again."""
        limiters = RateLimiterSet.from_config(
            RateLimitConfig(events_max_requests=1, events_window_ms=1000), clock=clock
        )
        handler = handler_with(realtime_stack, rate_limiters=limiters)
        alice, transport = await realtime_stack.connect("alice")
        ping = json.dumps({"type": "ping", "data": {}})

        await handler.handle_text(alice, ping)
        await handler.handle_text(alice, ping)
        clock.advance(1.0)
        await handler.handle_text(alice, ping)
        await realtime_stack.settle()

        assert len(transport.of_type("pong")) == 2
