"""
Tests for the client subscription registry.
"""

import pytest

from lifesync.client.connection import ClientConnectionManager
from lifesync.client.subscriptions import SubscriptionRegistry, SubscriptionStatus
from lifesync.config.models import ConnectionConfig, SubscriptionConfig
from lifesync.exceptions import NotConnectedError
from lifesync.realtime.event_types import RoomKey, RoomType


def room_of(message) -> str:
    return f"{message['data']['room_type']}:{message['data']['room_id']}"


def confirm_all(message):
    if message["type"] == "subscribe":
        return {"type": "subscription:confirmed", "data": {"room": room_of(message), "filters": {}}}
    return None


def reject_all(message):
    if message["type"] == "subscribe":
        return {"type": "subscription:error", "data": {"room": room_of(message), "message": "Access denied"}}
    return None


@pytest.fixture
async def make_registry(client_transports, clock):
    connections = []

    def factory(**settings):
        connection = ClientConnectionManager(
            "ws://lifesync.test/api/ws",
            ConnectionConfig(reconnect_base_delay=0.01, reconnect_max_delay=0.02),
            transport_factory=client_transports,
            clock=clock,
        )
        connections.append(connection)
        errors = []
        registry = SubscriptionRegistry(
            connection, SubscriptionConfig(retry_delay=0.01, **settings), on_error=errors.append
        )
        registry.errors = errors
        return connection, registry

    yield factory
    for connection in connections:
        await connection.close()


class TestSubscribe:
    """Subscribe and confirmation."""

    @pytest.mark.asyncio
    async def test_confirmed(self, make_registry, client_transports, wait_until):
        """Test that a server confirmation moves the subscription to Confirmed."""
        client_transports.auto_reply = confirm_all
        connection, registry = make_registry()
        await connection.connect("token-alice")

        subscription = await registry.subscribe("project", "p1", {"status": "open"})

        await wait_until(lambda: subscription.status == SubscriptionStatus.CONFIRMED)
        sent = client_transports.latest.sent_of_type("subscribe")
        assert sent == [
            {"type": "subscribe", "data": {"room_type": "project", "room_id": "p1", "filters": {"status": "open"}}}
        ]
        assert subscription.confirmed_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_subscribe_is_not_resent(self, make_registry, client_transports):
        """Test that subscribing twice to the same room with the same filters sends once."""
        connection, registry = make_registry()
        await connection.connect("token-alice")

        first = await registry.subscribe("project", "p1")
        second = await registry.subscribe("project", "p1")

        assert first is second
        assert len(client_transports.latest.sent_of_type("subscribe")) == 1
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_changed_filters_resubmit(self, make_registry, client_transports):
        """Test that new filters for an existing room are sent again."""
        connection, registry = make_registry()
        await connection.connect("token-alice")

        await registry.subscribe("project", "p1")
        subscription = await registry.subscribe("project", "p1", {"priority": "high"})

        assert len(client_transports.latest.sent_of_type("subscribe")) == 2
        assert subscription.filters == {"priority": "high"}
        assert subscription.status == SubscriptionStatus.PENDING

    @pytest.mark.asyncio
    async def test_queued_while_disconnected(self, make_registry, client_transports):
        """Test that a subscription made offline is sent once the channel is up."""
        connection, registry = make_registry()

        subscription = await registry.subscribe(RoomType.TEAM, "design")
        assert subscription.status == SubscriptionStatus.PENDING
        assert client_transports.created == []

        await connection.connect("token-alice")

        assert [room_of(m) for m in client_transports.latest.sent_of_type("subscribe")] == ["team:design"]

    @pytest.mark.asyncio
    async def test_refused_while_disconnected_without_auto_subscribe(self, make_registry):
        """Test that auto_subscribe=False refuses offline subscriptions."""
        _, registry = make_registry(auto_subscribe=False)

        with pytest.raises(NotConnectedError):
            await registry.subscribe("project", "p1")

        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_subscribe_many(self, make_registry, client_transports):
        """Test that several rooms can be requested at once."""
        connection, registry = make_registry()
        await connection.connect("token-alice")

        await registry.subscribe_many([("project", "p1"), ("task", "t1", {"status": "open"})])

        assert registry.rooms() == {RoomKey.of("project", "p1"), RoomKey.of("task", "t1")}

    @pytest.mark.asyncio
    async def test_reply_for_unknown_room_is_ignored(self, make_registry, client_transports, wait_until):
        """Test that a confirmation for a room never requested changes nothing."""
        connection, registry = make_registry()
        await connection.connect("token-alice")

        await registry.handle_message({"type": "subscription:confirmed", "data": {"room": "project:zzz"}})
        await registry.handle_message({"type": "subscription:confirmed", "data": {"room": "bogus"}})

        assert len(registry) == 0


class TestUnsubscribe:
    """Unsubscribe."""

    @pytest.mark.asyncio
    async def test_unsubscribe(self, make_registry, client_transports):
        """Test that unsubscribe forgets the room and tells the server."""
        connection, registry = make_registry()
        await connection.connect("token-alice")
        await registry.subscribe("project", "p1")

        assert await registry.unsubscribe("project", "p1") is True

        assert registry.get("project", "p1") is None
        assert client_transports.latest.sent_of_type("unsubscribe") == [
            {"type": "unsubscribe", "data": {"room_type": "project", "room_id": "p1"}}
        ]

    @pytest.mark.asyncio
    async def test_unsubscribe_unknown(self, make_registry):
        """Test that unsubscribing from an unknown room returns False."""
        _, registry = make_registry()

        assert await registry.unsubscribe("project", "p1") is False


class TestRejection:
    """Retry and terminal errors."""

    @pytest.mark.asyncio
    async def test_terminal_after_max_retries(self, make_registry, client_transports, wait_until):
        """Test that a room rejected every time is tried 1 + max_retries times, then reported once."""
        client_transports.auto_reply = reject_all
        connection, registry = make_registry(max_retries=2)
        await connection.connect("token-alice")

        subscription = await registry.subscribe("project", "secret")

        await wait_until(lambda: registry.errors)
        assert len(client_transports.latest.sent_of_type("subscribe")) == 3
        assert len(registry.errors) == 1
        error = registry.errors[0]
        assert error.terminal is True
        assert error.room == "project:secret"
        assert error.attempts == 3
        assert subscription.status == SubscriptionStatus.ERROR
        assert subscription.last_error == "Access denied"

    @pytest.mark.asyncio
    async def test_no_retry_when_disabled(self, make_registry, client_transports, wait_until):
        """Test that reconnect_on_error=False reports the first rejection as terminal."""
        client_transports.auto_reply = reject_all
        connection, registry = make_registry(reconnect_on_error=False)
        await connection.connect("token-alice")

        await registry.subscribe("project", "secret")

        await wait_until(lambda: registry.errors)
        assert len(client_transports.latest.sent_of_type("subscribe")) == 1
        assert registry.errors[0].attempts == 1

    @pytest.mark.asyncio
    async def test_manual_retry_resets_budget(self, make_registry, client_transports, wait_until):
        """Test that retry() submits a failed subscription again."""
        client_transports.auto_reply = reject_all
        connection, registry = make_registry(reconnect_on_error=False)
        await connection.connect("token-alice")
        await registry.subscribe("project", "p1")
        await wait_until(lambda: registry.errors)

        client_transports.latest.auto_reply = confirm_all
        subscription = await registry.retry("project", "p1")

        await wait_until(lambda: subscription.status == SubscriptionStatus.CONFIRMED)
        assert subscription.attempts == 0


class TestReconnect:
    """Resubscription after a dropped channel."""

    @pytest.mark.asyncio
    async def test_resubscribes_same_rooms(self, make_registry, client_transports, wait_until):
        """Test that the rooms submitted after a reconnect equal the rooms held before it."""
        client_transports.auto_reply = confirm_all
        connection, registry = make_registry()
        reconnected = []
        connection.on("reconnected", reconnected.append)
        await connection.connect("token-alice")
        await registry.subscribe("project", "p1")
        await registry.subscribe("team", "t1")
        await registry.subscribe("task", "x", {"status": "open"})
        await wait_until(lambda: len(registry.rooms(SubscriptionStatus.CONFIRMED)) == 3)
        before = registry.rooms()

        client_transports.latest.drop()

        await wait_until(lambda: reconnected)
        resent = client_transports.latest.sent_of_type("subscribe")
        assert {RoomKey.parse(room_of(m)) for m in resent} == before
        assert len(resent) == 3
        await wait_until(lambda: registry.rooms(SubscriptionStatus.CONFIRMED) == before)

    @pytest.mark.asyncio
    async def test_close_drops_everything(self, make_registry, client_transports):
        """Test that close() deregisters every subscription."""
        connection, registry = make_registry()
        await connection.connect("token-alice")
        await registry.subscribe("project", "p1")

        registry.close()

        assert len(registry) == 0
        assert registry.get_stats() == {"total": 0, "by_status": {"pending": 0, "confirmed": 0, "error": 0}}
