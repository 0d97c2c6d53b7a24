"""
Test configuration and fixtures for the LifeSync test suite.

Fakes here stand in for the network edges only: the hub and the client
components under test are the real classes.
"""

import asyncio
import json
import os
from collections import deque
from collections.abc import Callable, Generator
from types import SimpleNamespace
from typing import Any

import pytest

# Set environment variables before any config is loaded
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret-key-for-testing-only")
os.environ.setdefault("SERVER_HOST", "127.0.0.1")
os.environ.setdefault("SERVER_PORT", "54731")
os.environ.setdefault("LOGGING_LEVEL", "DEBUG")

# Imports must come after environment variables to prevent config loading failures
from lifesync.app.task_registry import TaskRegistry  # noqa: E402
from lifesync.config import reset_config  # noqa: E402
from lifesync.config.models import AppConfig, ConnectionConfig  # noqa: E402
from lifesync.error_types import ErrorType, create_websocket_error_response  # noqa: E402
from lifesync.exceptions import AuthenticationError, RateLimitExceeded, TransportError  # noqa: E402
from lifesync.realtime.connection_manager import ConnectionManager  # noqa: E402
from lifesync.realtime.data_sync_service import DataSyncService  # noqa: E402
from lifesync.realtime.event_broadcaster import EventBroadcaster  # noqa: E402
from lifesync.realtime.message_handlers import RealtimeMessageHandler  # noqa: E402
from lifesync.realtime.presence_service import PresenceService  # noqa: E402
from lifesync.realtime.room_subscription_manager import RoomSubscriptionManager  # noqa: E402


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset config singleton before and after each test."""
    reset_config()
    yield
    reset_config()


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    """Poll a predicate until it holds, failing the test after a timeout."""
    return _wait_until


# Server side


class FakeServerTransport:
    """Accepted socket that records every frame the hub sends."""

    def __init__(self, fail_sends: bool = False):
        self.fail_sends = fail_sends
        self.messages: list[dict[str, Any]] = []
        self.closed = False
        self.close_code: int | None = None
        self.close_reason: str | None = None

    async def send_text(self, data: str) -> None:
        if self.fail_sends or self.closed:
            raise TransportError("socket gone")
        self.messages.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.close_code = code
        self.close_reason = reason

    def of_type(self, message_type: str) -> list[dict[str, Any]]:
        return [m for m in self.messages if m.get("type") == message_type]

    def types(self) -> list[str]:
        return [m.get("type") for m in self.messages]


def token_verifier(token: str) -> dict[str, Any] | None:
    """Accepts "token-<user_id>"."""
    if token.startswith("token-"):
        return {"user_id": token.removeprefix("token-")}
    return None


@pytest.fixture
def verifier() -> Callable[[str], dict[str, Any] | None]:
    return token_verifier


@pytest.fixture
def server_transport_factory() -> Callable[..., FakeServerTransport]:
    return FakeServerTransport


@pytest.fixture
async def realtime_stack(clock):
    """
    The server realtime layer wired the way the container wires it, with a
    manual clock and no rate limiting.
    """
    config = AppConfig(connection=ConnectionConfig(offline_grace_period=30.0))
    tasks = TaskRegistry(owner="test")
    subscriptions = RoomSubscriptionManager()
    connections = ConnectionManager(config.connection, subscriptions, tasks, token_verifier, clock=clock)
    broadcaster = EventBroadcaster(connections, subscriptions, config.broadcast)
    presence = PresenceService(
        config.presence, config.connection, connections, subscriptions, broadcaster, tasks, clock=clock
    )
    data_sync = DataSyncService(broadcaster)
    handler = RealtimeMessageHandler(connections, subscriptions, broadcaster, presence)
    connections.add_connect_listener(presence.on_connection_opened)
    connections.add_disconnect_listener(broadcaster.on_connection_closed)
    connections.add_disconnect_listener(presence.on_connection_closed)

    async def connect(user_id: str, **transport_kwargs):
        transport = FakeServerTransport(**transport_kwargs)
        connection = await connections.accept(transport, f"token-{user_id}", "127.0.0.1")
        await _wait_until(lambda: bool(transport.messages))
        return connection, transport

    async def send(connection, message_type: str, data: dict[str, Any] | None = None):
        await handler.handle_text(connection, json.dumps({"type": message_type, "data": data or {}}))

    async def settle():
        await _wait_until(lambda: all(c.queue.empty() for c in connections._connections.values()))
        await asyncio.sleep(0)

    stack = SimpleNamespace(
        config=config,
        tasks=tasks,
        subscriptions=subscriptions,
        connections=connections,
        broadcaster=broadcaster,
        presence=presence,
        data_sync=data_sync,
        handler=handler,
        clock=clock,
        connect=connect,
        send=send,
        settle=settle,
    )
    yield stack
    await tasks.shutdown_all(timeout=1.0)


# Client side


def established(user_id: str = "alice", connection_id: str = "conn-1", heartbeat_interval: float = 30.0):
    return {
        "type": "connection:established",
        "data": {
            "connection_id": connection_id,
            "user_id": user_id,
            "heartbeat_interval": heartbeat_interval,
            "server_time": 1_700_000_000.0,
        },
    }


class FakeClientTransport:
    """
    Scripted client transport.

    Inbound frames are pushed onto an inbox; pushing an exception makes the
    next receive raise it. auto_reply maps an outbound message to an inbound
    reply, standing in for the server.
    """

    def __init__(
        self,
        handshake: dict[str, Any] | None = None,
        connect_error: Exception | None = None,
        auto_reply: Callable[[dict[str, Any]], dict[str, Any] | None] | None = None,
    ):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.connect_error = connect_error
        self.auto_reply = auto_reply
        self.url: str | None = None
        self.token: str | None = None
        self.closed = False
        if handshake is not None:
            self.inbox.put_nowait(handshake)

    async def connect(self, url: str, token: str) -> None:
        self.url, self.token = url, token
        if self.connect_error is not None:
            raise self.connect_error

    async def send(self, message: dict[str, Any]) -> None:
        if self.closed:
            raise TransportError("transport closed")
        self.sent.append(message)
        if self.auto_reply is not None:
            reply = self.auto_reply(message)
            if reply is not None:
                self.inbox.put_nowait(reply)

    async def receive(self) -> dict[str, Any]:
        item = await self.inbox.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True

    def push(self, message: dict[str, Any]) -> None:
        self.inbox.put_nowait(message)

    def drop(self) -> None:
        self.inbox.put_nowait(TransportError("connection reset by peer"))

    def sent_of_type(self, message_type: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == message_type]


class ClientTransportFactory:
    """
    Hands out prepared transports in order, then healthy ones.

    Every transport it builds is kept in `created` for inspection.
    """

    def __init__(self, user_id: str = "alice"):
        self.user_id = user_id
        self.prepared: deque[FakeClientTransport] = deque()
        self.created: list[FakeClientTransport] = []
        self.auto_reply: Callable[[dict[str, Any]], dict[str, Any] | None] | None = None

    def prepare(self, **kwargs) -> FakeClientTransport:
        transport = FakeClientTransport(**kwargs)
        self.prepared.append(transport)
        return transport

    def __call__(self) -> FakeClientTransport:
        if self.prepared:
            transport = self.prepared.popleft()
        else:
            transport = FakeClientTransport(
                handshake=established(self.user_id, f"conn-{len(self.created) + 1}"), auto_reply=self.auto_reply
            )
        self.created.append(transport)
        return transport

    @property
    def latest(self) -> FakeClientTransport:
        return self.created[-1]


@pytest.fixture
def client_transports() -> ClientTransportFactory:
    return ClientTransportFactory()


@pytest.fixture
def established_message() -> Callable[..., dict[str, Any]]:
    return established


# Loopback


class _ServerEnd:
    def __init__(self, client: "LoopbackTransport"):
        self.client = client

    async def send_text(self, data: str) -> None:
        if self.client.closed:
            raise TransportError("client end closed")
        self.client.inbox.put_nowait(json.loads(data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.client.inbox.put_nowait(TransportError(f"closed by server ({code})"))


class LoopbackTransport:
    """
    Client transport wired straight into an in-process hub.

    Mirrors what the WebSocket endpoint does: handshake failures become an
    error frame, inbound frames go through the message handler.
    """

    def __init__(self, connections: ConnectionManager, handler: RealtimeMessageHandler):
        self.connections = connections
        self.handler = handler
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.connection = None
        self.closed = False

    async def connect(self, url: str, token: str) -> None:
        try:
            self.connection = await self.connections.accept(_ServerEnd(self), token, "127.0.0.1")
        except AuthenticationError as e:
            self.inbox.put_nowait(
                create_websocket_error_response(ErrorType.AUTHENTICATION_FAILED, e.message, details=e.details)
            )
        except RateLimitExceeded as e:
            self.inbox.put_nowait({"type": "rate_limit:exceeded", "data": {"limit_type": e.limit_type}})

    async def send(self, message: dict[str, Any]) -> None:
        if self.closed or self.connection is None:
            raise TransportError("loopback closed")
        await self.handler.handle_text(self.connection, json.dumps(message))

    async def receive(self) -> dict[str, Any]:
        item = await self.inbox.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        if self.connection is not None:
            await self.connections.disconnect(self.connection.connection_id, code=code, reason=reason)

    async def server_drop(self) -> None:
        """Simulate the network dropping: the server sees a disconnect, the client a closed read."""
        if self.connection is not None:
            await self.connections.disconnect(self.connection.connection_id, code=1006, reason="network")


@pytest.fixture
def loopback_factory(realtime_stack) -> Callable[[], LoopbackTransport]:
    """Factory of client transports bound to the realtime_stack hub; `made` lists every transport built."""
    made: list[LoopbackTransport] = []

    def factory() -> LoopbackTransport:
        transport = LoopbackTransport(realtime_stack.connections, realtime_stack.handler)
        made.append(transport)
        return transport

    factory.made = made  # type: ignore[attr-defined]
    return factory
