"""
Server-side connection hub for LifeSync.

Owns every live connection: handshake, the per-connection send queue and
sender task, activity tracking and the heartbeat monitor that closes
connections that went silent. Other services observe connections through
connect/disconnect listeners instead of reaching into the hub.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..app.task_registry import TaskRegistry
from ..config.models import ConnectionConfig
from ..exceptions import AuthenticationError, ErrorContext, TransportError
from ..structured_logging.enhanced_logging_config import get_logger
from .connection_state_machine import ConnectionStateMachine
from .envelope import EnvelopeEncoder, EventEnvelope, build_envelope
from .event_types import EventType, RoomKey
from .rate_limiter import RateLimiterSet
from .room_subscription_manager import RoomSubscriptionManager, ServerSubscription

logger = get_logger(__name__)

TokenVerifier = Callable[[str], dict[str, Any] | None | Awaitable[dict[str, Any] | None]]
ConnectListener = Callable[["Connection"], Awaitable[None]]
DisconnectListener = Callable[["Connection", list[ServerSubscription], bool], Awaitable[None]]


class ServerTransport(Protocol):
    """What the hub needs from an accepted socket."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


@dataclass
class Connection:
    """A live, authenticated connection."""

    connection_id: str
    user_id: str
    transport: ServerTransport
    state: ConnectionStateMachine
    queue: asyncio.Queue
    client_address: str | None = None
    established_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    messages_sent: int = 0
    messages_dropped: int = 0


class ConnectionManager:
    """
    Hub of live connections.

    A full send queue drops the message for that connection only; senders
    never block each other.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        subscriptions: RoomSubscriptionManager,
        task_registry: TaskRegistry,
        verify_token: TokenVerifier,
        rate_limiters: RateLimiterSet | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the connection hub.

        Args:
            config: Connection configuration
            subscriptions: Room subscription index
            task_registry: Owner of sender and monitor tasks
            verify_token: Authentication collaborator, token -> {"user_id": ...} or None
            rate_limiters: Traffic classes; the "auth" class gates handshakes
            clock: Time source in epoch seconds
        """
        self.config = config
        self.subscriptions = subscriptions
        self.task_registry = task_registry
        self.verify_token = verify_token
        self.rate_limiters = rate_limiters
        self._clock = clock

        self._connections: dict[str, Connection] = {}
        self._user_connections: dict[str, set[str]] = {}
        self._recently_disconnected: dict[str, float] = {}
        self._connect_listeners: list[ConnectListener] = []
        self._disconnect_listeners: list[DisconnectListener] = []

        self.total_connections = 0
        self.total_reconnections = 0
        self.total_disconnections = 0
        self.heartbeat_timeouts = 0
        self.rejected_handshakes = 0

    def add_connect_listener(self, listener: ConnectListener) -> None:
        self._connect_listeners.append(listener)

    def add_disconnect_listener(self, listener: DisconnectListener) -> None:
        """Listener receives (connection, removed_subscriptions, was_last_connection_of_user)."""
        self._disconnect_listeners.append(listener)

    async def _authenticate(self, token: str | None, client_address: str | None) -> str:
        if self.rate_limiters is not None:
            auth_limiter = self.rate_limiters["auth"]
            await auth_limiter.enforce(
                auth_limiter.key_for(ip=client_address),
                context=ErrorContext(metadata={"client_address": client_address}),
            )

        if not token:
            self.rejected_handshakes += 1
            raise AuthenticationError("Authentication token is required", auth_type="missing_token")

        claims = self.verify_token(token)
        if inspect.isawaitable(claims):
            claims = await claims
        user_id = (claims or {}).get("user_id")
        if not user_id:
            self.rejected_handshakes += 1
            raise AuthenticationError("Invalid or expired authentication token", auth_type="invalid_token")
        return str(user_id)

    async def accept(
        self, transport: ServerTransport, token: str | None, client_address: str | None = None
    ) -> Connection:
        """
        Authenticate and register a new connection.

        Joins the user's own room, starts the sender task and queues
        connection:established.

        Raises:
            AuthenticationError: Missing or invalid token
            RateLimitExceeded: Too many handshakes from this address
        """
        user_id = await self._authenticate(token, client_address)

        connection_id = str(uuid.uuid4())
        state = ConnectionStateMachine(connection_id, max_reconnect_attempts=self.config.max_reconnect_attempts)
        state.connect()
        connection = Connection(
            connection_id=connection_id,
            user_id=user_id,
            transport=transport,
            state=state,
            queue=asyncio.Queue(maxsize=self.config.send_queue_size),
            client_address=client_address,
            established_at=self._clock(),
            last_activity=self._clock(),
        )
        self._connections[connection_id] = connection
        self._user_connections.setdefault(user_id, set()).add(connection_id)

        self.total_connections += 1
        disconnected_at = self._recently_disconnected.pop(user_id, None)
        if disconnected_at is not None and self._clock() - disconnected_at <= self.config.offline_grace_period:
            self.total_reconnections += 1

        await self.subscriptions.subscribe(connection_id, user_id, RoomKey.user(user_id))
        self.task_registry.register_task(self._sender(connection), f"sender:{connection_id}", "sender")
        state.connected_successfully()

        self.enqueue(
            connection_id,
            build_envelope(
                EventType.CONNECTION_ESTABLISHED,
                {
                    "connection_id": connection_id,
                    "user_id": user_id,
                    "heartbeat_interval": self.config.heartbeat_interval,
                    "server_time": self._clock(),
                },
            ),
        )

        logger.info(
            "Connection established",
            connection_id=connection_id,
            user_id=user_id,
            client_address=client_address,
            user_connection_count=len(self._user_connections[user_id]),
        )

        for listener in self._connect_listeners:
            await self._notify(listener, connection)
        return connection

    async def disconnect(self, connection_id: str, code: int = 1000, reason: str = "") -> bool:
        """
        Tear down a connection: stop its sender, drop its subscriptions and
        notify listeners.

        Returns:
            False if the connection was already gone
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return False

        self.task_registry.cancel(f"sender:{connection_id}")
        if connection.state.current_state != connection.state.disconnected:
            connection.state.disconnect()

        user_connections = self._user_connections.get(connection.user_id, set())
        user_connections.discard(connection_id)
        was_last = not user_connections
        if was_last:
            self._user_connections.pop(connection.user_id, None)
            self._recently_disconnected[connection.user_id] = self._clock()

        removed = await self.subscriptions.remove_connection(connection_id)
        self.total_disconnections += 1

        try:
            await connection.transport.close(code=code, reason=reason)
        except (TransportError, OSError, RuntimeError) as e:
            logger.debug("Transport already closed", connection_id=connection_id, error=str(e))

        logger.info(
            "Connection closed",
            connection_id=connection_id,
            user_id=connection.user_id,
            reason=reason or "normal",
            was_last_connection=was_last,
        )

        for listener in self._disconnect_listeners:
            await self._notify(listener, connection, removed, was_last)
        return True

    async def _notify(self, listener: Callable[..., Awaitable[None]], *args: Any) -> None:
        try:
            await listener(*args)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # pylint: disable=broad-exception-caught
            # One failing listener must not block the others
            logger.error(
                "Connection listener failed",
                listener=getattr(listener, "__qualname__", repr(listener)),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    def enqueue(self, connection_id: str, message: EventEnvelope | dict[str, Any]) -> bool:
        """
        Queue a message for one connection without blocking.

        Returns:
            False if the connection is unknown or its queue is full
        """
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        try:
            connection.queue.put_nowait(message)
        except asyncio.QueueFull:
            connection.messages_dropped += 1
            logger.warning(
                "Send queue full, dropping message",
                connection_id=connection_id,
                user_id=connection.user_id,
                queue_size=connection.queue.maxsize,
            )
            return False
        return True

    async def _sender(self, connection: Connection) -> None:
        """Drain one connection's queue in FIFO order."""
        while True:
            message = await connection.queue.get()
            if isinstance(message, EventEnvelope):
                text = message.to_json()
            else:
                text = json.dumps(message, cls=EnvelopeEncoder)
            try:
                await connection.transport.send_text(text)
            except (TransportError, OSError, RuntimeError) as e:
                logger.warning(
                    "Send failed, closing connection",
                    connection_id=connection.connection_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                # Disconnect cancels this task; run it as a separate task
                self.task_registry.register_task(
                    self.disconnect(connection.connection_id, code=1011, reason="send_failed"),
                    f"disconnect:{connection.connection_id}",
                    "cleanup",
                )
                return
            connection.messages_sent += 1

    def touch(self, connection_id: str) -> None:
        """Record inbound activity on a connection."""
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.last_activity = self._clock()

    async def check_heartbeats(self) -> list[str]:
        """
        Close connections silent for longer than heartbeat_interval * missed_heartbeats_allowed.

        Returns:
            Connection ids that were closed
        """
        deadline = self.config.heartbeat_interval * self.config.missed_heartbeats_allowed
        now = self._clock()
        stale = [cid for cid, conn in self._connections.items() if now - conn.last_activity > deadline]
        for connection_id in stale:
            self.heartbeat_timeouts += 1
            logger.info("Heartbeat timeout", connection_id=connection_id, timeout_seconds=deadline)
            await self.disconnect(connection_id, code=1001, reason="heartbeat_timeout")
        self.prune_recently_disconnected()
        return stale

    def start_heartbeat_monitor(self) -> None:
        self.task_registry.schedule_interval(
            "hub:heartbeat_monitor", self.config.heartbeat_interval, self.check_heartbeats
        )

    def prune_recently_disconnected(self) -> None:
        cutoff = self._clock() - self.config.offline_grace_period
        for user_id in [u for u, ts in self._recently_disconnected.items() if ts < cutoff]:
            del self._recently_disconnected[user_id]

    async def close_all(self, reason: str = "server_shutdown") -> None:
        for connection_id in list(self._connections):
            await self.disconnect(connection_id, code=1001, reason=reason)

    def get_connection(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def connections_for_user(self, user_id: str) -> list[Connection]:
        return [self._connections[cid] for cid in self._user_connections.get(user_id, ()) if cid in self._connections]

    def is_user_connected(self, user_id: str) -> bool:
        return bool(self._user_connections.get(user_id))

    @property
    def active_connection_count(self) -> int:
        return len(self._connections)

    def get_stats(self) -> dict[str, Any]:
        """Connection statistics for the health surface."""
        return {
            "active_connections": len(self._connections),
            "connected_users": len(self._user_connections),
            "total_connections": self.total_connections,
            "total_reconnections": self.total_reconnections,
            "total_disconnections": self.total_disconnections,
            "heartbeat_timeouts": self.heartbeat_timeouts,
            "rejected_handshakes": self.rejected_handshakes,
            "queued_messages": sum(conn.queue.qsize() for conn in self._connections.values()),
            "dropped_messages": sum(conn.messages_dropped for conn in self._connections.values()),
        }
