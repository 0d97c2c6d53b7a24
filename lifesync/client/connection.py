"""
Client-side connection manager for LifeSync.

Owns one realtime channel: the handshake, the reader loop, ping heartbeats
with missed-pong detection and the exponential-backoff reconnect loop.

Local events:
- "connected" (ClientConnection): first handshake succeeded
- "reconnected" (ClientConnection): a handshake after a drop succeeded
- "disconnected" (reason: str): channel went away, locally or unexpectedly
- "reconnect_failed" (error): the reconnect budget is spent, or auth was refused
- "message" (dict): every inbound message other than pong
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..app.task_registry import TaskRegistry
from ..config.models import ConnectionConfig
from ..error_types import ErrorType
from ..exceptions import AuthenticationError, NotConnectedError, RateLimitExceeded, TransportError
from ..realtime.connection_state_machine import ConnectionStateMachine
from ..realtime.event_types import ClientMessageType, EventType
from ..realtime.retry_policy import RetryConfig
from ..structured_logging.enhanced_logging_config import get_logger
from .events import EventEmitter
from .transport import Transport, WebSocketTransport

logger = get_logger(__name__)

AUTH_ERROR_TYPES = {
    ErrorType.AUTHENTICATION_FAILED.value,
    ErrorType.INVALID_TOKEN.value,
    ErrorType.AUTHORIZATION_DENIED.value,
}

READER_TASK = "client:reader"
HEARTBEAT_TASK = "client:heartbeat"
RECONNECT_TASK = "client:reconnect"
DROP_TASK = "client:drop"


@dataclass
class ClientConnection:
    """The server's view of this client, from connection:established."""

    connection_id: str
    user_id: str
    heartbeat_interval: float
    server_time: float | None
    connected_at: float


class ClientConnectionManager(EventEmitter):
    """
    Client end of the realtime channel.

    connect() raises on the first attempt; unexpected drops afterwards are
    recovered in the background with exponential backoff.
    """

    def __init__(
        self,
        url: str,
        config: ConnectionConfig | None = None,
        transport_factory: Callable[[], Transport] = WebSocketTransport,
        task_registry: TaskRegistry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the connection manager.

        Args:
            url: WebSocket endpoint, e.g. ws://host:8000/api/ws
            config: Heartbeat, backoff and handshake settings
            transport_factory: Builds a fresh Transport per attempt
            task_registry: Owner of reader, heartbeat and reconnect tasks
            clock: Time source in epoch seconds
        """
        super().__init__()
        self.url = url
        self.config = config or ConnectionConfig()
        self.transport_factory = transport_factory
        self.tasks = task_registry or TaskRegistry(owner="lifesync-client")
        self._clock = clock

        self.state = ConnectionStateMachine("client", max_reconnect_attempts=self.config.max_reconnect_attempts)
        self.retry_policy = RetryConfig(
            max_attempts=self.config.max_reconnect_attempts,
            base_delay=self.config.reconnect_base_delay,
            max_delay=self.config.reconnect_max_delay,
        )

        self.connection: ClientConnection | None = None
        self._transport: Transport | None = None
        self._token: str | None = None
        self.missed_heartbeats = 0
        self.last_pong_at: float | None = None

    @property
    def is_connected(self) -> bool:
        return self.state.is_connected and self._transport is not None

    async def connect(self, auth_token: str | None) -> ClientConnection:
        """
        Open the channel and complete the handshake.

        Raises:
            AuthenticationError: Missing or rejected token; never retried
            RateLimitExceeded: Handshake throttled by the server
            TransportError: Network failure or handshake timeout
        """
        if not auth_token:
            raise AuthenticationError("Authentication token is required", auth_type="missing_token")
        if self.state.current_state != self.state.disconnected:
            logger.warning("connect() called while not disconnected", state=self.state.state_id)
            if self.connection is not None and self.is_connected:
                return self.connection
            await self.disconnect()

        self._token = auth_token
        self.state.connect()
        try:
            transport, connection = await self._handshake()
        except (AuthenticationError, RateLimitExceeded, TransportError) as e:
            self.state.connection_failed(error=e)
            raise

        self._start_session(transport, connection)
        await self.emit("connected", connection)
        return connection

    async def _handshake(self) -> tuple[Transport, ClientConnection]:
        transport = self.transport_factory()
        await transport.connect(self.url, self._token or "")
        try:
            first = await asyncio.wait_for(transport.receive(), timeout=self.config.handshake_timeout)
        except TimeoutError as e:
            await self._close_quietly(transport)
            raise TransportError("Handshake timed out", details={"timeout": self.config.handshake_timeout}) from e
        except TransportError:
            await self._close_quietly(transport)
            raise

        message_type = first.get("type")
        data = first.get("data") or {}
        if message_type == EventType.CONNECTION_ESTABLISHED:
            return transport, ClientConnection(
                connection_id=data.get("connection_id", ""),
                user_id=data.get("user_id", ""),
                heartbeat_interval=data.get("heartbeat_interval", self.config.heartbeat_interval),
                server_time=data.get("server_time"),
                connected_at=self._clock(),
            )

        await self._close_quietly(transport)
        if message_type == EventType.ERROR and first.get("error_type") in AUTH_ERROR_TYPES:
            raise AuthenticationError(
                first.get("message") or "Authentication rejected by server",
                auth_type=(first.get("details") or {}).get("auth_type", "token"),
            )
        if message_type == EventType.RATE_LIMIT_EXCEEDED:
            raise RateLimitExceeded(
                data.get("message") or "Handshake rate limited",
                limit_type=data.get("limit_type", "auth"),
                reset_time=data.get("reset_time"),
                retry_after=data.get("retry_after"),
            )
        raise TransportError("Unexpected handshake message", details={"message_type": message_type})

    def _start_session(self, transport: Transport, connection: ClientConnection) -> None:
        self._transport = transport
        self.connection = connection
        self.missed_heartbeats = 0
        self.state.connected_successfully()
        self.tasks.register_task(self._reader(transport), READER_TASK, "reader")
        self.tasks.schedule_interval(HEARTBEAT_TASK, self.heartbeat_interval_for(connection), self._heartbeat_tick)
        logger.info(
            "Realtime connection established",
            connection_id=connection.connection_id,
            user_id=connection.user_id,
            reconnect=self.state.was_reconnect,
        )

    def heartbeat_interval_for(self, connection: ClientConnection) -> float:
        """Ping at the server's cadence when it is shorter than ours, so the hub never sees us idle."""
        server_interval = connection.heartbeat_interval
        if isinstance(server_interval, int | float) and server_interval > 0:
            return min(float(server_interval), self.config.heartbeat_interval)
        return self.config.heartbeat_interval

    async def _reader(self, transport: Transport) -> None:
        while True:
            try:
                message = await transport.receive()
            except TransportError as e:
                if transport is self._transport:
                    await self._handle_drop(e)
                return
            if message.get("type") == EventType.PONG:
                self.missed_heartbeats = 0
                self.last_pong_at = self._clock()
                continue
            await self.emit("message", message)

    async def _heartbeat_tick(self) -> None:
        if self.missed_heartbeats >= self.config.missed_heartbeats_allowed:
            logger.warning("Heartbeat acknowledgements missed", missed=self.missed_heartbeats)
            # The drop cancels this interval; run it as a separate task
            self.tasks.register_task(
                self._handle_drop(TransportError("Heartbeat timeout")), DROP_TASK, "lifecycle"
            )
            return
        self.missed_heartbeats += 1
        try:
            await self.send({"type": ClientMessageType.PING.value, "data": {"timestamp": self._clock()}})
        except (NotConnectedError, TransportError) as e:
            logger.debug("Heartbeat ping failed", error=str(e))

    async def _handle_drop(self, error: Exception) -> None:
        """Unexpected loss of an established channel: move to reconnecting and schedule a retry."""
        if not self.state.is_connected:
            return
        self.state.connection_lost(error=error)
        self.tasks.cancel(READER_TASK)
        self.tasks.cancel(HEARTBEAT_TASK)
        transport, self._transport = self._transport, None
        if transport is not None:
            await self._close_quietly(transport)

        logger.warning("Realtime connection lost", error=str(error), error_type=type(error).__name__)
        await self.emit("disconnected", "connection_lost")
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        delay = self.retry_policy.calculate_delay(self.state.reconnect_attempts)
        logger.info("Scheduling reconnect", attempt=self.state.reconnect_attempts, delay=delay)
        self.tasks.schedule_later(RECONNECT_TASK, delay, self._attempt_reconnect)

    async def _attempt_reconnect(self) -> None:
        if self.state.current_state != self.state.reconnecting:
            return
        try:
            transport, connection = await self._handshake()
        except AuthenticationError as e:
            self.state.connection_failed(error=e)
            await self.emit("reconnect_failed", e)
            await self.emit("disconnected", "authentication_failed")
            return
        except (RateLimitExceeded, TransportError) as e:
            if self.retry_policy.exhausted(self.state.reconnect_attempts + 1):
                self.state.connection_failed(error=e)
                logger.error("Reconnect attempts exhausted", attempts=self.state.reconnect_attempts)
                await self.emit("reconnect_failed", e)
                await self.emit("disconnected", "reconnect_failed")
                return
            self.state.retry(error=e)
            self._schedule_reconnect()
            return

        self._start_session(transport, connection)
        await self.emit("reconnected", connection)

    async def send(self, message: dict[str, Any]) -> None:
        """
        Send one message on the live channel.

        Raises:
            NotConnectedError: No established channel
            TransportError: The channel failed during send
        """
        transport = self._transport
        if transport is None or not self.state.is_connected:
            raise NotConnectedError("No active realtime connection", details={"state": self.state.state_id})
        await transport.send(message)

    async def disconnect(self, reason: str = "client_disconnect") -> None:
        """Tear the channel down and stop reconnecting."""
        for name in (READER_TASK, HEARTBEAT_TASK, RECONNECT_TASK, DROP_TASK):
            self.tasks.cancel(name)
        was_live = self.state.current_state != self.state.disconnected
        if was_live:
            self.state.disconnect()
        transport, self._transport = self._transport, None
        if transport is not None:
            await self._close_quietly(transport)
        self.connection = None
        if was_live:
            logger.info("Realtime connection closed", reason=reason)
            await self.emit("disconnected", reason)

    async def close(self) -> None:
        """Disconnect and release every timer."""
        await self.disconnect("client_closed")
        self.tasks.close()

    @staticmethod
    async def _close_quietly(transport: Transport) -> None:
        try:
            await transport.close()
        except (TransportError, OSError, RuntimeError) as e:
            logger.debug("Transport close failed", error=str(e))

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.state.get_stats(),
            "missed_heartbeats": self.missed_heartbeats,
            "last_pong_at": self.last_pong_at,
        }
