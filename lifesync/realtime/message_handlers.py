"""
Inbound message dispatch for LifeSync WebSocket connections.

Every message is rate limited on the "events" class, validated, and routed
through one match over ClientMessageType.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from ..error_types import ErrorMessages, ErrorType, create_websocket_error_response
from ..exceptions import SubscriptionError, ValidationError
from ..structured_logging.enhanced_logging_config import get_logger
from .connection_manager import Connection, ConnectionManager
from .envelope import build_envelope
from .event_broadcaster import EventBroadcaster
from .event_types import ClientMessageType, EventType, RoomKey
from .messages import ClientMessage, MessageValidationError, parse_client_message, parse_room_request
from .presence_service import PresenceService
from .rate_limiter import RateLimiterSet
from .room_subscription_manager import RoomSubscriptionManager

logger = get_logger(__name__)

RoomDataProvider = Callable[[str, RoomKey], dict[str, Any] | None | Awaitable[dict[str, Any] | None]]


class RealtimeMessageHandler:
    """Routes client messages to the subscription index and presence service."""

    def __init__(
        self,
        connections: ConnectionManager,
        subscriptions: RoomSubscriptionManager,
        broadcaster: EventBroadcaster,
        presence: PresenceService,
        rate_limiters: RateLimiterSet | None = None,
        room_data_provider: RoomDataProvider | None = None,
    ) -> None:
        self.connections = connections
        self.subscriptions = subscriptions
        self.broadcaster = broadcaster
        self.presence = presence
        self.rate_limiters = rate_limiters
        self.room_data_provider = room_data_provider
        self.messages_handled = 0
        self.messages_rejected = 0

    def _reply(self, connection: Connection, event_type: EventType, payload: dict[str, Any]) -> None:
        self.connections.enqueue(connection.connection_id, build_envelope(event_type, payload))

    def _reply_error(
        self, connection: Connection, error_type: ErrorType, message: str, details: dict[str, Any] | None = None
    ) -> None:
        self.messages_rejected += 1
        self.connections.enqueue(
            connection.connection_id, create_websocket_error_response(error_type, message, details=details)
        )

    async def _admit(self, connection: Connection) -> bool:
        if self.rate_limiters is None:
            return True
        limiter = self.rate_limiters["events"]
        result = await limiter.check_limit(limiter.key_for(ip=connection.client_address, user_id=connection.user_id))
        if result.allowed:
            return True
        self.messages_rejected += 1
        self._reply(
            connection,
            EventType.RATE_LIMIT_EXCEEDED,
            {
                "limit_type": result.limit_type,
                "reason": result.reason,
                "reset_time": result.reset_time,
                "retry_after": result.retry_after(),
                "message": ErrorMessages.RATE_LIMIT_EXCEEDED,
            },
        )
        return False

    async def handle_text(self, connection: Connection, raw: str | bytes) -> None:
        """
        Handle one raw inbound frame.

        Never raises for bad input; the client gets an error message instead.
        """
        self.connections.touch(connection.connection_id)
        if not await self._admit(connection):
            return

        try:
            message = parse_client_message(raw)
        except MessageValidationError as e:
            self._reply_error(connection, e.error_type, e.message, e.details)
            return

        try:
            await self.dispatch(connection, message)
        except ValidationError as e:
            self._reply_error(connection, ErrorType.VALIDATION_ERROR, e.message, e.details)
            return
        self.messages_handled += 1

    async def dispatch(self, connection: Connection, message: ClientMessage) -> None:
        match message.type:
            case ClientMessageType.SUBSCRIBE:
                await self._handle_subscribe(connection, message.data)
            case ClientMessageType.UNSUBSCRIBE:
                await self._handle_unsubscribe(connection, message.data)
            case ClientMessageType.PRESENCE_HEARTBEAT:
                self.presence.record_heartbeat(connection.user_id, message.data)
            case ClientMessageType.PRESENCE_UPDATE:
                self.presence.update_context(connection.user_id, message.data)
            case ClientMessageType.PING:
                self._reply(connection, EventType.PONG, {"timestamp": message.data.get("timestamp")})

    async def _handle_subscribe(self, connection: Connection, data: dict[str, Any]) -> None:
        request = parse_room_request(data)
        room = request.room
        room_info = {"room": room.name, "room_type": room.room_type.value, "room_id": room.room_id}
        try:
            subscription, created = await self.subscriptions.subscribe(
                connection.connection_id, connection.user_id, room, request.filters
            )
        except SubscriptionError as e:
            self._reply(connection, EventType.SUBSCRIPTION_ERROR, {**room_info, "message": e.user_friendly})
            return

        self._reply(connection, EventType.SUBSCRIPTION_CONFIRMED, {**room_info, "filters": subscription.filters})
        if created:
            self.broadcaster.notify_member_joined(subscription)
            await self.presence.on_room_joined(subscription)

        if self.room_data_provider is not None:
            room_data = self.room_data_provider(connection.user_id, room)
            if inspect.isawaitable(room_data):
                room_data = await room_data
            if room_data is not None:
                self._reply(connection, EventType.ROOM_DATA, {**room_info, "data": room_data})

    async def _handle_unsubscribe(self, connection: Connection, data: dict[str, Any]) -> None:
        request = parse_room_request(data)
        removed = await self.subscriptions.unsubscribe(connection.connection_id, request.room)
        if removed is None:
            logger.debug(
                "Unsubscribe for unknown subscription",
                connection_id=connection.connection_id,
                room_key=request.room.name,
            )
            return
        self.broadcaster.notify_member_left(removed)
        await self.presence.on_room_left(removed)

    def get_stats(self) -> dict[str, Any]:
        return {"messages_handled": self.messages_handled, "messages_rejected": self.messages_rejected}
