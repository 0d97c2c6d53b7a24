"""
Client-side subscription registry for LifeSync.

Tracks every room the client wants to be in, with Pending / Confirmed /
Error status. Rejected subscriptions are retried with backoff up to
max_retries; after a reconnect every Pending and Confirmed subscription is
submitted again so the server-side set matches the local one.
"""

import inspect
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ..config.models import SubscriptionConfig
from ..exceptions import NotConnectedError, SubscriptionError, TransportError
from ..realtime.event_types import ClientMessageType, EventType, RoomKey, RoomType
from ..realtime.retry_policy import RetryConfig
from ..structured_logging.enhanced_logging_config import get_logger
from .connection import ClientConnection, ClientConnectionManager
from .events import EventEmitter

logger = get_logger(__name__)

ErrorCallback = Callable[[SubscriptionError], Any]


class SubscriptionStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ERROR = "error"


@dataclass
class ClientSubscription:
    """Local record of one room subscription."""

    room: RoomKey
    filters: dict[str, Any] = field(default_factory=dict)
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    confirmed_at: float | None = None
    active: bool = True

    @property
    def retry_task_name(self) -> str:
        return f"subscription:retry:{self.room.name}"


class SubscriptionRegistry(EventEmitter):
    """
    Client view of room subscriptions.

    Local events: "confirmed" (ClientSubscription), "error" (SubscriptionError).
    """

    def __init__(
        self,
        connection: ClientConnectionManager,
        config: SubscriptionConfig | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        super().__init__()
        self.connection = connection
        self.config = config or SubscriptionConfig()
        self.on_error = on_error
        self.retry_policy = RetryConfig(max_attempts=self.config.max_retries, base_delay=self.config.retry_delay)
        self._subscriptions: dict[RoomKey, ClientSubscription] = {}

        connection.on("connected", self._on_connected)
        connection.on("reconnected", self._on_reconnected)
        connection.on("message", self.handle_message)

    # Public API

    async def subscribe(
        self, room_type: RoomType | str, room_id: str, filters: Mapping[str, Any] | None = None
    ) -> ClientSubscription:
        """
        Subscribe to a room.

        With no live connection the request is queued as Pending when
        auto_subscribe is enabled.

        Raises:
            NotConnectedError: No live connection and auto_subscribe is disabled
        """
        room = RoomKey.of(room_type, room_id)
        if not self.connection.is_connected and not self.config.auto_subscribe:
            raise NotConnectedError(
                "Cannot subscribe without an active connection", details={"room": room.name}
            )

        subscription = self._subscriptions.get(room)
        new_filters = dict(filters or {})
        unchanged = subscription is not None and subscription.filters == new_filters
        if unchanged and subscription.status != SubscriptionStatus.ERROR:
            return subscription

        if subscription is None:
            subscription = ClientSubscription(room=room, filters=new_filters)
            self._subscriptions[room] = subscription
        else:
            subscription.filters = new_filters
            subscription.status = SubscriptionStatus.PENDING
            subscription.attempts = 0
            self.connection.tasks.cancel(subscription.retry_task_name)

        await self._submit(subscription)
        return subscription

    async def subscribe_many(
        self, requests: Iterable[tuple[RoomType | str, str] | tuple[RoomType | str, str, Mapping[str, Any]]]
    ) -> list[ClientSubscription]:
        """Subscribe to several rooms; each entry is (room_type, room_id[, filters])."""
        return [await self.subscribe(*request) for request in requests]

    async def unsubscribe(self, room_type: RoomType | str, room_id: str) -> bool:
        """
        Remove the local record and tell the server, best effort.

        Returns:
            False if there was no such subscription
        """
        room = RoomKey.of(room_type, room_id)
        subscription = self._subscriptions.pop(room, None)
        if subscription is None:
            return False
        subscription.active = False
        self.connection.tasks.cancel(subscription.retry_task_name)
        try:
            await self.connection.send(
                {
                    "type": ClientMessageType.UNSUBSCRIBE.value,
                    "data": {"room_type": room.room_type.value, "room_id": room.room_id},
                }
            )
        except (NotConnectedError, TransportError) as e:
            logger.debug("Unsubscribe not delivered", room_key=room.name, error=str(e))
        return True

    async def retry(self, room_type: RoomType | str, room_id: str) -> ClientSubscription | None:
        """Reset the retry budget of a subscription and submit it again."""
        subscription = self._subscriptions.get(RoomKey.of(room_type, room_id))
        if subscription is None:
            return None
        self.connection.tasks.cancel(subscription.retry_task_name)
        subscription.attempts = 0
        subscription.last_error = None
        subscription.status = SubscriptionStatus.PENDING
        await self._submit(subscription)
        return subscription

    def get(self, room_type: RoomType | str, room_id: str) -> ClientSubscription | None:
        return self._subscriptions.get(RoomKey.of(room_type, room_id))

    def rooms(self, status: SubscriptionStatus | None = None) -> set[RoomKey]:
        return {room for room, sub in self._subscriptions.items() if status is None or sub.status == status}

    def __len__(self) -> int:
        return len(self._subscriptions)

    def close(self) -> None:
        """Deregister every subscription and cancel pending retries."""
        for subscription in self._subscriptions.values():
            subscription.active = False
            self.connection.tasks.cancel(subscription.retry_task_name)
        self._subscriptions.clear()

    # Wire

    async def _submit(self, subscription: ClientSubscription) -> None:
        if not subscription.active:
            return
        try:
            await self.connection.send(
                {
                    "type": ClientMessageType.SUBSCRIBE.value,
                    "data": {
                        "room_type": subscription.room.room_type.value,
                        "room_id": subscription.room.room_id,
                        "filters": subscription.filters,
                    },
                }
            )
        except (NotConnectedError, TransportError) as e:
            # Stays Pending; submitted again on the next connected/reconnected
            logger.debug("Subscription queued until connected", room_key=subscription.room.name, error=str(e))

    async def handle_message(self, message: Mapping[str, Any]) -> None:
        message_type = message.get("type")
        if message_type not in (EventType.SUBSCRIPTION_CONFIRMED, EventType.SUBSCRIPTION_ERROR):
            return
        data = message.get("data") or {}
        try:
            room = RoomKey.parse(data.get("room", ""))
        except ValueError:
            logger.warning("Subscription reply for malformed room", room=data.get("room"))
            return
        subscription = self._subscriptions.get(room)
        if subscription is None:
            logger.debug("Subscription reply for unknown room", room_key=room.name)
            return

        if message_type == EventType.SUBSCRIPTION_CONFIRMED:
            subscription.status = SubscriptionStatus.CONFIRMED
            subscription.attempts = 0
            subscription.last_error = None
            subscription.confirmed_at = time.time()
            await self.emit("confirmed", subscription)
        else:
            await self._handle_rejection(subscription, data.get("message") or "Subscription rejected")

    async def _handle_rejection(self, subscription: ClientSubscription, reason: str) -> None:
        subscription.status = SubscriptionStatus.ERROR
        subscription.last_error = reason
        subscription.attempts += 1

        if self.config.reconnect_on_error and not self.retry_policy.exhausted(subscription.attempts):
            delay = self.retry_policy.calculate_delay(subscription.attempts)
            logger.info(
                "Retrying rejected subscription",
                room_key=subscription.room.name,
                attempt=subscription.attempts,
                delay=delay,
            )
            self.connection.tasks.schedule_later(
                subscription.retry_task_name, delay, lambda: self._retry_submit(subscription)
            )
            return

        error = SubscriptionError(
            f"Subscription to {subscription.room.name} failed: {reason}",
            room=subscription.room.name,
            attempts=subscription.attempts,
            terminal=True,
        )
        if self.on_error is not None:
            result = self.on_error(error)
            if inspect.isawaitable(result):
                await result
        await self.emit("error", error)

    async def _retry_submit(self, subscription: ClientSubscription) -> None:
        if subscription.active and subscription.status == SubscriptionStatus.ERROR:
            subscription.status = SubscriptionStatus.PENDING
            await self._submit(subscription)

    # Connection events

    async def _on_connected(self, _connection: ClientConnection) -> None:
        for subscription in list(self._subscriptions.values()):
            if subscription.status == SubscriptionStatus.PENDING:
                await self._submit(subscription)

    async def _on_reconnected(self, _connection: ClientConnection) -> None:
        resubmit = [
            sub
            for sub in self._subscriptions.values()
            if sub.status in (SubscriptionStatus.CONFIRMED, SubscriptionStatus.PENDING)
        ]
        logger.info("Resubscribing after reconnect", subscription_count=len(resubmit))
        for subscription in resubmit:
            subscription.status = SubscriptionStatus.PENDING
            await self._submit(subscription)

    def get_stats(self) -> dict[str, Any]:
        by_status: dict[str, int] = {status.value: 0 for status in SubscriptionStatus}
        for subscription in self._subscriptions.values():
            by_status[subscription.status.value] += 1
        return {"total": len(self._subscriptions), "by_status": by_status}
