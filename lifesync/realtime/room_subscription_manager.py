"""
Room subscription index for LifeSync.

Tracks which connections are subscribed to which rooms, so the broadcaster
can resolve an event's target rooms to concrete connections. A room with no
subscribers is removed from the index.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..exceptions import ErrorContext, SubscriptionError
from ..structured_logging.enhanced_logging_config import get_logger
from .event_types import RoomKey, RoomType

logger = get_logger(__name__)

AccessPolicy = Callable[[str, RoomKey], bool | Awaitable[bool]]


def default_access_policy(user_id: str, room: RoomKey) -> bool:
    """User rooms are private to their owner; every other room is open to authenticated users."""
    if room.room_type is RoomType.USER:
        return room.room_id == user_id
    return True


def filters_match(filters: Mapping[str, Any], payload: Mapping[str, Any]) -> bool:
    """Every filter field must be present in the payload with an equal value."""
    return all(key in payload and payload[key] == value for key, value in filters.items())


@dataclass
class ServerSubscription:
    """A confirmed subscription of one connection to one room."""

    connection_id: str
    user_id: str
    room: RoomKey
    filters: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    def matches(self, payload: Mapping[str, Any]) -> bool:
        return filters_match(self.filters, payload)


class RoomSubscriptionManager:
    """
    Manages room subscriptions for live connections.

    Writers for the same room are serialized by a per-room asyncio.Lock;
    reads are lock-free snapshots.
    """

    def __init__(self, access_policy: AccessPolicy = default_access_policy) -> None:
        """Initialize the room subscription manager."""
        self.access_policy = access_policy
        # room -> connection_id -> subscription
        self._rooms: dict[RoomKey, dict[str, ServerSubscription]] = {}
        # connection_id -> rooms
        self._by_connection: dict[str, set[RoomKey]] = {}
        self._room_locks: dict[RoomKey, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def can_access(self, user_id: str, room: RoomKey) -> bool:
        allowed = self.access_policy(user_id, room)
        if inspect.isawaitable(allowed):
            allowed = await allowed
        return bool(allowed)

    async def subscribe(
        self,
        connection_id: str,
        user_id: str,
        room: RoomKey,
        filters: Mapping[str, Any] | None = None,
    ) -> tuple[ServerSubscription, bool]:
        """
        Subscribe a connection to a room after checking access.

        Re-subscribing replaces the filters of the existing subscription.

        Args:
            connection_id: Subscribing connection
            user_id: Authenticated user behind the connection
            room: Target room
            filters: Field -> required value predicate over event payloads

        Returns:
            (subscription, created) where created is False for a re-subscribe

        Raises:
            SubscriptionError: If the access policy rejects the room
        """
        if not await self.can_access(user_id, room):
            raise SubscriptionError(
                "Access denied",
                context=ErrorContext(user_id=user_id, connection_id=connection_id, room=room.name),
                room=room.name,
                terminal=True,
            )

        async with self._room_locks[room]:
            members = self._rooms.setdefault(room, {})
            created = connection_id not in members
            subscription = ServerSubscription(connection_id, user_id, room, dict(filters or {}))
            members[connection_id] = subscription
            self._by_connection.setdefault(connection_id, set()).add(room)

        logger.debug(
            "Connection subscribed to room",
            connection_id=connection_id,
            user_id=user_id,
            room_key=room.name,
            created=created,
        )
        return subscription, created

    async def unsubscribe(self, connection_id: str, room: RoomKey) -> ServerSubscription | None:
        """
        Remove one subscription.

        Returns:
            The removed subscription, or None if it did not exist
        """
        async with self._room_locks[room]:
            removed = self._remove(connection_id, room)
        self._drop_lock_if_idle(room)
        if removed is not None:
            logger.debug("Connection unsubscribed from room", connection_id=connection_id, room_key=room.name)
        return removed

    async def remove_connection(self, connection_id: str) -> list[ServerSubscription]:
        """
        Remove every subscription held by a connection.

        Returns:
            The removed subscriptions
        """
        removed: list[ServerSubscription] = []
        for room in list(self._by_connection.get(connection_id, ())):
            async with self._room_locks[room]:
                subscription = self._remove(connection_id, room)
            self._drop_lock_if_idle(room)
            if subscription is not None:
                removed.append(subscription)
        self._by_connection.pop(connection_id, None)
        if removed:
            logger.debug("Removed connection subscriptions", connection_id=connection_id, room_count=len(removed))
        return removed

    def _remove(self, connection_id: str, room: RoomKey) -> ServerSubscription | None:
        members = self._rooms.get(room)
        if not members:
            return None
        subscription = members.pop(connection_id, None)
        if not members:
            del self._rooms[room]
        rooms = self._by_connection.get(connection_id)
        if rooms is not None:
            rooms.discard(room)
            if not rooms:
                del self._by_connection[connection_id]
        return subscription

    def _drop_lock_if_idle(self, room: RoomKey) -> None:
        lock = self._room_locks.get(room)
        if room not in self._rooms and lock is not None and not lock.locked():
            del self._room_locks[room]

    def matching_subscriptions(self, room: RoomKey, payload: Mapping[str, Any]) -> list[ServerSubscription]:
        """Subscriptions on room whose filters accept payload."""
        members = self._rooms.get(room)
        if not members:
            return []
        return [subscription for subscription in members.values() if subscription.matches(payload)]

    def subscriptions_in(self, room: RoomKey) -> list[ServerSubscription]:
        return list(self._rooms.get(room, {}).values())

    def rooms_for(self, connection_id: str) -> set[RoomKey]:
        return set(self._by_connection.get(connection_id, ()))

    def subscriber_count(self, room: RoomKey) -> int:
        return len(self._rooms.get(room, ()))

    def member_user_ids(self, room: RoomKey) -> set[str]:
        return {subscription.user_id for subscription in self._rooms.get(room, {}).values()}

    def is_subscribed(self, connection_id: str, room: RoomKey) -> bool:
        return connection_id in self._rooms.get(room, {})

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    def get_stats(self) -> dict[str, Any]:
        by_type: dict[str, int] = {}
        for room in self._rooms:
            by_type[room.room_type.value] = by_type.get(room.room_type.value, 0) + 1
        return {
            "rooms": len(self._rooms),
            "rooms_by_type": by_type,
            "subscriptions": sum(len(members) for members in self._rooms.values()),
            "connections": len(self._by_connection),
        }
