"""
Event broadcaster for LifeSync.

Wraps a mutation in one EventEnvelope, resolves its target rooms against the
subscription index and queues it onto every matching connection. Delivery is
fire-and-forget: the broadcaster never awaits a socket.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from ..config.models import BroadcastConfig
from ..structured_logging.enhanced_logging_config import get_logger
from .connection_manager import Connection, ConnectionManager
from .envelope import EventEnvelope, build_envelope, utc_now_z
from .event_types import EventType, RoomKey
from .room_subscription_manager import RoomSubscriptionManager, ServerSubscription

logger = get_logger(__name__)

BULK_EVENT_TYPES = frozenset({EventType.BULK_UPDATE, EventType.BULK_DELETE})


@dataclass(frozen=True)
class PublishResult:
    """Outcome of one publish call."""

    envelope: EventEnvelope
    delivered: int
    dropped: int


class EventBroadcaster:
    """
    Fan-out of envelopes to room subscribers.

    A connection receives at most one copy of an envelope even when it is
    subscribed to several of the target rooms.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        subscriptions: RoomSubscriptionManager,
        config: BroadcastConfig | None = None,
    ) -> None:
        self.connections = connections
        self.subscriptions = subscriptions
        self.config = config or BroadcastConfig()

        self.total_published = 0
        self.total_deliveries = 0
        self.total_dropped = 0
        self.events_by_type: dict[str, int] = {}
        self._recent_publish_times: deque[float] = deque(maxlen=1000)

    def publish(
        self,
        event_type: EventType,
        payload: Mapping[str, Any],
        origin_user_id: str | None,
        rooms: Iterable[RoomKey],
        *,
        exclude_connection_ids: Iterable[str] = (),
    ) -> PublishResult:
        """
        Deliver one envelope to every matching subscription of the given rooms.

        Args:
            event_type: Event kind
            payload: Event data, also matched against subscription filters
            origin_user_id: User who caused the event, None for system events
            rooms: Target rooms; duplicates are ignored
            exclude_connection_ids: Connections that must not receive this event

        Returns:
            PublishResult with delivery counts
        """
        if event_type in BULK_EVENT_TYPES:
            items = payload.get("items") or []
            if len(items) > self.config.max_bulk_items:
                raise ValueError(
                    f"Bulk envelope carries {len(items)} items, cap is {self.config.max_bulk_items}; "
                    "use publish_bulk to split"
                )

        envelope = build_envelope(event_type, payload, user_id=origin_user_id)
        excluded = set(exclude_connection_ids)
        targets: dict[str, ServerSubscription] = {}
        room_list = list(dict.fromkeys(rooms))
        for room in room_list:
            for subscription in self.subscriptions.matching_subscriptions(room, envelope.payload):
                if subscription.connection_id not in excluded:
                    targets.setdefault(subscription.connection_id, subscription)

        delivered = dropped = 0
        for connection_id in targets:
            if self.connections.enqueue(connection_id, envelope):
                delivered += 1
            else:
                dropped += 1

        self._record(event_type, delivered, dropped)
        logger.debug(
            "Event published",
            event_type=event_type.value,
            event_id=envelope.event_id,
            rooms=[room.name for room in room_list],
            delivered=delivered,
            dropped=dropped,
        )
        return PublishResult(envelope, delivered, dropped)

    def publish_bulk(
        self,
        event_type: EventType,
        operation_type: str,
        items: Sequence[Mapping[str, Any]],
        origin_user_id: str | None,
        rooms: Iterable[RoomKey],
    ) -> list[PublishResult]:
        """
        Publish a bulk operation as envelopes of at most max_bulk_items items each.

        Each envelope payload is {operation_type, items, count, timestamp}.
        """
        if event_type not in BULK_EVENT_TYPES:
            raise ValueError(f"{event_type} is not a bulk event type")
        room_list = list(rooms)
        cap = self.config.max_bulk_items
        results = []
        for start in range(0, len(items), cap):
            chunk = [dict(item) for item in items[start : start + cap]]
            payload = {
                "operation_type": operation_type,
                "items": chunk,
                "count": len(chunk),
                "timestamp": utc_now_z(),
            }
            results.append(self.publish(event_type, payload, origin_user_id, room_list))
        return results

    def send_to_connection(self, connection_id: str, event_type: EventType, payload: Mapping[str, Any]) -> bool:
        """Queue a direct (non-room) event for one connection."""
        envelope = build_envelope(event_type, payload)
        delivered = self.connections.enqueue(connection_id, envelope)
        self._record(event_type, int(delivered), int(not delivered))
        return delivered

    def notify_member_joined(self, subscription: ServerSubscription) -> PublishResult:
        """Tell the other members of a room that a connection joined it."""
        return self.publish(
            EventType.ROOM_MEMBER_JOINED,
            {
                "room": subscription.room.name,
                "user_id": subscription.user_id,
                "connection_id": subscription.connection_id,
            },
            subscription.user_id,
            [subscription.room],
            exclude_connection_ids=[subscription.connection_id],
        )

    def notify_member_left(self, subscription: ServerSubscription) -> PublishResult:
        return self.publish(
            EventType.ROOM_MEMBER_LEFT,
            {
                "room": subscription.room.name,
                "user_id": subscription.user_id,
                "connection_id": subscription.connection_id,
            },
            subscription.user_id,
            [subscription.room],
            exclude_connection_ids=[subscription.connection_id],
        )

    async def on_connection_closed(
        self, connection: Connection, removed: list[ServerSubscription], was_last: bool
    ) -> None:
        """Disconnect listener: announce member_left in every room the connection was in."""
        for subscription in removed:
            self.notify_member_left(subscription)

    def _record(self, event_type: EventType, delivered: int, dropped: int) -> None:
        self.total_published += 1
        self.total_deliveries += delivered
        self.total_dropped += dropped
        self.events_by_type[event_type.value] = self.events_by_type.get(event_type.value, 0) + 1
        self._recent_publish_times.append(time.monotonic())

    def events_per_minute(self) -> float:
        cutoff = time.monotonic() - 60
        return float(sum(1 for ts in self._recent_publish_times if ts >= cutoff))

    def get_stats(self) -> dict[str, Any]:
        """Throughput statistics for the health surface."""
        return {
            "total_published": self.total_published,
            "total_deliveries": self.total_deliveries,
            "total_dropped": self.total_dropped,
            "events_per_minute": self.events_per_minute(),
            "events_by_type": dict(self.events_by_type),
            "max_bulk_items": self.config.max_bulk_items,
        }
