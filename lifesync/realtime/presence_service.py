"""
Server-side presence table for LifeSync.

Fed by client heartbeats and context updates, with last-write-wins by
timestamp. Presence changes are broadcast to the presence-bearing rooms
(project, team, global) a user belongs to. A user's last connection
dropping starts a grace period; only when it expires is the user
announced as gone, so quick reconnects do not flap.

An explicit offline status (logout) is applied as is and skips the grace
period when the connection then closes. A reconnect that does not
resubscribe to a room stops receiving the user's updates in that room at
once; the room hears user_left when the grace period runs out.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from ..app.task_registry import TaskRegistry
from ..config.models import ConnectionConfig, PresenceConfig
from ..exceptions import ErrorContext, ValidationError
from ..models.presence import (
    PresenceContext,
    PresenceCounts,
    PresenceHeartbeat,
    PresenceRecord,
    PresenceStatus,
    PresenceUpdate,
)
from ..structured_logging.enhanced_logging_config import get_logger
from .connection_manager import Connection, ConnectionManager
from .event_broadcaster import EventBroadcaster
from .event_types import PRESENCE_ROOM_TYPES, EventType, RoomKey
from .messages import validation_errors
from .room_subscription_manager import RoomSubscriptionManager, ServerSubscription

logger = get_logger(__name__)


class PresenceService:
    """
    Presence records for every known user.

    Room membership for presence purposes outlives a connection by the
    offline grace period, so a reconnecting client rejoins silently.
    """

    def __init__(
        self,
        config: PresenceConfig,
        connection_config: ConnectionConfig,
        connections: ConnectionManager,
        subscriptions: RoomSubscriptionManager,
        broadcaster: EventBroadcaster,
        task_registry: TaskRegistry,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.grace_period = connection_config.offline_grace_period
        self.connections = connections
        self.subscriptions = subscriptions
        self.broadcaster = broadcaster
        self.task_registry = task_registry
        self._clock = clock

        self._records: dict[str, PresenceRecord] = {}
        self._presence_rooms: dict[str, set[RoomKey]] = {}
        self._rejoin_pending: dict[str, set[RoomKey]] = {}
        self._logged_out: set[str] = set()
        self._dirty: set[str] = set()
        self.evicted_total = 0

    # Connection lifecycle

    async def on_connection_opened(self, connection: Connection) -> None:
        """Connect listener: the user is online; cancel a pending offline announcement."""
        user_id = connection.user_id
        self.task_registry.cancel(self._grace_task_name(user_id))
        self._logged_out.discard(user_id)
        self._hold_absent_rooms(user_id)
        record = self._records.get(user_id)
        now = self._clock()
        if record is None or record.status is PresenceStatus.OFFLINE:
            self._apply(
                PresenceRecord(
                    user_id=user_id,
                    status=PresenceStatus.ONLINE,
                    last_activity=now,
                    last_seen=now,
                    updated_at=now,
                    context=record.context if record else PresenceContext(),
                ),
                broadcast=True,
            )
        else:
            self._records[user_id] = record.model_copy(update={"last_seen": now})

    async def on_connection_closed(
        self, connection: Connection, removed: list[ServerSubscription], was_last: bool
    ) -> None:
        """Disconnect listener: leave rooms now, or start the grace period if this was the last connection."""
        user_id = connection.user_id
        if was_last:
            if self.grace_period <= 0 or user_id in self._logged_out:
                self._go_offline(user_id)
            else:
                self.task_registry.schedule_later(
                    self._grace_task_name(user_id), self.grace_period, lambda: self._go_offline(user_id)
                )
            return

        for subscription in removed:
            self._leave_if_absent(user_id, subscription.room)

    def _grace_task_name(self, user_id: str) -> str:
        return f"presence:offline:{user_id}"

    def _rejoin_task_name(self, user_id: str) -> str:
        return f"presence:rejoin:{user_id}"

    def _hold_absent_rooms(self, user_id: str) -> None:
        """Stop broadcasting to presence rooms the user is no longer subscribed to, pending a rejoin."""
        user_rooms = self._presence_rooms.get(user_id)
        if not user_rooms:
            return
        absent = {room for room in user_rooms if user_id not in self.subscriptions.member_user_ids(room)}
        if not absent:
            return
        user_rooms -= absent
        if not user_rooms:
            del self._presence_rooms[user_id]
        self._rejoin_pending.setdefault(user_id, set()).update(absent)
        self.task_registry.schedule_later(
            self._rejoin_task_name(user_id), max(self.grace_period, 0.0), lambda: self._expire_rejoin(user_id)
        )

    def _expire_rejoin(self, user_id: str) -> None:
        for room in self._rejoin_pending.pop(user_id, set()):
            self.broadcaster.publish(EventType.PRESENCE_USER_LEFT, {"user_id": user_id}, user_id, [room])

    def _take_pending(self, user_id: str) -> set[RoomKey]:
        self.task_registry.cancel(self._rejoin_task_name(user_id))
        return self._rejoin_pending.pop(user_id, set())

    def _go_offline(self, user_id: str) -> None:
        if self.connections.is_user_connected(user_id):
            return
        self._logged_out.discard(user_id)
        rooms = self._presence_rooms.pop(user_id, set()) | self._take_pending(user_id)
        record = self._records.get(user_id)
        now = self._clock()
        if record is not None:
            self._records[user_id] = record.model_copy(
                update={"status": PresenceStatus.OFFLINE, "is_active": False, "last_seen": now, "updated_at": now}
            )
            self._dirty.add(user_id)
        if rooms:
            self.broadcaster.publish(EventType.PRESENCE_USER_LEFT, {"user_id": user_id}, user_id, rooms)
        logger.info("User went offline", user_id=user_id, presence_rooms=len(rooms))

    # Room membership

    async def on_room_joined(self, subscription: ServerSubscription) -> None:
        """Send the room's presence snapshot to the subscriber and announce the user to the room."""
        room = subscription.room
        if room.room_type not in PRESENCE_ROOM_TYPES:
            return

        members = self.subscriptions.member_user_ids(room)
        self.broadcaster.send_to_connection(
            subscription.connection_id,
            EventType.PRESENCE_INITIAL_STATE,
            {
                "room": room.name,
                "users": [self._records[uid].to_wire() for uid in sorted(members) if uid in self._records],
            },
        )

        user_rooms = self._presence_rooms.setdefault(subscription.user_id, set())
        if room in user_rooms:
            return
        user_rooms.add(room)
        pending = self._rejoin_pending.get(subscription.user_id)
        if pending and room in pending:
            # Back before the grace period ran out; the room never saw the user leave
            pending.discard(room)
            if not pending:
                self._take_pending(subscription.user_id)
            return
        record = self._records.get(subscription.user_id)
        self.broadcaster.publish(
            EventType.PRESENCE_USER_JOINED,
            {"user_id": subscription.user_id, "presence": record.to_wire() if record else None},
            subscription.user_id,
            [room],
            exclude_connection_ids=[subscription.connection_id],
        )

    async def on_room_left(self, subscription: ServerSubscription) -> None:
        self._leave_if_absent(subscription.user_id, subscription.room)

    def _leave_if_absent(self, user_id: str, room: RoomKey) -> None:
        if room.room_type not in PRESENCE_ROOM_TYPES:
            return
        if user_id in self.subscriptions.member_user_ids(room):
            return
        user_rooms = self._presence_rooms.get(user_id)
        if not user_rooms or room not in user_rooms:
            return
        user_rooms.discard(room)
        if not user_rooms:
            del self._presence_rooms[user_id]
        self.broadcaster.publish(EventType.PRESENCE_USER_LEFT, {"user_id": user_id}, user_id, [room])

    def presence_rooms_for(self, user_id: str) -> set[RoomKey]:
        return set(self._presence_rooms.get(user_id, ()))

    # Inbound signals

    def record_heartbeat(self, user_id: str, data: Mapping[str, Any]) -> PresenceRecord | None:
        """
        Apply a presence:heartbeat.

        Returns:
            The stored record, or None if the heartbeat was older than the record

        Raises:
            ValidationError: If the payload is malformed
        """
        heartbeat = self._parse(PresenceHeartbeat, data, user_id)
        now = self._clock()
        stamp = heartbeat.timestamp if heartbeat.timestamp is not None else now
        current = self._records.get(user_id)
        if current is not None and stamp < current.updated_at:
            logger.debug("Ignoring out-of-order heartbeat", user_id=user_id, stamp=stamp)
            return None

        status = self._track_logout(user_id, heartbeat.status)
        updated = PresenceRecord(
            user_id=user_id,
            status=status,
            last_activity=heartbeat.last_activity or (current.last_activity if current else now),
            last_seen=now,
            is_visible=heartbeat.is_visible,
            is_active=heartbeat.is_active,
            context=current.context if current else PresenceContext(),
            updated_at=stamp,
        )
        self._apply(updated, broadcast=current is None or current.status is not updated.status)
        return updated

    def update_context(self, user_id: str, data: Mapping[str, Any]) -> PresenceRecord | None:
        """
        Apply a presence:update (page, active task or project, custom data).

        Setting any context marks the user online unless an explicit status is given.
        """
        update = self._parse(PresenceUpdate, data, user_id)
        now = self._clock()
        stamp = update.timestamp if update.timestamp is not None else now
        current = self._records.get(user_id) or PresenceRecord(user_id=user_id, updated_at=0.0)
        if stamp < current.updated_at:
            return None

        context_changes = update.model_dump(
            include={"current_page", "active_task", "active_project", "custom_data"}, exclude_unset=True
        )
        if context_changes.get("custom_data", {}) is None:
            del context_changes["custom_data"]
        context = PresenceContext.model_validate({**current.context.model_dump(), **context_changes})
        status = self._track_logout(user_id, update.status or PresenceStatus.ONLINE)
        updated = current.model_copy(
            update={
                "status": status,
                "context": context,
                "last_activity": now,
                "last_seen": now,
                "is_active": status is PresenceStatus.ONLINE,
                "updated_at": stamp,
            }
        )
        self._apply(updated, broadcast=True)
        return updated

    def _track_logout(self, user_id: str, status: PresenceStatus) -> PresenceStatus:
        """An explicit offline from the client is a logout: the next disconnect skips the grace period."""
        if status is PresenceStatus.OFFLINE:
            if user_id not in self._logged_out:
                logger.info("User logged out", user_id=user_id)
            self._logged_out.add(user_id)
        else:
            self._logged_out.discard(user_id)
        return status

    def set_status(self, user_id: str, status: PresenceStatus) -> PresenceRecord:
        now = self._clock()
        current = self._records.get(user_id) or PresenceRecord(user_id=user_id)
        updated = current.model_copy(update={"status": status, "last_seen": now, "updated_at": now})
        self._apply(updated, broadcast=current.status is not status)
        return updated

    def _parse(self, model, data: Mapping[str, Any], user_id: str):
        try:
            return model.model_validate(dict(data))
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid {model.__name__} payload",
                context=ErrorContext(user_id=user_id),
                details={"errors": validation_errors(e)},
            ) from e

    def _apply(self, record: PresenceRecord, broadcast: bool) -> None:
        self._records[record.user_id] = record
        self._dirty.add(record.user_id)
        if not broadcast:
            return
        rooms = self._presence_rooms.get(record.user_id)
        if rooms:
            self.broadcaster.publish(
                EventType.PRESENCE_USER_UPDATED,
                {"user_id": record.user_id, "presence": record.to_wire()},
                record.user_id,
                rooms,
            )

    # Periodic work

    def sweep_stale(self) -> list[str]:
        """Evict records not refreshed within stale_threshold whose user has no live connection."""
        cutoff = self._clock() - self.config.stale_threshold
        stale = [
            user_id
            for user_id, record in self._records.items()
            if record.last_seen < cutoff and not self.connections.is_user_connected(user_id)
        ]
        for user_id in stale:
            del self._records[user_id]
            self._dirty.discard(user_id)
            self._presence_rooms.pop(user_id, None)
            self._take_pending(user_id)
            self._logged_out.discard(user_id)
        if stale:
            self.evicted_total += len(stale)
            logger.debug("Evicted stale presence records", count=len(stale))
        return stale

    def broadcast_sync(self) -> int:
        """Send presence:sync with the records changed since the last sync to each presence room."""
        if not self._dirty:
            return 0
        dirty, self._dirty = self._dirty, set()
        rooms: dict[RoomKey, list[dict[str, Any]]] = {}
        for user_id in dirty:
            record = self._records.get(user_id)
            if record is None:
                continue
            for room in self._presence_rooms.get(user_id, ()):
                rooms.setdefault(room, []).append(record.to_wire())
        for room, updates in rooms.items():
            self.broadcaster.publish(EventType.PRESENCE_SYNC, {"room": room.name, "updates": updates}, None, [room])
        return len(rooms)

    def start(self) -> None:
        self.task_registry.schedule_interval("presence:sweep", self.config.check_interval, self.sweep_stale)
        self.task_registry.schedule_interval("presence:sync", self.config.sync_interval, self.broadcast_sync)

    # Queries

    def get(self, user_id: str) -> PresenceRecord | None:
        return self._records.get(user_id)

    def get_many(self, user_ids: list[str]) -> list[PresenceRecord]:
        return [self._records[uid] for uid in user_ids if uid in self._records]

    def is_online(self, user_id: str) -> bool:
        record = self._records.get(user_id)
        return record is not None and record.status is PresenceStatus.ONLINE

    def by_status(self, status: PresenceStatus) -> list[PresenceRecord]:
        return [record for record in self._records.values() if record.status is status]

    def _online_where(self, predicate: Callable[[PresenceContext], bool]) -> list[PresenceRecord]:
        return [
            record
            for record in self._records.values()
            if record.status is PresenceStatus.ONLINE and predicate(record.context)
        ]

    def users_on_page(self, page: str) -> list[PresenceRecord]:
        return self._online_where(lambda ctx: ctx.current_page == page)

    def users_on_task(self, task_id: str) -> list[PresenceRecord]:
        return self._online_where(lambda ctx: ctx.active_task == task_id)

    def users_on_project(self, project_id: str) -> list[PresenceRecord]:
        return self._online_where(lambda ctx: ctx.active_project == project_id)

    def counts(self) -> PresenceCounts:
        counts = PresenceCounts(total=len(self._records))
        for record in self._records.values():
            setattr(counts, record.status.value, getattr(counts, record.status.value) + 1)
        return counts

    def get_stats(self) -> dict[str, Any]:
        return {**self.counts().model_dump(), "evicted_total": self.evicted_total}
