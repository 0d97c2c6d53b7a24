"""
Client-side presence tracking for LifeSync.

The local user's status is a small state machine driven by activity and
visibility signals; a heartbeat reports it to the server on a fixed cadence.
Presence of other users arrives as presence:* events and is kept in a keyed
view with staleness eviction.
"""

import time
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from statemachine import State, StateMachine

from ..config.models import PresenceConfig
from ..exceptions import NotConnectedError, TransportError
from ..models.presence import PresenceCounts, PresenceRecord, PresenceStatus
from ..realtime.event_types import ClientMessageType, EventType
from ..structured_logging.enhanced_logging_config import get_logger
from .connection import ClientConnection, ClientConnectionManager
from .events import EventEmitter

logger = get_logger(__name__)

TICK_TASK = "presence:tick"
HEARTBEAT_TASK = "presence:heartbeat"


class PresenceStateMachine(StateMachine):
    """
    Local presence status.

    offline is only entered through logout or a lost connection; away is
    entered from inactivity and left on any activity.
    """

    offline = State("Offline", initial=True)
    online = State("Online")
    away = State("Away")

    go_online = offline.to(online) | away.to(online)
    go_away = online.to(away)
    go_offline = online.to(offline) | away.to(offline)

    def on_enter_state(self, state: State, event=None, **kwargs) -> None:
        logger.debug(
            "Presence state transition", trigger_event=str(event) if event else "initial", to_state=state.id
        )

    @property
    def status(self) -> PresenceStatus:
        return PresenceStatus(self.current_state.id)


class RemoteEntry:
    """A remote user's presence plus the local time it was last refreshed."""

    __slots__ = ("record", "received_at")

    def __init__(self, record: PresenceRecord, received_at: float):
        self.record = record
        self.received_at = received_at


class PresenceTracker(EventEmitter):
    """
    Local status, heartbeats and the view of remote users.

    Local events: "status_changed" (PresenceStatus), "counts_changed" (PresenceCounts).
    """

    def __init__(
        self,
        connection: ClientConnectionManager,
        config: PresenceConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__()
        self.connection = connection
        self.config = config or PresenceConfig()
        self._clock = clock

        self.machine = PresenceStateMachine()
        self.last_activity = clock()
        self.is_visible = True
        self.context: dict[str, Any] = {}
        self._remote: dict[str, RemoteEntry] = {}
        self.counts = PresenceCounts()
        self.heartbeats_sent = 0

        connection.on("connected", self._on_connected)
        connection.on("reconnected", self._on_connected)
        connection.on("disconnected", self._on_disconnected)
        connection.on("message", self.handle_message)

    @property
    def status(self) -> PresenceStatus:
        return self.machine.status

    @property
    def is_active(self) -> bool:
        return (
            self.status == PresenceStatus.ONLINE
            and self.is_visible
            and self._clock() - self.last_activity <= self.config.activity_threshold
        )

    # Timers

    def start(self) -> None:
        tasks = self.connection.tasks
        tasks.schedule_interval(TICK_TASK, self.config.check_interval, self.tick)
        tasks.schedule_interval(HEARTBEAT_TASK, self.config.presence_update_interval, self.send_heartbeat)

    def stop(self) -> None:
        self.connection.tasks.cancel(TICK_TASK)
        self.connection.tasks.cancel(HEARTBEAT_TASK)

    async def tick(self) -> None:
        """Inactivity check, stale remote eviction and the aggregate counts."""
        now = self._clock()
        if self.status == PresenceStatus.ONLINE and now - self.last_activity > self.config.activity_threshold:
            await self._transition(self.machine.go_away)
            await self.send_heartbeat()
        self.drop_stale(now)
        await self._recount()

    # Local signals

    async def record_activity(self) -> None:
        """Any user input; returns an away user to online."""
        self.last_activity = self._clock()
        if self.status == PresenceStatus.AWAY:
            await self._transition(self.machine.go_online)
            await self.send_heartbeat()

    async def set_visibility(self, visible: bool) -> None:
        self.is_visible = visible
        if visible:
            await self.record_activity()

    async def logout(self) -> None:
        """Explicit offline; the last heartbeat carries the offline status."""
        if self.status != PresenceStatus.OFFLINE:
            await self._transition(self.machine.go_offline)
            await self.send_heartbeat()
        self.stop()

    async def _transition(self, event: Callable[[], Any]) -> None:
        previous = self.status
        event()
        if self.status != previous:
            logger.info("Presence status changed", from_status=previous.value, to_status=self.status.value)
            await self.emit("status_changed", self.status)

    # Context

    async def set_current_page(self, page: str | None) -> None:
        await self._update_context(current_page=page)

    async def set_active_task(self, task_id: str | None) -> None:
        await self._update_context(active_task=task_id)

    async def set_active_project(self, project_id: str | None) -> None:
        await self._update_context(active_project=project_id)

    async def set_custom_data(self, data: Mapping[str, Any]) -> None:
        await self._update_context(custom_data=dict(data))

    async def _update_context(self, **fields: Any) -> None:
        self.context.update(fields)
        self.last_activity = self._clock()
        await self._send(ClientMessageType.PRESENCE_UPDATE, {**fields, "timestamp": self._clock()})

    # Wire

    async def send_heartbeat(self) -> None:
        """Report status regardless of change and recompute the aggregate counts."""
        sent = await self._send(
            ClientMessageType.PRESENCE_HEARTBEAT,
            {
                "status": self.status.value,
                "last_activity": self.last_activity,
                "is_visible": self.is_visible,
                "is_active": self.is_active,
                "timestamp": self._clock(),
            },
        )
        if sent:
            self.heartbeats_sent += 1
        await self._recount()

    async def _send(self, message_type: ClientMessageType, data: dict[str, Any]) -> bool:
        try:
            await self.connection.send({"type": message_type.value, "data": data})
        except (NotConnectedError, TransportError) as e:
            logger.debug("Presence message not sent", message_type=message_type.value, error=str(e))
            return False
        return True

    async def _on_connected(self, _connection: ClientConnection) -> None:
        self.last_activity = self._clock()
        if self.status != PresenceStatus.ONLINE:
            await self._transition(self.machine.go_online)
        self.start()
        await self.send_heartbeat()

    async def _on_disconnected(self, _reason: str) -> None:
        self.stop()
        if self.status != PresenceStatus.OFFLINE:
            await self._transition(self.machine.go_offline)

    async def handle_message(self, message: Mapping[str, Any]) -> None:
        """Ingest presence:* events into the remote view; counts follow on the next tick."""
        data = message.get("data") or {}
        match message.get("type"):
            case EventType.PRESENCE_USER_JOINED | EventType.PRESENCE_USER_UPDATED:
                self._upsert(data.get("presence"))
            case EventType.PRESENCE_USER_LEFT:
                self._mark_offline(data.get("user_id"))
            case EventType.PRESENCE_INITIAL_STATE:
                for record in data.get("users") or []:
                    self._upsert(record)
            case EventType.PRESENCE_SYNC:
                for record in data.get("updates") or []:
                    self._upsert(record)

    def _upsert(self, raw: Mapping[str, Any] | None) -> None:
        if not raw:
            return
        try:
            record = PresenceRecord.model_validate(raw)
        except PydanticValidationError as e:
            logger.warning("Dropping malformed presence record", error_count=e.error_count())
            return
        current = self._remote.get(record.user_id)
        if current is not None and current.record.updated_at > record.updated_at:
            return
        self._remote[record.user_id] = RemoteEntry(record, self._clock())

    def _mark_offline(self, user_id: str | None) -> None:
        entry = self._remote.get(user_id) if user_id else None
        if entry is None:
            return
        entry.record = entry.record.model_copy(update={"status": PresenceStatus.OFFLINE, "is_active": False})
        entry.received_at = self._clock()

    def drop_stale(self, now: float | None = None) -> list[str]:
        """Remove remote records not refreshed within stale_threshold."""
        now = self._clock() if now is None else now
        stale = [uid for uid, entry in self._remote.items() if now - entry.received_at > self.config.stale_threshold]
        for user_id in stale:
            del self._remote[user_id]
        if stale:
            logger.debug("Dropped stale remote presence", user_count=len(stale))
        return stale

    async def _recount(self) -> None:
        counts = PresenceCounts(total=len(self._remote))
        for entry in self._remote.values():
            status = entry.record.status.value
            setattr(counts, status, getattr(counts, status) + 1)
        if counts != self.counts:
            self.counts = counts
            await self.emit("counts_changed", counts)

    # Queries

    def get(self, user_id: str) -> PresenceRecord | None:
        entry = self._remote.get(user_id)
        return entry.record if entry else None

    def by_status(self, status: PresenceStatus) -> list[PresenceRecord]:
        return [entry.record for entry in self._remote.values() if entry.record.status == status]

    def remote_user_ids(self) -> set[str]:
        return set(self._remote)
