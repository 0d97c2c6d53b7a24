"""
Domain adapters between the mutation layer and the event broadcaster.

The CRUD layer calls these after a write commits. Each method resolves the
rooms an entity belongs to and schedules the broadcast; none of them wait
for delivery.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from ..exceptions import ErrorContext, ValidationError
from ..structured_logging.enhanced_logging_config import get_logger
from .envelope import EnvelopeEncoder, utc_now_z
from .event_broadcaster import EventBroadcaster, PublishResult
from .event_types import EventType, RoomKey, RoomType

logger = get_logger(__name__)

TASK_TRACKED_FIELDS = ("title", "description", "status", "priority", "due_date", "tags", "metadata")
PROJECT_TRACKED_FIELDS = ("name", "description", "status", "settings")

BULK_KINDS = {
    "update": EventType.BULK_UPDATE,
    "delete": EventType.BULK_DELETE,
}


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, cls=EnvelopeEncoder)


def compute_changes(
    previous: Mapping[str, Any], current: Mapping[str, Any], fields: Iterable[str]
) -> dict[str, dict[str, Any]]:
    """
    Field-level diff over the tracked fields.

    Returns:
        {field: {"from": old, "to": new}} for every field whose value differs
    """
    changes: dict[str, dict[str, Any]] = {}
    for field in fields:
        old, new = previous.get(field), current.get(field)
        if _canonical(old) != _canonical(new):
            changes[field] = {"from": old, "to": new}
    return changes


def task_rooms(task: Mapping[str, Any]) -> list[RoomKey]:
    """Owner's user room, assignee's user room if different, the project room if set, the task room."""
    rooms: list[RoomKey] = []
    owner = task.get("user_id")
    assignee = task.get("assigned_to")
    if owner:
        rooms.append(RoomKey.user(owner))
    if assignee and assignee != owner:
        rooms.append(RoomKey.user(assignee))
    if task.get("project_id"):
        rooms.append(RoomKey.of(RoomType.PROJECT, task["project_id"]))
    rooms.append(RoomKey.of(RoomType.TASK, task["id"]))
    return rooms


class DataSyncService:
    """Turns committed domain mutations into realtime broadcasts."""

    def __init__(self, broadcaster: EventBroadcaster) -> None:
        self.broadcaster = broadcaster
        self.synced_by_type: dict[str, int] = {}

    @staticmethod
    def _require_id(entity: Mapping[str, Any], kind: str, user_id: str | None) -> None:
        if not isinstance(entity, Mapping) or entity.get("id") in (None, ""):
            raise ValidationError(
                f"{kind} payload must be a mapping with an id",
                context=ErrorContext(user_id=user_id, event_type=kind),
                field="id",
            )

    def _publish(
        self, event_type: EventType, payload: Mapping[str, Any], user_id: str | None, rooms: list[RoomKey]
    ) -> PublishResult:
        result = self.broadcaster.publish(event_type, payload, user_id, rooms)
        self.synced_by_type[event_type.value] = self.synced_by_type.get(event_type.value, 0) + 1
        logger.info(
            "Synced domain event",
            event_type=event_type.value,
            entity_id=payload.get("id"),
            user_id=user_id,
            delivered=result.delivered,
        )
        return result

    # Tasks

    async def task_created(self, task: Mapping[str, Any], user_id: str | None) -> PublishResult:
        self._require_id(task, "task", user_id)
        return self._publish(EventType.TASK_CREATED, dict(task), user_id, task_rooms(task))

    async def task_updated(
        self, task: Mapping[str, Any], previous_task: Mapping[str, Any], user_id: str | None
    ) -> PublishResult:
        """Broadcast an update carrying previous_state and the tracked-field changes."""
        self._require_id(task, "task", user_id)
        payload = {
            **task,
            "previous_state": dict(previous_task),
            "changes": compute_changes(previous_task, task, TASK_TRACKED_FIELDS),
        }
        rooms = task_rooms(task)
        # A reassignment must also reach the previous assignee
        previous_assignee = previous_task.get("assigned_to")
        if previous_assignee and RoomKey.user(previous_assignee) not in rooms:
            rooms.append(RoomKey.user(previous_assignee))
        return self._publish(EventType.TASK_UPDATED, payload, user_id, rooms)

    async def task_deleted(self, task: Mapping[str, Any], user_id: str | None) -> PublishResult:
        self._require_id(task, "task", user_id)
        return self._publish(EventType.TASK_DELETED, dict(task), user_id, task_rooms(task))

    async def task_assigned(
        self, task: Mapping[str, Any], previous_assignee: str | None, user_id: str | None
    ) -> PublishResult:
        self._require_id(task, "task", user_id)
        payload = {
            **task,
            "previous_assignee": previous_assignee,
            "assignment_change": {
                "from": previous_assignee,
                "to": task.get("assigned_to"),
                "timestamp": utc_now_z(),
            },
        }
        rooms = task_rooms(task)
        if previous_assignee and RoomKey.user(previous_assignee) not in rooms:
            rooms.append(RoomKey.user(previous_assignee))
        return self._publish(EventType.TASK_ASSIGNED, payload, user_id, rooms)

    # Tags

    async def _tag_event(self, event_type: EventType, tag: Mapping[str, Any], user_id: str | None) -> PublishResult:
        self._require_id(tag, "tag", user_id)
        owner = tag.get("user_id") or user_id
        rooms = [RoomKey.user(owner)] if owner else []
        return self._publish(event_type, dict(tag), user_id, rooms)

    async def tag_created(self, tag: Mapping[str, Any], user_id: str | None) -> PublishResult:
        return await self._tag_event(EventType.TAG_CREATED, tag, user_id)

    async def tag_updated(self, tag: Mapping[str, Any], user_id: str | None) -> PublishResult:
        return await self._tag_event(EventType.TAG_UPDATED, tag, user_id)

    async def tag_deleted(self, tag: Mapping[str, Any], user_id: str | None) -> PublishResult:
        return await self._tag_event(EventType.TAG_DELETED, tag, user_id)

    # Projects

    def _project_rooms(self, project: Mapping[str, Any]) -> list[RoomKey]:
        rooms = [RoomKey.of(RoomType.PROJECT, project["id"])]
        if project.get("owner_id"):
            rooms.append(RoomKey.user(project["owner_id"]))
        return rooms

    async def project_created(self, project: Mapping[str, Any], user_id: str | None) -> PublishResult:
        self._require_id(project, "project", user_id)
        return self._publish(EventType.PROJECT_CREATED, dict(project), user_id, self._project_rooms(project))

    async def project_updated(
        self,
        project: Mapping[str, Any],
        user_id: str | None,
        previous_project: Mapping[str, Any] | None = None,
    ) -> PublishResult:
        self._require_id(project, "project", user_id)
        payload = dict(project)
        if previous_project is not None:
            payload["previous_state"] = dict(previous_project)
            payload["changes"] = compute_changes(previous_project, project, PROJECT_TRACKED_FIELDS)
        return self._publish(EventType.PROJECT_UPDATED, payload, user_id, self._project_rooms(project))

    # Bulk

    async def bulk_operation(
        self, kind: str, items: Sequence[Mapping[str, Any]], user_id: str | None
    ) -> list[PublishResult]:
        """
        Broadcast a bulk update or delete to every affected owner and assignee.

        Args:
            kind: "update" or "delete"
            items: Affected entities
            user_id: User who performed the operation

        Raises:
            ValidationError: Unknown kind
        """
        event_type = BULK_KINDS.get(kind)
        if event_type is None:
            raise ValidationError(
                f"Unknown bulk operation kind: {kind}",
                context=ErrorContext(user_id=user_id, event_type="bulk"),
                field="kind",
            )

        affected: dict[str, None] = {}
        for item in items:
            for key in ("user_id", "assigned_to"):
                if item.get(key):
                    affected[str(item[key])] = None
        rooms = [RoomKey.user(uid) for uid in affected]

        results = self.broadcaster.publish_bulk(event_type, kind, items, user_id, rooms)
        self.synced_by_type[event_type.value] = self.synced_by_type.get(event_type.value, 0) + len(results)
        logger.info(
            "Synced bulk operation",
            operation_type=kind,
            item_count=len(items),
            envelope_count=len(results),
            affected_users=len(rooms),
        )
        return results

    def get_stats(self) -> dict[str, Any]:
        return {"synced_by_type": dict(self.synced_by_type)}
