"""
Closed vocabularies for the realtime channel: event kinds, inbound message
kinds, room types and room keys.
"""

from dataclasses import dataclass
from enum import StrEnum


class EventType(StrEnum):
    """Every outbound event kind that can appear in an envelope."""

    # Connection
    CONNECTION_ESTABLISHED = "connection:established"
    PONG = "pong"
    ERROR = "error"
    RATE_LIMIT_EXCEEDED = "rate_limit:exceeded"

    # Subscriptions and rooms
    SUBSCRIPTION_CONFIRMED = "subscription:confirmed"
    SUBSCRIPTION_ERROR = "subscription:error"
    ROOM_DATA = "room:data"
    ROOM_MEMBER_JOINED = "room:member_joined"
    ROOM_MEMBER_LEFT = "room:member_left"

    # Presence
    PRESENCE_USER_JOINED = "presence:user_joined"
    PRESENCE_USER_LEFT = "presence:user_left"
    PRESENCE_USER_UPDATED = "presence:user_updated"
    PRESENCE_INITIAL_STATE = "presence:initial_state"
    PRESENCE_SYNC = "presence:sync"
    PRESENCE_HEARTBEAT = "presence:heartbeat"

    # Domain
    TASK_CREATED = "task:created"
    TASK_UPDATED = "task:updated"
    TASK_DELETED = "task:deleted"
    TASK_ASSIGNED = "task:assigned"
    TAG_CREATED = "tag:created"
    TAG_UPDATED = "tag:updated"
    TAG_DELETED = "tag:deleted"
    PROJECT_CREATED = "project:created"
    PROJECT_UPDATED = "project:updated"
    BULK_UPDATE = "bulk:update"
    BULK_DELETE = "bulk:delete"


class ClientMessageType(StrEnum):
    """Inbound message kinds sent by clients."""

    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    PRESENCE_HEARTBEAT = "presence:heartbeat"
    PRESENCE_UPDATE = "presence:update"
    PING = "ping"


class RoomType(StrEnum):
    """Scopes a room can belong to."""

    USER = "user"
    PROJECT = "project"
    TASK = "task"
    TEAM = "team"
    GLOBAL = "global"


# Rooms whose members see each other's presence
PRESENCE_ROOM_TYPES = frozenset({RoomType.PROJECT, RoomType.TEAM, RoomType.GLOBAL})


@dataclass(frozen=True, slots=True)
class RoomKey:
    """Identity of a room; rendered on the wire as "<type>:<id>"."""

    room_type: RoomType
    room_id: str

    @property
    def name(self) -> str:
        return f"{self.room_type.value}:{self.room_id}"

    def __str__(self) -> str:
        return self.name

    @classmethod
    def parse(cls, name: str) -> "RoomKey":
        """
        Parse a wire room name.

        Raises:
            ValueError: If the name is not "<type>:<id>" with a known type and non-empty id
        """
        room_type, sep, room_id = name.partition(":")
        if not sep or not room_id:
            raise ValueError(f"Invalid room name: {name!r}")
        return cls(RoomType(room_type), room_id)

    @classmethod
    def of(cls, room_type: RoomType | str, room_id: object) -> "RoomKey":
        return cls(RoomType(room_type), str(room_id))

    @classmethod
    def user(cls, user_id: object) -> "RoomKey":
        return cls(RoomType.USER, str(user_id))
