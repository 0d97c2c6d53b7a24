"""
Event envelope for LifeSync realtime messages.

Every outbound event is wrapped in one immutable schema:
- type: EventType wire tag
- payload: dict
- user_id: origin user or None for system events
- timestamp: ISO 8601 UTC with 'Z'
- event_id: unique id
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from types import MappingProxyType
from typing import Any

from .event_types import EventType


class EnvelopeEncoder(json.JSONEncoder):
    """JSON encoder for the value types that show up in domain payloads."""

    def default(self, o: Any) -> Any:
        if isinstance(o, uuid.UUID):
            return str(o)
        if isinstance(o, datetime | date):
            return o.isoformat()
        if isinstance(o, MappingProxyType):
            return dict(o)
        if isinstance(o, set | frozenset | tuple):
            return list(o)
        return super().default(o)


def utc_now_z() -> str:
    """Return current UTC time in ISO 8601 format with 'Z' suffix."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class EventEnvelope:
    """Immutable wrapper around a single broadcast event."""

    type: EventType
    payload: Mapping[str, Any]
    user_id: str | None = None
    timestamp: str = field(default_factory=utc_now_z)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    room: str | None = None

    def to_dict(self) -> dict[str, Any]:
        message: dict[str, Any] = {
            "type": self.type.value,
            "data": dict(self.payload),
            "user_id": self.user_id,
            "timestamp": self.timestamp,
            "event_id": self.event_id,
        }
        if self.room is not None:
            message["room"] = self.room
        return message

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), cls=EnvelopeEncoder)

    @classmethod
    def from_dict(cls, message: Mapping[str, Any]) -> EventEnvelope:
        """
        Rebuild an envelope from its wire form.

        Raises:
            ValueError: If the type is unknown
            KeyError: If the type is missing
        """
        data = message.get("data")
        return cls(
            type=EventType(message["type"]),
            payload=MappingProxyType(dict(data) if isinstance(data, Mapping) else {}),
            user_id=message.get("user_id"),
            timestamp=message.get("timestamp") or utc_now_z(),
            event_id=message.get("event_id") or str(uuid.uuid4()),
            room=message.get("room"),
        )


def build_envelope(
    event_type: EventType,
    payload: Mapping[str, Any] | None = None,
    *,
    user_id: object | None = None,
    room: str | None = None,
) -> EventEnvelope:
    """
    Create a normalized event envelope.

    The payload is copied and frozen so later mutation by the caller cannot
    leak into queued deliveries.

    Args:
        event_type: Kind of event
        payload: Event data
        user_id: Origin user id (None for system events)
        room: Optional room the event is scoped to

    Returns:
        EventEnvelope
    """
    return EventEnvelope(
        type=event_type,
        payload=MappingProxyType(dict(payload or {})),
        user_id=str(user_id) if user_id is not None else None,
        room=room,
    )
