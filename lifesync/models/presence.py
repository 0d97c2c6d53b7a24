"""
Presence models shared by the server presence table and the client view.

Timestamps are epoch seconds.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class PresenceStatus(StrEnum):
    """Presence status of a user."""

    ONLINE = "online"
    AWAY = "away"
    OFFLINE = "offline"


class PresenceContext(BaseModel):
    """Where the user currently is in the application."""

    current_page: str | None = Field(None, description="Current page or route")
    active_task: str | None = Field(None, description="Task the user is working on")
    active_project: str | None = Field(None, description="Project the user is working on")
    custom_data: dict[str, Any] = Field(default_factory=dict, description="Application-defined data")


class PresenceRecord(BaseModel):
    """Presence of a single user."""

    user_id: str = Field(..., description="User the record belongs to")
    status: PresenceStatus = Field(PresenceStatus.ONLINE, description="Presence status")
    last_activity: float = Field(default_factory=time.time, description="Last user activity")
    last_seen: float = Field(default_factory=time.time, description="Last time any signal arrived")
    is_visible: bool = Field(True, description="Whether the client window is visible")
    is_active: bool = Field(True, description="Whether the user was recently active")
    context: PresenceContext = Field(default_factory=PresenceContext, description="Application context")
    updated_at: float = Field(default_factory=time.time, description="Timestamp of the last applied update")

    model_config = ConfigDict(use_enum_values=False)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class PresenceHeartbeat(BaseModel):
    """Inbound presence:heartbeat payload."""

    status: PresenceStatus = Field(..., description="Client-computed status")
    last_activity: float | None = Field(None, description="Last local activity")
    is_visible: bool = Field(True, description="Client window visibility")
    is_active: bool = Field(True, description="Recent activity flag")
    timestamp: float | None = Field(None, description="Client send time, used for last-write-wins")


class PresenceUpdate(BaseModel):
    """Inbound presence:update payload; only the fields that are set are applied."""

    status: PresenceStatus | None = Field(None, description="Optional explicit status")
    current_page: str | None = None
    active_task: str | None = None
    active_project: str | None = None
    custom_data: dict[str, Any] | None = None
    timestamp: float | None = Field(None, description="Client send time, used for last-write-wins")


class PresenceCounts(BaseModel):
    """Aggregate counts by status."""

    online: int = 0
    away: int = 0
    offline: int = 0
    total: int = 0
