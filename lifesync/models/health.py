"""
Health monitoring models for LifeSync.

Pydantic models for the realtime health endpoint response.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .presence import PresenceCounts


class HealthStatus(str, Enum):
    """Health status enumeration for system components."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ServerComponent(BaseModel):
    """Process health status and metrics."""

    status: HealthStatus = Field(..., description="Server health status")
    uptime_seconds: float = Field(..., description="Server uptime in seconds")
    memory_usage_mb: float = Field(..., description="Resident memory in MB")


class ConnectionsComponent(BaseModel):
    """Connection hub health status and metrics."""

    status: HealthStatus = Field(..., description="Connection hub health status")
    active_connections: int = Field(..., description="Current active connections")
    connected_users: int = Field(..., description="Distinct users with at least one connection")
    total_connections: int = Field(0, description="Connections accepted since start")
    total_reconnections: int = Field(0, description="Connections that resumed within the grace period")
    heartbeat_timeouts: int = Field(0, description="Connections closed by the heartbeat monitor")
    queued_messages: int = Field(0, description="Messages waiting in send queues")
    dropped_messages: int = Field(0, description="Messages dropped on full send queues")


class BroadcasterComponent(BaseModel):
    """Event broadcaster throughput."""

    status: HealthStatus = Field(..., description="Broadcaster health status")
    total_published: int = Field(..., description="Envelopes published since start")
    total_deliveries: int = Field(..., description="Envelopes queued onto connections")
    total_dropped: int = Field(..., description="Envelopes dropped on full queues")
    events_per_minute: float = Field(..., description="Publish rate over the last minute")


class HealthComponents(BaseModel):
    """Health status for all realtime components."""

    server: ServerComponent = Field(..., description="Process health")
    connections: ConnectionsComponent = Field(..., description="Connection hub health")
    broadcaster: BroadcasterComponent = Field(..., description="Broadcaster throughput")
    presence: PresenceCounts = Field(..., description="Presence counts by status")
    rate_limiter: dict[str, Any] = Field(default_factory=dict, description="Per traffic class statistics")


class HealthResponse(BaseModel):
    """Complete health response for the realtime layer."""

    status: HealthStatus = Field(..., description="Overall health status")
    timestamp: str = Field(..., description="ISO-8601 timestamp of health check")
    uptime_seconds: float = Field(..., description="Server uptime in seconds")
    version: str = Field(..., description="Server version")
    components: HealthComponents = Field(..., description="Individual component health status")
    alerts: list[str] = Field(default_factory=list, description="List of active alerts")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "timestamp": "2026-03-02T15:30:45.123456+00:00",
                "uptime_seconds": 3600.5,
                "version": "0.1.0",
                "components": {
                    "server": {"status": "healthy", "uptime_seconds": 3600.5, "memory_usage_mb": 96.2},
                    "connections": {"status": "healthy", "active_connections": 12, "connected_users": 9},
                    "broadcaster": {
                        "status": "healthy",
                        "total_published": 420,
                        "total_deliveries": 980,
                        "total_dropped": 0,
                        "events_per_minute": 14.0,
                    },
                    "presence": {"online": 7, "away": 2, "offline": 3, "total": 12},
                    "rate_limiter": {},
                },
                "alerts": [],
            }
        }
    )
