"""
Pydantic models for LifeSync.

Presence records and the health endpoint response.
"""

from .health import HealthResponse, HealthStatus
from .presence import PresenceCounts, PresenceRecord, PresenceStatus

__all__ = ["HealthResponse", "HealthStatus", "PresenceCounts", "PresenceRecord", "PresenceStatus"]
