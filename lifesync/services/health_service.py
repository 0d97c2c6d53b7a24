"""
Health monitoring service for LifeSync.

Collects process metrics and the statistics of every realtime registry
into one HealthResponse.
"""

import importlib.metadata
import time
from datetime import UTC, datetime

import psutil

from ..models.health import (
    BroadcasterComponent,
    ConnectionsComponent,
    HealthComponents,
    HealthResponse,
    HealthStatus,
    ServerComponent,
)
from ..realtime.connection_manager import ConnectionManager
from ..realtime.event_broadcaster import EventBroadcaster
from ..realtime.presence_service import PresenceService
from ..realtime.rate_limiter import RateLimiterSet
from ..structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)


class HealthService:
    """
    Health monitoring service for the realtime layer.

    All collaborators are injected by the application container.
    """

    def __init__(
        self,
        connections: ConnectionManager,
        broadcaster: EventBroadcaster,
        presence: PresenceService,
        rate_limiters: RateLimiterSet | None = None,
    ):
        self.start_time = time.time()
        self.last_health_check: datetime | None = None
        self.health_check_count = 0
        self.connections = connections
        self.broadcaster = broadcaster
        self.presence = presence
        self.rate_limiters = rate_limiters

        # Performance thresholds
        self.memory_threshold_mb = 1024
        self.drop_ratio_threshold = 0.05

        logger.info("HealthService initialized")

    def get_server_uptime(self) -> float:
        """Get server uptime in seconds."""
        return time.time() - self.start_time

    def get_memory_usage(self) -> float:
        """Get current resident memory in MB."""
        try:
            return psutil.Process().memory_info().rss / 1024 / 1024
        except psutil.Error as e:
            logger.warning("Failed to get memory usage", error=str(e))
            return 0.0

    def get_server_component_health(self) -> ServerComponent:
        memory_usage_mb = self.get_memory_usage()
        if memory_usage_mb < self.memory_threshold_mb:
            status = HealthStatus.HEALTHY
        elif memory_usage_mb < self.memory_threshold_mb * 1.5:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.UNHEALTHY
        return ServerComponent(
            status=status, uptime_seconds=self.get_server_uptime(), memory_usage_mb=memory_usage_mb
        )

    def get_connections_component_health(self) -> ConnectionsComponent:
        stats = self.connections.get_stats()
        status = HealthStatus.DEGRADED if stats["dropped_messages"] else HealthStatus.HEALTHY
        return ConnectionsComponent(
            status=status,
            active_connections=stats["active_connections"],
            connected_users=stats["connected_users"],
            total_connections=stats["total_connections"],
            total_reconnections=stats["total_reconnections"],
            heartbeat_timeouts=stats["heartbeat_timeouts"],
            queued_messages=stats["queued_messages"],
            dropped_messages=stats["dropped_messages"],
        )

    def get_broadcaster_component_health(self) -> BroadcasterComponent:
        stats = self.broadcaster.get_stats()
        attempted = stats["total_deliveries"] + stats["total_dropped"]
        drop_ratio = stats["total_dropped"] / attempted if attempted else 0.0
        status = HealthStatus.DEGRADED if drop_ratio > self.drop_ratio_threshold else HealthStatus.HEALTHY
        return BroadcasterComponent(
            status=status,
            total_published=stats["total_published"],
            total_deliveries=stats["total_deliveries"],
            total_dropped=stats["total_dropped"],
            events_per_minute=stats["events_per_minute"],
        )

    def generate_alerts(self, components: HealthComponents) -> list[str]:
        """Generate alerts based on component health."""
        alerts = []
        if components.server.memory_usage_mb > self.memory_threshold_mb:
            alerts.append(f"High memory usage: {components.server.memory_usage_mb:.1f}MB")
        if components.connections.dropped_messages:
            alerts.append(f"Send queues dropped {components.connections.dropped_messages} messages")
        if components.broadcaster.status != HealthStatus.HEALTHY:
            alerts.append("Broadcast drop ratio elevated")

        for name, limiter in components.rate_limiter.get("classes", {}).items():
            if limiter.get("store_failures"):
                alerts.append(f"Rate limiter '{name}' counter store failures: {limiter['store_failures']}")
        return alerts

    def determine_overall_status(self, components: HealthComponents) -> HealthStatus:
        statuses = {components.server.status, components.connections.status, components.broadcaster.status}
        if HealthStatus.UNHEALTHY in statuses:
            return HealthStatus.UNHEALTHY
        if HealthStatus.DEGRADED in statuses:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    def get_health_status(self) -> HealthResponse:
        """Get comprehensive health status for the realtime layer."""
        components = HealthComponents(
            server=self.get_server_component_health(),
            connections=self.get_connections_component_health(),
            broadcaster=self.get_broadcaster_component_health(),
            presence=self.presence.counts(),
            rate_limiter=self.rate_limiters.get_stats() if self.rate_limiters is not None else {},
        )

        self.health_check_count += 1
        self.last_health_check = datetime.now(UTC)

        try:
            version = importlib.metadata.version("lifesync")
        except importlib.metadata.PackageNotFoundError:
            version = "0.1.0"

        return HealthResponse(
            status=self.determine_overall_status(components),
            timestamp=self.last_health_check.isoformat(),
            uptime_seconds=self.get_server_uptime(),
            version=version,
            components=components,
            alerts=self.generate_alerts(components),
        )
