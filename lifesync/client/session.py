"""
RealtimeClient: one object bundling the client-side realtime components.

Usage:
    async with RealtimeClient("ws://localhost:8000/api/ws", token) as client:
        await client.subscriptions.subscribe("project", project_id)
        client.store.on("changed", render)
"""

import time
from collections.abc import Callable
from typing import Any

from ..app.task_registry import TaskRegistry
from ..config import get_config
from ..config.models import AppConfig
from ..exceptions import SubscriptionError
from ..structured_logging.enhanced_logging_config import get_logger
from .connection import ClientConnection, ClientConnectionManager
from .presence import PresenceTracker
from .subscriptions import SubscriptionRegistry
from .synchronizer import ErrorChannel, RealtimeDataStore
from .transport import Transport, WebSocketTransport

logger = get_logger(__name__)


class RealtimeClient:
    """Connection, subscriptions, presence and local data for one signed-in user."""

    def __init__(
        self,
        url: str,
        auth_token: str,
        config: AppConfig | None = None,
        transport_factory: Callable[[], Transport] = WebSocketTransport,
        on_subscription_error: Callable[[SubscriptionError], Any] | None = None,
        on_reconciliation_error: ErrorChannel | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        config = config or get_config()
        self.auth_token = auth_token
        self.tasks = TaskRegistry(owner="lifesync-client")
        self.connection = ClientConnectionManager(
            url, config.connection, transport_factory=transport_factory, task_registry=self.tasks, clock=clock
        )
        self.subscriptions = SubscriptionRegistry(self.connection, config.subscription, on_error=on_subscription_error)
        self.presence = PresenceTracker(self.connection, config.presence, clock=clock)
        self.store = RealtimeDataStore(on_error=on_reconciliation_error)
        self.connection.on("message", self.store.handle_message)

    async def connect(self) -> ClientConnection:
        return await self.connection.connect(self.auth_token)

    async def close(self) -> None:
        """Announce offline, drop every subscription and cancel every timer."""
        if self.connection.is_connected:
            await self.presence.logout()
        self.presence.stop()
        self.subscriptions.close()
        await self.connection.close()
        logger.info("Realtime client closed")

    async def __aenter__(self) -> "RealtimeClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def get_stats(self) -> dict[str, Any]:
        return {
            "connection": self.connection.get_stats(),
            "subscriptions": self.subscriptions.get_stats(),
            "presence": {"status": self.presence.status.value, **self.presence.counts.model_dump()},
            "applied_events": self.store.applied_events,
            "tasks": self.tasks.get_registry_info(),
        }
