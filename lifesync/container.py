"""
Dependency Injection Container for LifeSync.

Owns every realtime registry and service, builds them in dependency order
and tears them down in reverse.

USAGE:
    # In application startup (app/lifespan.py):
    container = ApplicationContainer(verify_token=verify_token)
    await container.initialize()
    app.state.container = container

    # In route handlers:
    def get_container(request: Request) -> ApplicationContainer:
        return request.app.state.container

    # In tests:
    container = ApplicationContainer(config=AppConfig(), verify_token=fake_verifier)
    await container.initialize()
"""

import asyncio
from typing import TYPE_CHECKING, Any

from .structured_logging.enhanced_logging_config import get_logger

if TYPE_CHECKING:
    from .app.task_registry import TaskRegistry
    from .config.models import AppConfig
    from .realtime.connection_manager import ConnectionManager, TokenVerifier
    from .realtime.data_sync_service import DataSyncService
    from .realtime.event_broadcaster import EventBroadcaster
    from .realtime.message_handlers import RealtimeMessageHandler, RoomDataProvider
    from .realtime.presence_service import PresenceService
    from .realtime.rate_limiter import RateLimiterSet
    from .realtime.room_subscription_manager import AccessPolicy, RoomSubscriptionManager
    from .services.health_service import HealthService

logger = get_logger(__name__)

RATE_LIMIT_CLEANUP_INTERVAL = 60.0


class ApplicationContainer:
    """
    Dependency Injection Container for the LifeSync realtime layer.

    One container per application; nothing here is a module-level global.
    Collaborators that live outside the realtime layer (token verification,
    room access policy, room snapshot provider) are injected at construction.
    """

    def __init__(
        self,
        config: "AppConfig | None" = None,
        verify_token: "TokenVerifier | None" = None,
        access_policy: "AccessPolicy | None" = None,
        room_data_provider: "RoomDataProvider | None" = None,
    ):
        """
        Initialize the container.

        Services are NOT built here; call initialize().

        Args:
            config: Configuration, loaded through get_config() when omitted
            verify_token: token -> {"user_id": ...} or None; a JWT verifier built
                from AuthConfig when omitted
            access_policy: (user_id, room) -> bool for subscribe requests
            room_data_provider: (user_id, room) -> snapshot sent as room:data
        """
        self.config = config
        self._verify_token = verify_token
        self._access_policy = access_policy
        self._room_data_provider = room_data_provider

        self.task_registry: TaskRegistry | None = None
        self.rate_limiters: RateLimiterSet | None = None
        self.subscriptions: RoomSubscriptionManager | None = None
        self.connection_manager: ConnectionManager | None = None
        self.broadcaster: EventBroadcaster | None = None
        self.presence_service: PresenceService | None = None
        self.data_sync_service: DataSyncService | None = None
        self.message_handler: RealtimeMessageHandler | None = None
        self.health_service: HealthService | None = None

        self._initialized: bool = False
        self._initialization_lock = asyncio.Lock()

        logger.info("ApplicationContainer created (not yet initialized)")

    async def initialize(self) -> None:
        """
        Initialize all services in dependency order.

        INITIALIZATION ORDER:
        1. Configuration
        2. Task registry
        3. Rate limiters (counter store)
        4. Subscription index, connection hub, broadcaster
        5. Presence and data sync
        6. Message handler and health service
        7. Listener wiring and periodic tasks
        """
        async with self._initialization_lock:
            if self._initialized:
                logger.warning("Container already initialized - skipping re-initialization")
                return

            logger.info("Initializing ApplicationContainer...")

            from .app.task_registry import TaskRegistry
            from .auth_utils import make_token_verifier
            from .config import get_config
            from .realtime.connection_manager import ConnectionManager
            from .realtime.data_sync_service import DataSyncService
            from .realtime.event_broadcaster import EventBroadcaster
            from .realtime.message_handlers import RealtimeMessageHandler
            from .realtime.presence_service import PresenceService
            from .realtime.rate_limiter import RateLimiterSet, RedisCounterStore
            from .realtime.room_subscription_manager import RoomSubscriptionManager, default_access_policy
            from .services.health_service import HealthService

            if self.config is None:
                self.config = get_config()
            config = self.config
            if self._verify_token is None:
                self._verify_token = make_token_verifier(config.auth)

            self.task_registry = TaskRegistry(owner="lifesync")

            store = None
            if config.redis.enabled:
                store = RedisCounterStore(url=config.redis.url, socket_timeout=config.redis.socket_timeout)
                logger.info("Rate limiter using Redis counter store", redis_url=config.redis.url)
            self.rate_limiters = RateLimiterSet.from_config(config.rate_limit, store=store)

            self.subscriptions = RoomSubscriptionManager(self._access_policy or default_access_policy)
            self.connection_manager = ConnectionManager(
                config.connection,
                self.subscriptions,
                self.task_registry,
                self._verify_token,
                rate_limiters=self.rate_limiters,
            )
            self.broadcaster = EventBroadcaster(self.connection_manager, self.subscriptions, config.broadcast)
            self.presence_service = PresenceService(
                config.presence,
                config.connection,
                self.connection_manager,
                self.subscriptions,
                self.broadcaster,
                self.task_registry,
            )
            self.data_sync_service = DataSyncService(self.broadcaster)
            self.message_handler = RealtimeMessageHandler(
                self.connection_manager,
                self.subscriptions,
                self.broadcaster,
                self.presence_service,
                rate_limiters=self.rate_limiters,
                room_data_provider=self._room_data_provider,
            )
            self.health_service = HealthService(
                self.connection_manager, self.broadcaster, self.presence_service, self.rate_limiters
            )

            # Member announcements go out before presence decides on user_left
            self.connection_manager.add_connect_listener(self.presence_service.on_connection_opened)
            self.connection_manager.add_disconnect_listener(self.broadcaster.on_connection_closed)
            self.connection_manager.add_disconnect_listener(self.presence_service.on_connection_closed)

            self.connection_manager.start_heartbeat_monitor()
            self.presence_service.start()
            self.task_registry.schedule_interval(
                "rate_limit:cleanup", RATE_LIMIT_CLEANUP_INTERVAL, self.rate_limiters.cleanup
            )

            self._initialized = True
            logger.info(
                "ApplicationContainer initialized",
                redis_enabled=config.redis.enabled,
                heartbeat_interval=config.connection.heartbeat_interval,
            )

    async def shutdown(self, timeout: float = 5.0) -> None:
        """
        Shutdown all services in reverse dependency order.

        Best effort: a failure in one step is logged and the next step still runs.
        """
        logger.info("Shutting down ApplicationContainer...")

        if self.connection_manager is not None:
            try:
                await self.connection_manager.close_all()
            except RuntimeError as e:
                logger.error("Error closing connections", error=str(e), exc_info=True)

        if self.task_registry is not None:
            clean = await self.task_registry.shutdown_all(timeout=timeout)
            if not clean:
                logger.warning("Some tasks did not finish before shutdown timeout", timeout=timeout)

        if self.rate_limiters is not None:
            try:
                await self.rate_limiters.close()
            except (OSError, RuntimeError) as e:
                logger.error("Error closing rate limiter store", error=str(e))

        self._initialized = False
        logger.info("ApplicationContainer shutdown complete")

    def get_service(self, service_name: str) -> Any:
        """
        Get a service by attribute name.

        Raises:
            RuntimeError: Container not initialized
            AttributeError: Unknown service
        """
        if not self._initialized:
            raise RuntimeError("ApplicationContainer not initialized - call initialize() first")
        if not hasattr(self, service_name):
            raise AttributeError(f"Service '{service_name}' not found in container")
        return getattr(self, service_name)

    @property
    def is_initialized(self) -> bool:
        return self._initialized
