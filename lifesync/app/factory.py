"""
FastAPI application factory for the LifeSync realtime server.

Handles app creation and router registration.
"""

from collections.abc import Callable

from fastapi import FastAPI

from .. import __version__
from ..api.real_time import realtime_router
from ..container import ApplicationContainer
from ..structured_logging.enhanced_logging_config import get_logger
from .lifespan import lifespan

logger = get_logger(__name__)


def create_app(container_factory: Callable[[], ApplicationContainer] | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        container_factory: Builds the ApplicationContainer at startup; lets
            callers inject collaborators such as verify_token or an access policy

    Returns:
        FastAPI: The configured application
    """
    app = FastAPI(
        title="LifeSync Realtime API",
        description="Real-time synchronization and presence for LifeSync clients",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.container_factory = container_factory
    app.include_router(realtime_router)

    logger.info("FastAPI application created", routes=len(app.routes))
    return app
