"""Application lifecycle management for the LifeSync server.

Builds the ApplicationContainer on startup, publishes it on app.state and
shuts it down on exit.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from ..config import get_config
from ..container import ApplicationContainer
from ..structured_logging.enhanced_logging_config import get_logger, setup_enhanced_logging

logger = get_logger("lifesync.lifespan")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    A container factory stored on app.state.container_factory (set by
    create_app) takes precedence over the default container.
    """
    container_factory = getattr(app.state, "container_factory", None)
    container: ApplicationContainer = container_factory() if container_factory else ApplicationContainer()
    if container.config is None:
        container.config = get_config()
    setup_enhanced_logging(container.config.logging.to_dict())

    logger.info("Starting LifeSync realtime server")
    await container.initialize()
    app.state.container = container

    try:
        yield
    finally:
        logger.info("Stopping LifeSync realtime server")
        await container.shutdown()
