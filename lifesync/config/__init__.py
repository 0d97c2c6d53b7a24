"""
Configuration module for LifeSync.

This module provides type-safe, validated configuration using Pydantic BaseSettings.

Usage:
    from lifesync.config import get_config

    config = get_config()
    logger.info("Presence configuration", activity_threshold=config.presence.activity_threshold)
"""

import sys
import threading
from os import getenv

from .models import (
    AppConfig,
    AuthConfig,
    BroadcastConfig,
    ConnectionConfig,
    LoggingConfig,
    PresenceConfig,
    RateLimitConfig,
    RedisConfig,
    ServerConfig,
    SubscriptionConfig,
)

__all__ = [
    "AppConfig",
    "AuthConfig",
    "BroadcastConfig",
    "ConnectionConfig",
    "LoggingConfig",
    "PresenceConfig",
    "RateLimitConfig",
    "RedisConfig",
    "ServerConfig",
    "SubscriptionConfig",
    "get_config",
    "reset_config",
]


class _ConfigState:
    """Holds the cached configuration instance."""

    instance: AppConfig | None = None


_config_state = _ConfigState()
_config_lock = threading.Lock()


def _is_test_mode() -> bool:
    """
    Detect if running in test environment.

    Returns:
        bool: True if pytest is loaded or pytest environment variables are set
    """
    if "pytest" in sys.modules:
        return True
    return bool(getenv("PYTEST_CURRENT_TEST"))


def get_config() -> AppConfig:
    """
    Get application configuration (singleton in production, fresh in tests).

    Configuration is loaded from environment variables and .env file.

    Returns:
        AppConfig: The application configuration

    Raises:
        pydantic.ValidationError: If configuration is invalid
    """
    if _is_test_mode():
        return AppConfig()

    with _config_lock:
        if _config_state.instance is None:
            _config_state.instance = AppConfig()
        return _config_state.instance


def reset_config() -> None:
    """
    Reset the configuration cache.

    Primarily used by tests to force configuration reload.
    """
    with _config_lock:
        _config_state.instance = None
