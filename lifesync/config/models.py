"""
Pydantic configuration models for LifeSync.

Each group reads its own environment prefix; AppConfig aggregates them.
Intervals are expressed in seconds, rate-limit windows in milliseconds.
"""

from typing import Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from ..structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)

KEY_GENERATORS = ("ip", "user", "user_or_ip")


def _require_positive(name: str, value: float) -> float:
    if value <= 0:
        logger.error("Invalid non-positive configuration value", field=name, value=value)
        raise ValueError(f"{name} must be positive, got {value}")
    return value


class ServerConfig(BaseSettings):
    """Server network configuration."""

    host: str = Field(default="127.0.0.1", description="Server bind address")
    port: int = Field(default=8000, description="Server port")

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port is in valid range."""
        if not 1 <= v <= 65535:
            logger.error("Invalid server port", port=v, valid_range="1-65535")
            raise ValueError("Port must be between 1 and 65535")
        return v

    model_config = {"env_prefix": "SERVER_", "case_sensitive": False, "extra": "ignore"}


class RedisConfig(BaseSettings):
    """Shared counter store configuration for rate limiting."""

    enabled: bool = Field(default=False, description="Use Redis for rate-limit counters")
    url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    socket_timeout: float = Field(default=2.0, description="Socket timeout in seconds")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL scheme."""
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("Redis URL must start with redis://, rediss:// or unix://")
        return v

    model_config = {"env_prefix": "REDIS_", "case_sensitive": False, "extra": "ignore"}


class AuthConfig(BaseSettings):
    """Access token verification for the WebSocket handshake."""

    jwt_secret: str | None = Field(default=None, description="HMAC secret used to verify access tokens")
    algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    audience: str | None = Field(default=None, description="Expected aud claim, unchecked when unset")
    user_id_claim: str = Field(default="sub", description="Claim holding the user id")

    model_config = {"env_prefix": "AUTH_", "case_sensitive": False, "extra": "ignore"}


class ConnectionConfig(BaseSettings):
    """Connection lifecycle, heartbeat and reconnect configuration."""

    heartbeat_interval: float = Field(default=30.0, description="Seconds between heartbeats")
    missed_heartbeats_allowed: int = Field(default=2, description="Missed heartbeats before a drop")
    reconnect_base_delay: float = Field(default=1.0, description="Base reconnect backoff in seconds")
    reconnect_max_delay: float = Field(default=30.0, description="Reconnect backoff cap in seconds")
    max_reconnect_attempts: int = Field(default=5, description="Reconnect attempts before giving up")
    send_queue_size: int = Field(default=256, description="Per-connection outbound queue bound")
    offline_grace_period: float = Field(default=30.0, description="Seconds before broadcasting offline")
    handshake_timeout: float = Field(default=10.0, description="Seconds allowed for the handshake")

    @field_validator(
        "heartbeat_interval",
        "missed_heartbeats_allowed",
        "reconnect_base_delay",
        "reconnect_max_delay",
        "max_reconnect_attempts",
        "send_queue_size",
        "handshake_timeout",
    )
    @classmethod
    def validate_positive(cls, v: float, info) -> float:
        """Validate intervals and counts are positive."""
        return _require_positive(info.field_name, v)

    @field_validator("offline_grace_period")
    @classmethod
    def validate_grace_period(cls, v: float) -> float:
        """Grace period may be zero (broadcast immediately) but never negative."""
        if v < 0:
            raise ValueError("offline_grace_period cannot be negative")
        return v

    @model_validator(mode="after")
    def validate_backoff_bounds(self) -> "ConnectionConfig":
        """Backoff cap must not be below the base delay."""
        if self.reconnect_max_delay < self.reconnect_base_delay:
            raise ValueError("reconnect_max_delay must be >= reconnect_base_delay")
        return self

    model_config = {"env_prefix": "CONNECTION_", "case_sensitive": False, "extra": "ignore"}


class SubscriptionConfig(BaseSettings):
    """Client subscription retry configuration."""

    max_retries: int = Field(default=3, description="Retries after a subscription error")
    retry_delay: float = Field(default=1.0, description="Base retry delay in seconds")
    auto_subscribe: bool = Field(default=True, description="Queue subscriptions while disconnected")
    reconnect_on_error: bool = Field(default=True, description="Retry rejected subscriptions")

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        """Validate retry budget."""
        if v < 0:
            raise ValueError("max_retries cannot be negative")
        return v

    @field_validator("retry_delay")
    @classmethod
    def validate_retry_delay(cls, v: float) -> float:
        """Validate retry delay."""
        return _require_positive("retry_delay", v)

    model_config = {"env_prefix": "SUBSCRIPTION_", "case_sensitive": False, "extra": "ignore"}


class PresenceConfig(BaseSettings):
    """Presence tracking configuration."""

    activity_threshold: float = Field(default=30.0, description="Idle seconds before online becomes away")
    presence_update_interval: float = Field(default=60.0, description="Seconds between presence heartbeats")
    check_interval: float = Field(default=10.0, description="Seconds between activity checks")
    stale_threshold: float = Field(default=180.0, description="Seconds before a remote record is stale")
    sync_interval: float = Field(default=30.0, description="Seconds between presence:sync broadcasts")

    @field_validator(
        "activity_threshold", "presence_update_interval", "check_interval", "stale_threshold", "sync_interval"
    )
    @classmethod
    def validate_positive(cls, v: float, info) -> float:
        """Validate intervals are positive."""
        return _require_positive(info.field_name, v)

    @model_validator(mode="after")
    def validate_stale_threshold(self) -> "PresenceConfig":
        """A record must survive at least one heartbeat interval."""
        if self.stale_threshold <= self.presence_update_interval:
            logger.error(
                "Presence stale threshold too short",
                stale_threshold=self.stale_threshold,
                presence_update_interval=self.presence_update_interval,
            )
            raise ValueError("stale_threshold must be greater than presence_update_interval")
        return self

    model_config = {"env_prefix": "PRESENCE_", "case_sensitive": False, "extra": "ignore"}


class BroadcastConfig(BaseSettings):
    """Event broadcaster configuration."""

    max_bulk_items: int = Field(default=100, description="Maximum items in one bulk envelope")

    @field_validator("max_bulk_items")
    @classmethod
    def validate_max_bulk_items(cls, v: int) -> int:
        """Validate bulk cap."""
        if not 1 <= v <= 10000:
            raise ValueError("max_bulk_items must be between 1 and 10000")
        return v

    model_config = {"env_prefix": "BROADCAST_", "case_sensitive": False, "extra": "ignore"}


class RateLimitConfig(BaseSettings):
    """Per traffic class admission control configuration."""

    general_window_ms: int = Field(default=15 * 60 * 1000, description="General class window")
    general_max_requests: int = Field(default=1000, description="General class budget")
    general_key_generator: str = Field(default="ip", description="General class key")

    auth_window_ms: int = Field(default=15 * 60 * 1000, description="Handshake class window")
    auth_max_requests: int = Field(default=10, description="Handshake class budget")
    auth_key_generator: str = Field(default="ip", description="Handshake class key")
    auth_fail_closed: bool = Field(default=True, description="Deny handshakes when the store is down")

    expensive_window_ms: int = Field(default=60 * 1000, description="Expensive class window")
    expensive_max_requests: int = Field(default=10, description="Expensive class budget")
    expensive_key_generator: str = Field(default="user_or_ip", description="Expensive class key")

    events_window_ms: int = Field(default=60 * 1000, description="Inbound event class window")
    events_max_requests: int = Field(default=100, description="Inbound event class budget")
    events_key_generator: str = Field(default="user_or_ip", description="Inbound event class key")

    violation_threshold: int = Field(default=5, description="Violations before a temporary block")
    block_durations: list[float] = Field(
        default_factory=lambda: [60.0, 300.0, 900.0, 3600.0, 86400.0],
        description="Escalating block durations in seconds",
    )
    whitelist: list[str] = Field(default_factory=list, description="Keys never rate limited")

    @field_validator(
        "general_window_ms",
        "general_max_requests",
        "auth_window_ms",
        "auth_max_requests",
        "expensive_window_ms",
        "expensive_max_requests",
        "events_window_ms",
        "events_max_requests",
        "violation_threshold",
    )
    @classmethod
    def validate_positive(cls, v: int, info) -> int:
        """Validate windows and budgets are positive."""
        return int(_require_positive(info.field_name, v))

    @field_validator(
        "general_key_generator", "auth_key_generator", "expensive_key_generator", "events_key_generator"
    )
    @classmethod
    def validate_key_generator(cls, v: str) -> str:
        """Validate key generator name."""
        if v not in KEY_GENERATORS:
            raise ValueError(f"key_generator must be one of {list(KEY_GENERATORS)}, got '{v}'")
        return v

    @field_validator("block_durations")
    @classmethod
    def validate_block_durations(cls, v: list[float]) -> list[float]:
        """Validate escalation ladder."""
        if not v:
            raise ValueError("block_durations cannot be empty")
        if any(d <= 0 for d in v):
            raise ValueError("block_durations must all be positive")
        return v

    def class_settings(self, name: str) -> dict[str, Any]:
        """Return (window_ms, max_requests, key_generator, fail_closed) for a traffic class."""
        return {
            "window_ms": getattr(self, f"{name}_window_ms"),
            "max_requests": getattr(self, f"{name}_max_requests"),
            "key_generator": getattr(self, f"{name}_key_generator"),
            "fail_closed": getattr(self, f"{name}_fail_closed", False),
        }

    model_config = {"env_prefix": "RATE_LIMIT_", "case_sensitive": False, "extra": "ignore"}


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="keyvalue", description="Log format")
    disable_logging: bool = Field(default=False, description="Disable all logging")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}, got '{v}'")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = ["json", "keyvalue", "console"]
        if v not in valid_formats:
            raise ValueError(f"Log format must be one of {valid_formats}, got '{v}'")
        return v

    model_config = {"env_prefix": "LOGGING_", "case_sensitive": False, "extra": "ignore"}

    def to_dict(self) -> dict[str, Any]:
        """Convert to the dict shape accepted by setup_enhanced_logging."""
        return {"level": self.level, "format": self.format, "disable_logging": self.disable_logging}


class AppConfig(BaseSettings):
    """
    Composite application configuration.

    This is the main configuration class that aggregates all other configs.
    Access via get_config() singleton function.
    """

    server: ServerConfig = Field(default_factory=ServerConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    subscription: SubscriptionConfig = Field(default_factory=SubscriptionConfig)
    presence: PresenceConfig = Field(default_factory=PresenceConfig)
    broadcast: BroadcastConfig = Field(default_factory=BroadcastConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "case_sensitive": False, "extra": "ignore"}
