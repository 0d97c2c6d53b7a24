"""
Exception hierarchy for the LifeSync realtime layer.

Transient failures (transport, subscription rejection, counter store outage)
are recovered locally by retry, backoff or fail-open; structural failures
(bad token, malformed event payload) are surfaced to the calling layer.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class ErrorContext:
    """
    Contextual information for error handling.

    Provides structured context for error reporting and debugging.
    """

    user_id: str | None = None
    connection_id: str | None = None
    room: str | None = None
    event_type: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert context to dictionary for logging."""
        return {
            "user_id": self.user_id,
            "connection_id": self.connection_id,
            "room": self.room,
            "event_type": self.event_type,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


class LifeSyncError(Exception):
    """
    Base exception for all LifeSync errors.

    Provides structured error handling with context and metadata
    for proper error categorization and debugging.
    """

    log_level = "error"

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
        details: dict[str, Any] | None = None,
        user_friendly: str | None = None,
    ):
        """
        Initialize LifeSync error.

        Args:
            message: Technical error message
            context: Error context information
            details: Additional error details
            user_friendly: User-friendly error message
        """
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext()
        self.details = details or {}
        self.user_friendly = user_friendly or message
        self.timestamp = datetime.now(UTC)

        self._log_error()

    def _log_error(self) -> None:
        """Log the error with structured context."""
        log_method = getattr(logger, self.log_level)
        log_method(
            "LifeSync error occurred",
            error_type=self.__class__.__name__,
            message=self.message,
            context=self.context.to_dict(),
            details=self.details,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for wire responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "user_friendly": self.user_friendly,
            "context": self.context.to_dict(),
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class AuthenticationError(LifeSyncError):
    """Missing or invalid token at handshake. Never retried automatically."""

    def __init__(self, message: str, context: ErrorContext | None = None, auth_type: str = "token", **kwargs):
        super().__init__(message, context, **kwargs)
        self.auth_type = auth_type
        self.details["auth_type"] = auth_type


class TransportError(LifeSyncError):
    """Network-level failure; triggers the reconnect policy."""

    log_level = "warning"


class NotConnectedError(LifeSyncError):
    """A request was attempted while no live connection exists."""

    log_level = "info"


class SubscriptionError(LifeSyncError):
    """The server rejected a room subscription, or the retry budget ran out."""

    log_level = "warning"

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
        room: str | None = None,
        attempts: int = 0,
        terminal: bool = False,
        **kwargs,
    ):
        super().__init__(message, context, **kwargs)
        self.room = room
        self.attempts = attempts
        self.terminal = terminal
        self.details.update({"room": room, "attempts": attempts, "terminal": terminal})


class RateLimitExceeded(LifeSyncError):
    """Inbound traffic was throttled; carries the window reset time."""

    log_level = "warning"

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
        limit_type: str = "unknown",
        reset_time: float | None = None,
        retry_after: float | None = None,
        **kwargs,
    ):
        super().__init__(message, context, **kwargs)
        self.limit_type = limit_type
        self.reset_time = reset_time
        self.retry_after = retry_after
        self.details["limit_type"] = limit_type
        if reset_time is not None:
            self.details["reset_time"] = reset_time
        if retry_after is not None:
            self.details["retry_after"] = retry_after


class ReconciliationError(LifeSyncError):
    """An incoming event payload could not be applied to local state."""

    log_level = "warning"


class ValidationError(LifeSyncError):
    """A wire message or configuration value failed validation."""

    def __init__(self, message: str, context: ErrorContext | None = None, field: str | None = None, **kwargs):
        super().__init__(message, context, **kwargs)
        self.field = field
        if field:
            self.details["field"] = field


class ConfigurationError(LifeSyncError):
    """Configuration-related errors."""


def create_error_context(**kwargs) -> ErrorContext:
    """
    Create an error context with the given parameters.

    Args:
        **kwargs: Context parameters

    Returns:
        ErrorContext object
    """
    return ErrorContext(**kwargs)
