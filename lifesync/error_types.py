"""
Centralized error types and wire error payloads for LifeSync.

Keeps the "type": "error" messages sent over the realtime channel in one
shape regardless of which layer produced them.
"""

from enum import Enum
from typing import Any


class ErrorType(Enum):
    """Standardized error types for consistent categorization."""

    # Authentication
    AUTHENTICATION_FAILED = "authentication_failed"
    INVALID_TOKEN = "invalid_token"
    AUTHORIZATION_DENIED = "authorization_denied"

    # Validation
    VALIDATION_ERROR = "validation_error"
    INVALID_FORMAT = "invalid_format"
    UNKNOWN_MESSAGE_TYPE = "unknown_message_type"

    # Subscriptions
    SUBSCRIPTION_DENIED = "subscription_denied"
    SUBSCRIPTION_FAILED = "subscription_failed"

    # Network and communication
    CONNECTION_ERROR = "connection_error"
    TIMEOUT_ERROR = "timeout_error"
    MESSAGE_PROCESSING_ERROR = "message_processing_error"

    # Rate limiting
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"

    # System
    INTERNAL_ERROR = "internal_error"
    SERVICE_UNAVAILABLE = "service_unavailable"


def create_websocket_error_response(
    error_type: ErrorType,
    message: str,
    user_friendly: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Create a standardized WebSocket error response.

    Args:
        error_type: The type of error
        message: Technical error message
        user_friendly: User-friendly error message (optional)
        details: Additional error details (optional)

    Returns:
        WebSocket error response dictionary
    """
    return {
        "type": "error",
        "error_type": error_type.value,
        "message": message,
        "user_friendly": user_friendly or message,
        "details": details or {},
    }


class ErrorMessages:
    """Common error messages for consistency."""

    AUTHENTICATION_REQUIRED = "Authentication token is required"
    INVALID_TOKEN = "Invalid or expired authentication token"
    ROOM_ACCESS_DENIED = "Access denied"
    INVALID_MESSAGE = "Message could not be parsed"
    RATE_LIMIT_EXCEEDED = "Rate limit exceeded. Please try again later."
    SERVICE_UNAVAILABLE = "Service temporarily unavailable"
