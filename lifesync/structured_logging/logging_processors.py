"""
Logging processors for structlog event processing.

This module provides processors for sanitizing sensitive data and adding
correlation IDs to every log entry.
"""

import re
import uuid
from typing import Any

# Whole words, or underscore-delimited parts of a field name (access_token, jwt_secret)
SENSITIVE_PATTERNS = [
    r"(^|_)password($|_)",
    r"(^|_)token($|_)",
    r"(^|_)secret($|_)",
    r"_key$",
    r"^key$",
    r"(^|_)credentials?($|_)",
    r"(^|_)jwt($|_)",
    r"(^|_)bearer($|_)",
    r"(^|_)authorization($|_)",
]

# Field names that match a pattern above but carry no secrets
SAFE_FIELDS = {
    "room_key",
    "subscription_key",
    "rate_limit_key",
}


def sanitize_sensitive_data(_logger: Any, _name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Remove sensitive data from log entries.

    Redacts passwords, tokens and credentials (recursively through nested
    dictionaries) so that handshake failures never leak a bearer token.

    Args:
        _logger: Logger instance (unused)
        _name: Logger name (unused)
        event_dict: Event dictionary to sanitize

    Returns:
        Sanitized event dictionary
    """

    def sanitize_dict(d: dict[str, Any]) -> dict[str, Any]:
        sanitized: dict[str, Any] = {}
        for key, value in d.items():
            key_lower = str(key).lower()
            if isinstance(value, dict):
                sanitized[key] = sanitize_dict(value)
            elif key_lower in SAFE_FIELDS:
                sanitized[key] = value
            elif any(re.search(pattern, key_lower) for pattern in SENSITIVE_PATTERNS):
                sanitized[key] = "[REDACTED]"
            else:
                sanitized[key] = value
        return sanitized

    return sanitize_dict(event_dict)


def add_correlation_id(_logger: Any, _name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Add correlation ID to log entries if not already present.

    Connection handlers bind their own correlation id through the context
    variables; this only fills the gap for background tasks.
    """
    if "correlation_id" not in event_dict:
        event_dict["correlation_id"] = str(uuid.uuid4())

    return event_dict
