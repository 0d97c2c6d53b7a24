"""
Enhanced structlog-based logging configuration for LifeSync.

This module is the single entry point for logging: it configures structlog
with context variables, correlation IDs and security sanitization, and hands
out loggers through get_logger().
"""

import logging
import re
import sys
from typing import Any

import structlog
from structlog.contextvars import merge_contextvars
from structlog.stdlib import BoundLogger, LoggerFactory

from lifesync.structured_logging.logging_context import (
    bind_request_context,
    clear_request_context,
    get_current_context,
)
from lifesync.structured_logging.logging_processors import add_correlation_id, sanitize_sensitive_data

__all__ = [
    "bind_request_context",
    "clear_request_context",
    "configure_enhanced_structlog",
    "get_current_context",
    "get_logger",
    "setup_enhanced_logging",
]

# NOTE: Infrastructure code in this module uses structlog.get_logger() directly.
# All other modules must use get_logger() from this module.
logger = structlog.get_logger(__name__)

_ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")


class _LoggingState:
    """State container for logging initialization to avoid global statements."""

    initialized: bool = False
    signature: str | None = None


_logging_state = _LoggingState()


def _strip_ansi_renderer(bound_logger: Any, name: str, event_dict: dict[str, Any]) -> str:
    """Key-value renderer that strips ANSI escape sequences."""
    formatted = structlog.processors.KeyValueRenderer(key_order=["timestamp", "level", "event"])(
        bound_logger, name, event_dict
    )
    return _ANSI_ESCAPE.sub("", formatted)


def configure_enhanced_structlog(log_level: str = "INFO", log_format: str = "keyvalue") -> None:
    """
    Configure structlog with MDC, security and correlation features.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "keyvalue", "json" or "console"
    """
    base_processors: list[Any] = [
        # Security first - sanitize sensitive data
        sanitize_sensitive_data,
        merge_contextvars,
        add_correlation_id,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: Any
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    elif log_format == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = _strip_ansi_renderer

    structlog.configure(
        processors=base_processors + [renderer],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=BoundLogger,
        cache_logger_on_first_use=False,
    )


def setup_enhanced_logging(config: dict[str, Any], *, force_reconfigure: bool = False) -> None:
    """
    Set up standard library handlers and structlog from a logging config dict.

    Repeated calls with the same configuration are no-ops unless
    force_reconfigure is set.

    Args:
        config: Logging configuration (keys: level, format, disable_logging)
        force_reconfigure: When True, tear down existing handlers before reconfiguring
    """
    log_level = str(config.get("level", "INFO")).upper()
    log_format = str(config.get("format", "keyvalue"))
    disabled = bool(config.get("disable_logging", False))
    signature = f"{log_level}|{log_format}|{disabled}"

    if _logging_state.initialized and _logging_state.signature == signature and not force_reconfigure:
        return

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    if disabled:
        root_logger.addHandler(logging.NullHandler())
        root_logger.setLevel(logging.CRITICAL + 1)
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root_logger.addHandler(handler)
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))

    configure_enhanced_structlog(log_level=log_level, log_format=log_format)

    _logging_state.initialized = True
    _logging_state.signature = signature
    logger.info("Logging configured", log_level=log_level, log_format=log_format)


def get_logger(name: str) -> Any:  # Returns BoundLogger but typed as Any for flexibility
    """
    Get a structlog logger with the specified name.

    This is the public API for obtaining loggers. All application code
    should use this function rather than calling structlog.get_logger()
    directly.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger instance
    """
    return structlog.get_logger(name)
