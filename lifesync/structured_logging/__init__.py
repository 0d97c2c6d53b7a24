"""
Structured logging package for LifeSync.

All imports should use explicit paths like
'from lifesync.structured_logging.enhanced_logging_config import get_logger'.

The directory is named 'structured_logging' rather than 'logging' to avoid
namespace conflicts with Python's standard library logging module.
"""

__all__: list[str] = []
