"""
Services package for LifeSync.
"""

from .health_service import HealthService

__all__ = ["HealthService"]
