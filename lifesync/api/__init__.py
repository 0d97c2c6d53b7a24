"""
API module for LifeSync.

HTTP and WebSocket endpoints of the realtime server.
"""

from .real_time import realtime_router

__all__ = ["realtime_router"]
