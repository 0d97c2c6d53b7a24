"""
LifeSync realtime synchronization layer.

Keeps connected clients consistent with server-side task, tag and project
mutations and with each other's presence.
"""

__version__ = "0.1.0"
