"""
Client side of the LifeSync realtime channel.

RealtimeClient bundles the connection manager, subscription registry,
presence tracker and local data store.
"""

from .connection import ClientConnection, ClientConnectionManager
from .presence import PresenceTracker
from .session import RealtimeClient
from .subscriptions import ClientSubscription, SubscriptionRegistry, SubscriptionStatus
from .synchronizer import MergeStrategy, RealtimeDataStore, reconcile
from .transport import Transport, WebSocketTransport

__all__ = [
    "ClientConnection",
    "ClientConnectionManager",
    "ClientSubscription",
    "MergeStrategy",
    "PresenceTracker",
    "RealtimeClient",
    "RealtimeDataStore",
    "SubscriptionRegistry",
    "SubscriptionStatus",
    "Transport",
    "WebSocketTransport",
    "reconcile",
]
