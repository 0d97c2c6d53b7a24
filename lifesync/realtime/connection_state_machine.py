"""
Connection state machine for realtime channels.

Models the lifecycle of a single bidirectional channel. Used by the client
manager to drive reconnects and by the server hub to track each accepted
connection.
"""

from datetime import UTC, datetime
from typing import Any

from statemachine import State, StateMachine

from ..structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)


class ConnectionStateMachine(StateMachine):
    """
    State machine for connection lifecycle.

    States:
    - disconnected: No channel (initial, and terminal after give-up or logout)
    - connecting: Handshake in flight
    - connected: Handshake succeeded, traffic flowing
    - reconnecting: Channel dropped unexpectedly, waiting on backoff

    Transitions:
    - disconnected -> connecting: connect
    - connecting | reconnecting -> connected: connected_successfully
    - connecting | reconnecting -> disconnected: connection_failed
    - connected -> reconnecting: connection_lost
    - reconnecting -> reconnecting: retry (attempt counter advances)
    - connected | connecting | reconnecting -> disconnected: disconnect
    """

    disconnected = State("Disconnected", initial=True)
    connecting = State("Connecting")
    connected = State("Connected")
    reconnecting = State("Reconnecting")

    connect = disconnected.to(connecting)
    connected_successfully = connecting.to(connected) | reconnecting.to(connected)
    connection_failed = connecting.to(disconnected) | reconnecting.to(disconnected)
    connection_lost = connected.to(reconnecting)
    retry = reconnecting.to.itself()
    disconnect = connected.to(disconnected) | connecting.to(disconnected) | reconnecting.to(disconnected)

    def __init__(self, connection_id: str, max_reconnect_attempts: int = 5):
        """
        Initialize connection state machine.

        Args:
            connection_id: Unique identifier for this connection
            max_reconnect_attempts: Reconnect attempts allowed before giving up
        """
        # Set attributes BEFORE super().__init__() because on_enter_state is called during init
        self.connection_id = connection_id
        self.max_reconnect_attempts = max_reconnect_attempts

        self.reconnect_attempts = 0
        self.last_connected_time: datetime | None = None
        self.last_error: Exception | None = None
        self.total_connections = 0
        self.total_reconnections = 0
        self.total_disconnections = 0
        self._was_reconnecting = False

        super().__init__()

    def on_enter_state(self, state: State, event=None, **kwargs) -> None:
        """Log every state transition."""
        logger.debug(
            "Connection state transition",
            connection_id=self.connection_id,
            trigger_event=str(event) if event else "initial",
            to_state=state.id,
            reconnect_attempts=self.reconnect_attempts,
        )

    def on_connect(self) -> None:
        self.reconnect_attempts = 0
        self._was_reconnecting = False

    def on_connected_successfully(self, source: State) -> None:
        """Record connection time and reset the attempt counter."""
        self._was_reconnecting = source.id == "reconnecting"
        self.last_connected_time = datetime.now(UTC)
        self.total_connections += 1
        if self._was_reconnecting:
            self.total_reconnections += 1
        self.reconnect_attempts = 0

    def on_connection_failed(self, error: Exception | None = None) -> None:
        self.last_error = error
        logger.warning(
            "Connection failed",
            connection_id=self.connection_id,
            attempts=self.reconnect_attempts,
            max_attempts=self.max_reconnect_attempts,
            error=str(error) if error else "unknown",
        )

    def on_connection_lost(self, error: Exception | None = None) -> None:
        self.last_error = error
        self.total_disconnections += 1
        self.reconnect_attempts = 1

    def on_retry(self, error: Exception | None = None) -> None:
        self.last_error = error
        self.reconnect_attempts += 1

    def on_disconnect(self) -> None:
        self.total_disconnections += 1
        self.reconnect_attempts = 0

    @property
    def state_id(self) -> str:
        return self.current_state.id

    @property
    def is_connected(self) -> bool:
        return self.current_state == self.connected

    @property
    def was_reconnect(self) -> bool:
        """True when the last successful handshake came from the reconnecting state."""
        return self._was_reconnecting

    def should_give_up(self) -> bool:
        """Return True when the reconnect budget is spent."""
        return self.reconnect_attempts > self.max_reconnect_attempts

    def get_stats(self) -> dict[str, Any]:
        """Get connection statistics."""
        return {
            "connection_id": self.connection_id,
            "current_state": self.current_state.id,
            "reconnect_attempts": self.reconnect_attempts,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "total_connections": self.total_connections,
            "total_reconnections": self.total_reconnections,
            "total_disconnections": self.total_disconnections,
            "last_connected_time": self.last_connected_time.isoformat() if self.last_connected_time else None,
            "last_error": str(self.last_error) if self.last_error else None,
        }
