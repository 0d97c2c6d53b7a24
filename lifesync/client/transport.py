"""
Client transports for the LifeSync realtime channel.

The connection manager only depends on the Transport protocol; the
websockets implementation below is the production transport.
"""

import json
from typing import Any, Protocol
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from ..exceptions import TransportError
from ..realtime.envelope import EnvelopeEncoder
from ..structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)


class Transport(Protocol):
    """A bidirectional JSON message channel."""

    async def connect(self, url: str, token: str) -> None:
        """Open the channel. Raises TransportError on network failure."""
        ...

    async def send(self, message: dict[str, Any]) -> None:
        """Send one message. Raises TransportError when the channel is gone."""
        ...

    async def receive(self) -> dict[str, Any]:
        """Wait for the next message. Raises TransportError when the channel closes."""
        ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


def with_token(url: str, token: str) -> str:
    """Append the access token as a query parameter."""
    parts = urlsplit(url)
    query = f"{parts.query}&{urlencode({'token': token})}" if parts.query else urlencode({"token": token})
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


class WebSocketTransport:
    """Transport over a `websockets` client connection."""

    def __init__(self, open_timeout: float = 10.0, max_size: int = 2**20):
        self.open_timeout = open_timeout
        self.max_size = max_size
        self._websocket: Any = None

    async def connect(self, url: str, token: str) -> None:
        try:
            self._websocket = await websockets.connect(
                with_token(url, token), open_timeout=self.open_timeout, max_size=self.max_size
            )
        except (InvalidURI, InvalidHandshake, OSError, TimeoutError) as e:
            raise TransportError(
                f"Failed to open WebSocket: {e}", details={"url": url, "error_type": type(e).__name__}
            ) from e
        logger.debug("WebSocket opened", url=url)

    async def send(self, message: dict[str, Any]) -> None:
        if self._websocket is None:
            raise TransportError("WebSocket is not open")
        try:
            await self._websocket.send(json.dumps(message, cls=EnvelopeEncoder))
        except ConnectionClosed as e:
            code = e.rcvd.code if e.rcvd else None
            raise TransportError("WebSocket closed during send", details={"code": code}) from e

    async def receive(self) -> dict[str, Any]:
        if self._websocket is None:
            raise TransportError("WebSocket is not open")
        while True:
            try:
                raw = await self._websocket.recv()
            except ConnectionClosed as e:
                raise TransportError(
                    "WebSocket closed", details={"code": e.rcvd.code if e.rcvd else None}
                ) from e
            try:
                message = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError):
                logger.warning("Dropping non-JSON frame", frame_size=len(raw))
                continue
            if isinstance(message, dict):
                return message
            logger.warning("Dropping non-object frame", frame_type=type(message).__name__)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            await websocket.close(code=code, reason=reason)
