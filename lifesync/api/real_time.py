"""
Real-time API endpoints for LifeSync.

The WebSocket endpoint authenticates the handshake, hands the socket to the
connection hub and feeds every inbound frame to the message handler.
"""

import time
from typing import Any

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect

from ..container import ApplicationContainer
from ..error_types import ErrorMessages, ErrorType, create_websocket_error_response
from ..exceptions import AuthenticationError, RateLimitExceeded, TransportError
from ..models.health import HealthResponse
from ..realtime.envelope import build_envelope
from ..realtime.event_types import EventType
from ..structured_logging.enhanced_logging_config import get_logger
from ..structured_logging.logging_context import bind_request_context, clear_request_context

logger = get_logger(__name__)

realtime_router = APIRouter(prefix="/api", tags=["realtime"])

CLOSE_SERVICE_UNAVAILABLE = 1013
CLOSE_UNAUTHORIZED = 4401
CLOSE_RATE_LIMITED = 4429


class FastAPIWebSocketTransport:
    """Adapts a Starlette WebSocket to the hub's ServerTransport protocol."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._closed = False

    async def send_text(self, data: str) -> None:
        if self._closed:
            raise TransportError("WebSocket already closed")
        try:
            await self.websocket.send_text(data)
        except WebSocketDisconnect as e:
            self._closed = True
            raise TransportError("WebSocket disconnected during send", details={"code": e.code}) from e

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        await self.websocket.close(code=code, reason=reason)


def _container_from_state(state: Any) -> ApplicationContainer | None:
    container = getattr(state, "container", None)
    if container is None or not container.is_initialized:
        return None
    return container


def extract_token(websocket: WebSocket) -> tuple[str | None, str | None]:
    """
    Read the access token from the subprotocol header or the query string.

    Returns:
        (token, subprotocol to echo back on accept)
    """
    token = websocket.query_params.get("token")
    subprotocol = None
    subproto_header = websocket.headers.get("sec-websocket-protocol")
    if subproto_header:
        # "bearer, <token>" or just "<token>"
        parts = [p.strip() for p in subproto_header.split(",") if p and p.strip()]
        lowered = [p.lower() for p in parts]
        if "bearer" in lowered:
            subprotocol = parts[lowered.index("bearer")]
            candidates = [p for p in parts if p.lower() != "bearer"]
            if candidates:
                token = candidates[0]
        elif parts:
            token = parts[-1]
    return token, subprotocol


def _client_address(websocket: WebSocket) -> str | None:
    return websocket.client.host if websocket.client else None


@realtime_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    WebSocket endpoint for realtime sync and presence.

    Token via ?token= or Sec-WebSocket-Protocol: bearer, <token>.
    """
    container = _container_from_state(getattr(websocket.app, "state", None))
    hub = container.connection_manager if container is not None else None
    handler = container.message_handler if container is not None else None
    if hub is None or handler is None:
        await websocket.accept()
        await websocket.send_json(
            create_websocket_error_response(ErrorType.SERVICE_UNAVAILABLE, ErrorMessages.SERVICE_UNAVAILABLE)
        )
        await websocket.close(code=CLOSE_SERVICE_UNAVAILABLE)
        return

    token, subprotocol = extract_token(websocket)
    client_address = _client_address(websocket)
    await websocket.accept(subprotocol=subprotocol)
    transport = FastAPIWebSocketTransport(websocket)

    try:
        connection = await hub.accept(transport, token, client_address)
    except AuthenticationError as e:
        await websocket.send_json(
            create_websocket_error_response(
                ErrorType.AUTHENTICATION_FAILED, e.message, user_friendly=e.user_friendly, details=e.details
            )
        )
        await transport.close(code=CLOSE_UNAUTHORIZED, reason=e.auth_type)
        return
    except RateLimitExceeded as e:
        envelope = build_envelope(
            EventType.RATE_LIMIT_EXCEEDED,
            {
                "limit_type": e.limit_type,
                "reset_time": e.reset_time,
                "retry_after": e.retry_after,
                "message": ErrorMessages.RATE_LIMIT_EXCEEDED,
            },
        )
        await websocket.send_text(envelope.to_json())
        await transport.close(code=CLOSE_RATE_LIMITED, reason="rate_limited")
        return

    bind_request_context(user_id=connection.user_id, connection_id=connection.connection_id)
    reason = "client_closed"
    try:
        while True:
            raw = await websocket.receive_text()
            await handler.handle_text(connection, raw)
    except WebSocketDisconnect as e:
        logger.debug("Client disconnected", code=e.code)
    except RuntimeError as e:
        # Starlette raises RuntimeError when receiving on a socket the hub already closed
        logger.debug("Receive on closed WebSocket", error=str(e))
        reason = "server_closed"
    finally:
        await hub.disconnect(connection.connection_id, reason=reason)
        clear_request_context()


@realtime_router.get("/realtime/health", response_model=HealthResponse)
async def realtime_health(request: Request) -> HealthResponse:
    """Connection count, presence counts, rate-limiter stats and broadcaster throughput."""
    container = _container_from_state(request.app.state)
    if container is None or container.health_service is None:
        raise HTTPException(status_code=503, detail="Realtime services not initialized")
    return container.health_service.get_health_status()


@realtime_router.get("/realtime/stats")
async def realtime_statistics(request: Request) -> dict[str, Any]:
    """Raw statistics from every realtime registry."""
    container = _container_from_state(request.app.state)
    if container is None:
        raise HTTPException(status_code=503, detail="Realtime services not initialized")

    statistics = {
        "connections": container.connection_manager.get_stats(),
        "subscriptions": container.subscriptions.get_stats(),
        "presence": container.presence_service.get_stats(),
        "broadcaster": container.broadcaster.get_stats(),
        "data_sync": container.data_sync_service.get_stats(),
        "messages": container.message_handler.get_stats(),
        "rate_limiter": container.rate_limiters.get_stats(),
        "tasks": container.task_registry.get_registry_info(),
        "timestamp": time.time(),
    }
    logger.info("Realtime statistics requested")
    return statistics
