"""
Inbound WebSocket message validation for LifeSync.

Raw text is size-checked, parsed as JSON and validated into typed models
before any handler sees it.
"""

import json
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ..error_types import ErrorType
from ..exceptions import ValidationError
from .event_types import ClientMessageType, RoomKey, RoomType

MAX_MESSAGE_SIZE = 64 * 1024


class MessageValidationError(ValidationError):
    """Raised when an inbound message cannot be accepted."""

    log_level = "warning"

    def __init__(self, message: str, error_type: ErrorType = ErrorType.VALIDATION_ERROR, **kwargs):
        super().__init__(message, **kwargs)
        self.error_type = error_type


def validation_errors(error: PydanticValidationError) -> list[dict[str, Any]]:
    """JSON-safe error list that does not echo the rejected input back."""
    return [
        {"loc": list(item["loc"]), "msg": item["msg"], "type": item["type"]}
        for item in error.errors(include_url=False, include_context=False, include_input=False)
    ]


class ClientMessage(BaseModel):
    """Envelope of every client -> server message."""

    type: ClientMessageType = Field(..., description="Message kind")
    data: dict[str, Any] = Field(default_factory=dict, description="Message payload")


class RoomRequest(BaseModel):
    """Payload of subscribe and unsubscribe."""

    room_type: RoomType = Field(..., description="Room scope")
    room_id: str = Field(..., min_length=1, max_length=200, description="Room identifier")
    filters: dict[str, Any] = Field(default_factory=dict, description="Field -> required value")

    @property
    def room(self) -> RoomKey:
        return RoomKey(self.room_type, self.room_id)


def parse_client_message(raw: str | bytes, max_size: int = MAX_MESSAGE_SIZE) -> ClientMessage:
    """
    Parse and validate one inbound message.

    Raises:
        MessageValidationError: Oversized, not JSON, unknown type or bad shape
    """
    if len(raw) > max_size:
        raise MessageValidationError(
            f"Message exceeds {max_size} bytes", ErrorType.INVALID_FORMAT, details={"size": len(raw)}
        )
    try:
        decoded = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MessageValidationError("Message is not valid JSON", ErrorType.INVALID_FORMAT) from e
    if not isinstance(decoded, dict):
        raise MessageValidationError("Message must be a JSON object", ErrorType.INVALID_FORMAT)

    message_type = decoded.get("type")
    if message_type not in {member.value for member in ClientMessageType}:
        raise MessageValidationError(
            f"Unknown message type: {message_type}",
            ErrorType.UNKNOWN_MESSAGE_TYPE,
            details={"message_type": message_type},
        )
    try:
        return ClientMessage.model_validate(decoded)
    except PydanticValidationError as e:
        raise MessageValidationError(
            "Message failed validation", details={"errors": validation_errors(e)}
        ) from e


def parse_room_request(data: dict[str, Any]) -> RoomRequest:
    """
    Raises:
        MessageValidationError: Missing or invalid room fields
    """
    try:
        return RoomRequest.model_validate(data)
    except PydanticValidationError as e:
        raise MessageValidationError(
            "Invalid room request", details={"errors": validation_errors(e)}
        ) from e
