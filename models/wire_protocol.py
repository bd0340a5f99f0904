"""Wire protocol shared by the chat client and the realtime server.

Every frame is a JSON object ``{"event": <name>, "data": <payload>, "ack": <n>}``.
Payloads are validated with pydantic; Python code sees snake_case fields
while the wire keeps the camelCase keys the browser client already speaks.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class ProtocolError(ValueError):
    """Raised when a frame or payload does not follow the wire protocol."""


class EventNames:
    """Event names used on the socket."""

    CHAT_MESSAGE = "chat:message"
    CHAT_CANCEL = "chat:cancel"

    CHAT_THINKING = "chat:thinking"
    CHAT_GENERATING = "chat:generating"
    CHAT_TOKEN = "chat:token"
    CHAT_COMPLETE = "chat:complete"
    CHAT_ERROR = "chat:error"
    CONVERSATION_CREATED = "conversation:created"

    PING = "ping"
    PONG = "pong"
    ACK = "ack"
    ERROR = "error"


class EventKind(str, Enum):
    """Message-scoped server events, one per lifecycle step."""

    THINKING = "thinking"
    GENERATING = "generating"
    TOKEN = "token"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_KINDS = frozenset({EventKind.COMPLETE, EventKind.ERROR})


class WirePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_wire(self) -> Dict[str, Any]:
        """Return the camelCase dict sent over the socket."""
        return self.model_dump(by_alias=True, exclude_none=True)


class ChatMessagePayload(WirePayload):
    message_id: str = Field(alias="messageId", min_length=1)
    content: str
    model: str = Field(min_length=1)
    vision_model: Optional[str] = Field(default=None, alias="visionModel")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    images: Optional[List[str]] = None


class CancelPayload(WirePayload):
    message_id: str = Field(alias="messageId", min_length=1)


class ThinkingPayload(WirePayload):
    kind: ClassVar[EventKind] = EventKind.THINKING
    event_name: ClassVar[str] = EventNames.CHAT_THINKING

    message_id: str = Field(alias="messageId", min_length=1)


class GeneratingPayload(WirePayload):
    kind: ClassVar[EventKind] = EventKind.GENERATING
    event_name: ClassVar[str] = EventNames.CHAT_GENERATING

    message_id: str = Field(alias="messageId", min_length=1)
    progress: Optional[float] = None


class TokenPayload(WirePayload):
    kind: ClassVar[EventKind] = EventKind.TOKEN
    event_name: ClassVar[str] = EventNames.CHAT_TOKEN

    message_id: str = Field(alias="messageId", min_length=1)
    token: str


class CompletePayload(WirePayload):
    kind: ClassVar[EventKind] = EventKind.COMPLETE
    event_name: ClassVar[str] = EventNames.CHAT_COMPLETE

    message_id: str = Field(alias="messageId", min_length=1)
    conversation_id: str = Field(default="", alias="conversationId")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ErrorPayload(WirePayload):
    kind: ClassVar[EventKind] = EventKind.ERROR
    event_name: ClassVar[str] = EventNames.CHAT_ERROR

    message_id: str = Field(alias="messageId", min_length=1)
    error: str = "Unknown error"


class ConversationCreatedPayload(WirePayload):
    conversation_id: str = Field(alias="conversationId", min_length=1)


ChatEvent = Union[ThinkingPayload, GeneratingPayload, TokenPayload, CompletePayload, ErrorPayload]

CHAT_EVENT_TYPES: Dict[str, Type[WirePayload]] = {
    cls.event_name: cls
    for cls in (ThinkingPayload, GeneratingPayload, TokenPayload, CompletePayload, ErrorPayload)
}


class Frame(BaseModel):
    """One envelope on the socket."""

    model_config = ConfigDict(frozen=True)

    event: str = Field(min_length=1)
    data: Optional[Dict[str, Any]] = None
    ack: Optional[int] = None


def encode_frame(
    event: str,
    data: Union[WirePayload, Dict[str, Any], None] = None,
    ack: Optional[int] = None,
) -> str:
    """Serialize an event and its payload into a JSON text frame."""
    body = data.to_wire() if isinstance(data, WirePayload) else data
    frame: Dict[str, Any] = {"event": event}
    if body is not None:
        frame["data"] = body
    if ack is not None:
        frame["ack"] = ack
    return json.dumps(frame, ensure_ascii=False)


def decode_frame(raw: Union[str, bytes]) -> Frame:
    """Parse a JSON text frame, raising ProtocolError when it is malformed."""
    try:
        return Frame.model_validate_json(raw)
    except ValidationError as exc:
        raise ProtocolError(f"Malformed frame: {exc.errors()[0].get('msg', exc)}") from exc


def parse_payload(model: Type[WirePayload], data: Optional[Dict[str, Any]]) -> Any:
    """Validate a frame payload against `model`."""
    try:
        return model.model_validate(data or {})
    except ValidationError as exc:
        raise ProtocolError(f"Invalid {model.__name__}: {exc.errors()[0].get('msg', exc)}") from exc


def parse_chat_event(event: str, data: Optional[Dict[str, Any]]) -> ChatEvent:
    """Return the typed payload for a message-scoped server event."""
    model = CHAT_EVENT_TYPES.get(event)
    if model is None:
        raise ProtocolError(f"Unsupported chat event: {event}")
    return parse_payload(model, data)
