from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class ConversationRecord:
    """In-memory representation of a row in the CONVERSATION table.

    Attributes:
        id: Conversation id (a uuid4 hex string).
        title: Short title derived from the first user message.
        model: Model that answered the first message.
        created_at: Unix timestamp (seconds) when the row was inserted.
        updated_at: Unix timestamp (seconds) of the latest message.
    """

    id: str
    title: str
    model: Optional[str] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None


@dataclass
class MessageRecord:
    """In-memory representation of a row in the MESSAGE table.

    Attributes:
        id: Primary key (None for new records).
        message_id: Client-generated message id shared by the user turn and its reply.
        conversation_id: Owning conversation.
        role: "user" or "assistant".
        content: Message text.
        image_count: Number of images attached to a user turn.
        metadata: Generation metadata for assistant turns (model, tokens, timing).
        created_at: Unix timestamp (seconds) when the row was inserted.
    """

    id: Optional[int]
    message_id: str
    conversation_id: str
    role: str
    content: str
    image_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[int] = None
