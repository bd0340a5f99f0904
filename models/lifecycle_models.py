"""Message lifecycle domain models shared by the client delivery core."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional

from models.wire_protocol import ChatEvent, EventKind


class MessageState(str, Enum):
	PENDING = "pending"
	THINKING = "thinking"
	GENERATING = "generating"
	STREAMING = "streaming"
	COMPLETE = "complete"
	ERROR = "error"
	CANCELLED = "cancelled"


TERMINAL_STATES: FrozenSet[MessageState] = frozenset(
	{MessageState.COMPLETE, MessageState.ERROR, MessageState.CANCELLED}
)

VALID_TRANSITIONS: Dict[MessageState, FrozenSet[MessageState]] = {
	MessageState.PENDING: frozenset({MessageState.THINKING, MessageState.ERROR, MessageState.CANCELLED}),
	MessageState.THINKING: frozenset({MessageState.GENERATING, MessageState.ERROR, MessageState.CANCELLED}),
	MessageState.GENERATING: frozenset(
		{MessageState.STREAMING, MessageState.COMPLETE, MessageState.ERROR, MessageState.CANCELLED}
	),
	MessageState.STREAMING: frozenset(
		{MessageState.STREAMING, MessageState.COMPLETE, MessageState.ERROR, MessageState.CANCELLED}
	),
	MessageState.COMPLETE: frozenset(),
	MessageState.ERROR: frozenset(),
	MessageState.CANCELLED: frozenset(),
}

# Server event kind -> the state it drives the lifecycle into.
EVENT_STATES: Dict[EventKind, MessageState] = {
	EventKind.THINKING: MessageState.THINKING,
	EventKind.GENERATING: MessageState.GENERATING,
	EventKind.TOKEN: MessageState.STREAMING,
	EventKind.COMPLETE: MessageState.COMPLETE,
	EventKind.ERROR: MessageState.ERROR,
}


def is_valid_transition(current: MessageState, new: MessageState) -> bool:
	"""Return True when `current -> new` is allowed by the state machine."""
	return new in VALID_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class MessageMetadata:
	"""Immutable facts about the user request behind a lifecycle."""

	user_content: str
	model: str
	vision_model: Optional[str] = None
	has_images: bool = False
	source: str = "frontend"


@dataclass
class MessageLifecycle:
	"""Authoritative record for one in-flight message."""

	id: str
	metadata: MessageMetadata
	state: MessageState = MessageState.PENDING
	created_at: float = field(default_factory=lambda: time.time())
	last_activity: float = field(default_factory=lambda: time.time())
	token_count: int = 0
	conversation_id: Optional[str] = None
	result_metadata: Optional[Dict[str, Any]] = None
	error: Optional[str] = None

	@property
	def is_terminal(self) -> bool:
		return self.state in TERMINAL_STATES

	def as_dict(self) -> Dict[str, Any]:
		return {
			"id": self.id,
			"state": self.state.value,
			"created_at": self.created_at,
			"last_activity": self.last_activity,
			"token_count": self.token_count,
			"conversation_id": self.conversation_id,
			"model": self.metadata.model,
			"error": self.error,
		}


Handler = Callable[[Any], Any]


@dataclass(frozen=True)
class HandlerSet:
	"""Callbacks a caller attaches to one message. Every field is optional."""

	on_thinking: Optional[Handler] = None
	on_generating: Optional[Handler] = None
	on_token: Optional[Handler] = None
	on_complete: Optional[Handler] = None
	on_error: Optional[Handler] = None
	on_conversation_created: Optional[Handler] = None

	def callback_for(self, kind: EventKind) -> Optional[Handler]:
		return getattr(self, f"on_{kind.value}", None)


@dataclass
class QueuedEvent:
	"""An event that arrived before anything knew its message id."""

	event: ChatEvent
	received_at: float
	retry_count: int = 0


@dataclass(frozen=True)
class RegistryStats:
	total_messages: int
	by_state: Dict[str, int]
	oldest_created_at: Optional[float] = None
	newest_created_at: Optional[float] = None

	def as_dict(self) -> Dict[str, Any]:
		return {
			"total_messages": self.total_messages,
			"by_state": dict(self.by_state),
			"oldest_created_at": self.oldest_created_at,
			"newest_created_at": self.newest_created_at,
		}
