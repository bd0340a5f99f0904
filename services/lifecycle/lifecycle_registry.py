"""Authoritative per-message state machine for the chat client."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, List, Optional

from models.lifecycle_models import (
	MessageLifecycle,
	MessageMetadata,
	MessageState,
	RegistryStats,
	is_valid_transition,
)
from models.wire_protocol import (
	ChatEvent,
	CompletePayload,
	ErrorPayload,
	GeneratingPayload,
	ThinkingPayload,
	TokenPayload,
)
from services.lifecycle.handler_bridge import HandlerBridge
from services.lifecycle.message_ids import MessageIdGenerator
from services.lifecycle.timers import CLEANUP, STUCK, TimerRegistry
from utils.settings import DeliverySettings

LOGGER = logging.getLogger(__name__)

TIMEOUT_ERROR = "Request timed out after {seconds} seconds. This can happen with slow models or network issues."
STALE_ERROR = "No activity for {seconds} seconds; the response was abandoned."
EVICTED_ERROR = "Too many active messages; this request was dropped."


class LifecycleRegistry:
	"""Track every in-flight message and drive its state transitions.

	Accepted transitions fire exactly one callback through the handler
	bridge. Terminal entries are removed after a grace period so that late
	duplicates can still be recognised and rejected.
	"""

	def __init__(
		self,
		id_generator: MessageIdGenerator,
		handlers: HandlerBridge,
		timers: TimerRegistry,
		settings: DeliverySettings,
	) -> None:
		self._ids = id_generator
		self._handlers = handlers
		self._timers = timers
		self.settings = settings
		self._messages: Dict[str, MessageLifecycle] = {}

	def create(self, metadata: MessageMetadata, conversation_id: Optional[str] = None) -> MessageLifecycle:
		"""Register a new `pending` message and arm its stuck-message timer."""
		self._enforce_capacity()
		message_id = self._ids.generate()
		while message_id in self._messages:
			LOGGER.error("Message id collision for %s; regenerating", message_id)
			message_id = self._ids.generate()

		now = self._timers.now()
		lifecycle = MessageLifecycle(
			id=message_id,
			metadata=metadata,
			conversation_id=conversation_id,
			created_at=now,
			last_activity=now,
		)
		self._messages[message_id] = lifecycle
		self._timers.call_later(message_id, STUCK, self.settings.message_timeout, self._handle_stuck, message_id)
		LOGGER.info("Created message %s (model=%s)", message_id, metadata.model)
		return lifecycle

	def get(self, message_id: str) -> Optional[MessageLifecycle]:
		return self._messages.get(message_id)

	def active(self) -> List[MessageLifecycle]:
		return list(self._messages.values())

	def __contains__(self, message_id: object) -> bool:
		return message_id in self._messages

	def __len__(self) -> int:
		return len(self._messages)

	def update_state(self, message_id: str, new_state: MessageState, event: Optional[ChatEvent] = None) -> bool:
		"""Apply a transition; return False for unknown ids or illegal moves."""
		lifecycle = self._messages.get(message_id)
		if lifecycle is None:
			LOGGER.warning("Attempted to update unknown message %s", message_id)
			return False
		if not is_valid_transition(lifecycle.state, new_state):
			LOGGER.warning(
				"Invalid state transition for %s: %s -> %s",
				message_id,
				lifecycle.state.value,
				new_state.value,
			)
			return False

		previous = lifecycle.state
		lifecycle.state = new_state
		lifecycle.last_activity = self._timers.now()
		if event is None:
			event = self._default_event(lifecycle)

		if new_state is MessageState.STREAMING and isinstance(event, TokenPayload):
			lifecycle.token_count += 1
		elif new_state is MessageState.COMPLETE and isinstance(event, CompletePayload):
			lifecycle.conversation_id = event.conversation_id or lifecycle.conversation_id
			lifecycle.result_metadata = dict(event.metadata)
		elif new_state is MessageState.ERROR and isinstance(event, ErrorPayload):
			lifecycle.error = event.error or "Unknown error"

		LOGGER.debug("Message %s: %s -> %s", message_id, previous.value, new_state.value)

		if new_state is MessageState.CANCELLED:
			self._handlers.close(message_id)
		elif event is not None:
			self._handlers.dispatch(message_id, event)

		if lifecycle.is_terminal:
			self._timers.cancel(message_id, STUCK)
			self._timers.call_later(
				message_id, CLEANUP, self.settings.cleanup_grace_period, self._cleanup, message_id
			)
		return True

	def fail(self, message_id: str, error: str) -> bool:
		"""Force a message into `error` with a locally produced reason."""
		return self.update_state(message_id, MessageState.ERROR, ErrorPayload(message_id=message_id, error=error))

	def cancel(self, message_id: str) -> bool:
		accepted = self.update_state(message_id, MessageState.CANCELLED)
		if accepted:
			LOGGER.info("Cancelled message %s", message_id)
		return accepted

	def apply_conversation_id(self, conversation_id: str) -> List[str]:
		"""Attach `conversation_id` to every in-flight message that has none yet."""
		updated = []
		for lifecycle in self._messages.values():
			if lifecycle.conversation_id is None and not lifecycle.is_terminal:
				lifecycle.conversation_id = conversation_id
				updated.append(lifecycle.id)
		return updated

	def remove(self, message_id: str) -> Optional[MessageLifecycle]:
		self._timers.cancel(message_id, STUCK)
		self._timers.cancel(message_id, CLEANUP)
		return self._messages.pop(message_id, None)

	def sweep(self) -> int:
		"""Force-error stale messages and report registry health."""
		now = self._timers.now()
		threshold = self.settings.stale_threshold
		stale = 0
		for lifecycle in list(self._messages.values()):
			idle = now - lifecycle.last_activity
			if idle <= threshold:
				continue
			if lifecycle.is_terminal:
				LOGGER.warning("Removing terminal message %s that missed its cleanup", lifecycle.id)
				self._cleanup(lifecycle.id)
				continue
			LOGGER.warning("Message %s stale for %.0fs in state %s", lifecycle.id, idle, lifecycle.state.value)
			self.fail(lifecycle.id, STALE_ERROR.format(seconds=round(idle)))
			stale += 1

		stats = self.stats()
		if stats.total_messages > self.settings.max_active_messages:
			LOGGER.warning(
				"Active messages (%d) exceed the soft cap of %d",
				stats.total_messages,
				self.settings.max_active_messages,
			)
		LOGGER.info("Lifecycle health: %s", stats.as_dict())
		return stale

	def stats(self) -> RegistryStats:
		by_state = Counter(lifecycle.state.value for lifecycle in self._messages.values())
		created = [lifecycle.created_at for lifecycle in self._messages.values()]
		return RegistryStats(
			total_messages=len(self._messages),
			by_state=dict(by_state),
			oldest_created_at=min(created) if created else None,
			newest_created_at=max(created) if created else None,
		)

	def clear(self) -> None:
		for message_id in list(self._messages):
			self.remove(message_id)

	def _default_event(self, lifecycle: MessageLifecycle) -> Optional[ChatEvent]:
		state = lifecycle.state
		if state is MessageState.THINKING:
			return ThinkingPayload(message_id=lifecycle.id)
		if state is MessageState.GENERATING:
			return GeneratingPayload(message_id=lifecycle.id)
		if state is MessageState.COMPLETE:
			return CompletePayload(message_id=lifecycle.id, conversation_id=lifecycle.conversation_id or "")
		if state is MessageState.ERROR:
			return ErrorPayload(message_id=lifecycle.id)
		return None

	def _handle_stuck(self, message_id: str) -> None:
		lifecycle = self._messages.get(message_id)
		if lifecycle is None or lifecycle.is_terminal:
			return
		elapsed = round(self._timers.now() - lifecycle.created_at)
		LOGGER.warning("Message %s stuck in %s for %ss", message_id, lifecycle.state.value, elapsed)
		self.fail(message_id, TIMEOUT_ERROR.format(seconds=elapsed))

	def _cleanup(self, message_id: str) -> None:
		if self.remove(message_id) is not None:
			self._handlers.unregister(message_id)
			LOGGER.debug("Cleaned up message %s", message_id)

	def _enforce_capacity(self) -> None:
		limit = self.settings.max_active_messages
		if len(self._messages) < limit:
			return
		by_age = sorted(self._messages.values(), key=lambda lifecycle: lifecycle.created_at)
		for lifecycle in by_age:
			if len(self._messages) < limit:
				return
			if lifecycle.is_terminal:
				LOGGER.info("Evicting finished message %s early (registry full)", lifecycle.id)
				self._cleanup(lifecycle.id)
		for lifecycle in by_age:
			if len(self._messages) < limit:
				return
			if lifecycle.id not in self._messages:
				continue
			LOGGER.warning("Registry full; failing oldest in-flight message %s", lifecycle.id)
			self.fail(lifecycle.id, EVICTED_ERROR)
			self._cleanup(lifecycle.id)
