"""Single owner of the client delivery core for one chat session."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from models.lifecycle_models import HandlerSet, MessageLifecycle, MessageMetadata
from models.wire_protocol import ChatEvent, ConversationCreatedPayload, ErrorPayload
from services.lifecycle.event_reconciler import DeliveryOutcome, EventReconciler
from services.lifecycle.handler_bridge import HandlerBridge
from services.lifecycle.lifecycle_registry import LifecycleRegistry
from services.lifecycle.message_ids import MessageIdGenerator
from services.lifecycle.timers import MONITOR, TimerRegistry
from utils.settings import DeliverySettings

LOGGER = logging.getLogger(__name__)

_MONITOR_OWNER = "__coordinator__"


class LifecycleCoordinator:
	"""Own the id generator, timers, registry, handler bridge and reconciler.

	One instance per client session. The transport hands it every decoded
	server event; callers create messages and attach handlers through it.
	"""

	def __init__(
		self,
		settings: Optional[DeliverySettings] = None,
		*,
		timers: Optional[TimerRegistry] = None,
		id_generator: Optional[MessageIdGenerator] = None,
	) -> None:
		self.settings = settings or DeliverySettings()
		self.timers = timers if timers is not None else TimerRegistry()
		self.ids = id_generator or MessageIdGenerator()
		self.handlers = HandlerBridge(self.timers, self.settings.handler_grace_period)
		self.registry = LifecycleRegistry(self.ids, self.handlers, self.timers, self.settings)
		self.reconciler = EventReconciler(self.registry, self.handlers, self.timers, self.settings)
		self._monitoring = False

	def create_message(
		self,
		content: str,
		model: str,
		*,
		vision_model: Optional[str] = None,
		conversation_id: Optional[str] = None,
		has_images: bool = False,
	) -> MessageLifecycle:
		metadata = MessageMetadata(
			user_content=content,
			model=model,
			vision_model=vision_model,
			has_images=has_images,
		)
		return self.registry.create(metadata, conversation_id=conversation_id)

	def register_handlers(self, message_id: str, handlers: HandlerSet) -> None:
		"""Attach callbacks and immediately replay anything already queued for the id."""
		self.handlers.register(message_id, handlers)
		self.reconciler.replay(message_id)

	def deliver(self, event: ChatEvent) -> DeliveryOutcome:
		return self.reconciler.deliver(event)

	def apply_conversation_created(self, payload: ConversationCreatedPayload) -> List[str]:
		"""Attach a new conversation id to messages lacking one and notify their handlers."""
		updated = self.registry.apply_conversation_id(payload.conversation_id)
		notified = self.handlers.broadcast_conversation_created(payload, updated)
		LOGGER.info(
			"Conversation %s created; attached to %d message(s), notified %d handler set(s)",
			payload.conversation_id,
			len(updated),
			len(notified),
		)
		return updated

	def fail(self, message_id: str, error: str) -> bool:
		if message_id in self.registry:
			return self.registry.fail(message_id, error)
		return self.handlers.dispatch(message_id, ErrorPayload(message_id=message_id, error=error))

	def cancel(self, message_id: str) -> bool:
		accepted = self.registry.cancel(message_id)
		if not accepted:
			self.handlers.close(message_id)
		self.reconciler.discard(message_id)
		return accepted

	def replay_queued(self) -> int:
		return self.reconciler.replay_all()

	def start(self) -> None:
		"""Begin the periodic stale-message sweep. Needs a running loop for real timers."""
		if self._monitoring:
			return
		self._monitoring = True
		self._schedule_monitor()

	def stop(self) -> None:
		self._monitoring = False
		self.timers.cancel(_MONITOR_OWNER, MONITOR)

	def shutdown(self) -> int:
		"""Cancel every in-flight message, then release all timers and stores."""
		self.stop()
		cancelled = 0
		for lifecycle in self.registry.active():
			if not lifecycle.is_terminal and self.registry.cancel(lifecycle.id):
				cancelled += 1
		self.timers.cancel_all()
		self.reconciler.clear()
		self.handlers.clear()
		self.registry.clear()
		LOGGER.info("Lifecycle coordinator shut down; %d message(s) cancelled", cancelled)
		return cancelled

	def message_states(self) -> List[Dict[str, Any]]:
		return [lifecycle.as_dict() for lifecycle in self.registry.active()]

	def snapshot(self) -> Dict[str, Any]:
		return {
			"registry": self.registry.stats().as_dict(),
			"handlers": len(self.handlers),
			"queued_events": self.reconciler.queued_count(),
			"timers": len(self.timers),
		}

	def _schedule_monitor(self) -> None:
		self.timers.call_later(_MONITOR_OWNER, MONITOR, self.settings.monitor_interval, self._monitor)

	def _monitor(self) -> None:
		if not self._monitoring:
			return
		try:
			self.registry.sweep()
			self.reconciler.purge_expired()
		finally:
			self._schedule_monitor()
