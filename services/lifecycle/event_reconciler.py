"""Resolve incoming server events against the registry and the handler bridge."""

from __future__ import annotations

import logging
from collections import deque
from enum import Enum
from typing import Deque, Dict, List, Optional, Tuple

from models.lifecycle_models import EVENT_STATES, QueuedEvent
from models.wire_protocol import TERMINAL_KINDS, ChatEvent
from services.lifecycle.handler_bridge import HandlerBridge
from services.lifecycle.lifecycle_registry import LifecycleRegistry
from services.lifecycle.timers import RETRY, TimerRegistry
from utils.settings import DeliverySettings

LOGGER = logging.getLogger(__name__)


class DeliveryOutcome(str, Enum):
	APPLIED = "applied"
	BRIDGED = "bridged"
	REJECTED = "rejected"
	QUEUED = "queued"


class EventReconciler:
	"""Apply events now, or buffer them until their message id is known.

	Resolution order: handler bridge first, registry second, otherwise the
	event is queued per id and retried with exponential backoff. Queued
	events keep their arrival order per id.
	"""

	def __init__(
		self,
		registry: LifecycleRegistry,
		handlers: HandlerBridge,
		timers: TimerRegistry,
		settings: DeliverySettings,
	) -> None:
		self._registry = registry
		self._handlers = handlers
		self._timers = timers
		self.settings = settings
		self._queues: Dict[str, Deque[QueuedEvent]] = {}

	def deliver(self, event: ChatEvent) -> DeliveryOutcome:
		outcome = self._apply(event)
		if outcome is not None:
			return outcome
		self._enqueue(event)
		return DeliveryOutcome.QUEUED

	def replay(self, message_id: str) -> int:
		"""Drain the queue for one id right away; return events delivered."""
		delivered, _ = self._drain(message_id, count_attempt=False)
		if delivered:
			LOGGER.info("Replayed %d queued event(s) for %s", delivered, message_id)
		return delivered

	def replay_all(self) -> int:
		"""Drain every queue, per id in arrival order."""
		total = 0
		for message_id in list(self._queues):
			total += self.replay(message_id)
		return total

	def purge_expired(self) -> int:
		now = self._timers.now()
		purged = 0
		for message_id in list(self._queues):
			queue = self._queues[message_id]
			kept = deque(item for item in queue if now - item.received_at <= self.settings.queue_max_age)
			purged += len(queue) - len(kept)
			if kept:
				self._queues[message_id] = kept
			else:
				self.discard(message_id)
		if purged:
			LOGGER.warning("Purged %d expired queued event(s)", purged)
		return purged

	def discard(self, message_id: str) -> int:
		self._timers.cancel(message_id, RETRY)
		queue = self._queues.pop(message_id, None)
		if not queue:
			return 0
		count = len(queue)
		queue.clear()
		return count

	def queued_count(self, message_id: Optional[str] = None) -> int:
		if message_id is not None:
			return len(self._queues.get(message_id, ()))
		return sum(len(queue) for queue in self._queues.values())

	def pending_ids(self) -> List[str]:
		return list(self._queues)

	def clear(self) -> None:
		for message_id in list(self._queues):
			self.discard(message_id)

	def _apply(self, event: ChatEvent) -> Optional[DeliveryOutcome]:
		message_id = event.message_id
		state = EVENT_STATES[event.kind]
		if self._handlers.get(message_id) is not None:
			if message_id in self._registry:
				accepted = self._registry.update_state(message_id, state, event)
				outcome = DeliveryOutcome.APPLIED if accepted else DeliveryOutcome.REJECTED
			else:
				accepted = self._handlers.dispatch(message_id, event)
				outcome = DeliveryOutcome.BRIDGED if accepted else DeliveryOutcome.REJECTED
		elif message_id in self._registry:
			accepted = self._registry.update_state(message_id, state, event)
			outcome = DeliveryOutcome.APPLIED if accepted else DeliveryOutcome.REJECTED
		else:
			return None

		if accepted and event.kind in TERMINAL_KINDS:
			self.discard(message_id)
		return outcome

	def _enqueue(self, event: ChatEvent) -> None:
		message_id = event.message_id
		queue = self._queues.setdefault(message_id, deque())
		if len(queue) >= self.settings.queue_max_size:
			dropped = queue.popleft()
			LOGGER.warning("Event queue full for %s; dropped oldest %s event", message_id, dropped.event.kind.value)
		queue.append(QueuedEvent(event=event, received_at=self._timers.now()))
		LOGGER.warning(
			"No handlers or lifecycle for %s; queued %s event (%d waiting)",
			message_id,
			event.kind.value,
			len(queue),
		)
		if not self._timers.is_scheduled(message_id, RETRY):
			self._schedule_retry(message_id, 0)

	def _schedule_retry(self, message_id: str, attempt: int) -> None:
		delay = min(self.settings.retry_base_delay * (2 ** attempt), self.settings.retry_max_delay)
		self._timers.call_later(message_id, RETRY, delay, self._retry, message_id)

	def _retry(self, message_id: str) -> None:
		_, remaining = self._drain(message_id, count_attempt=True)
		if remaining:
			attempt = max(item.retry_count for item in self._queues[message_id])
			self._schedule_retry(message_id, attempt)

	def _drain(self, message_id: str, count_attempt: bool) -> Tuple[int, int]:
		queue = self._queues.get(message_id)
		if not queue:
			self.discard(message_id)
			return 0, 0

		now = self._timers.now()
		delivered = 0
		while queue:
			item = queue.popleft()
			if now - item.received_at > self.settings.queue_max_age:
				LOGGER.warning("Dropping expired %s event for %s", item.event.kind.value, message_id)
				continue
			if self._apply(item.event) is None:
				queue.appendleft(item)
				break
			delivered += 1

		if queue and count_attempt:
			survivors: Deque[QueuedEvent] = deque()
			for item in queue:
				item.retry_count += 1
				if item.retry_count >= self.settings.max_event_retries:
					LOGGER.warning(
						"Dropping stale %s event for %s after %d attempts",
						item.event.kind.value,
						message_id,
						item.retry_count,
					)
					continue
				survivors.append(item)
			queue = survivors
			if queue:
				self._queues[message_id] = queue

		if not queue:
			self.discard(message_id)
			return delivered, 0
		return delivered, len(queue)
