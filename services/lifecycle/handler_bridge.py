"""Per-message callback store reachable without the lifecycle registry."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set

from models.lifecycle_models import Handler, HandlerSet
from models.wire_protocol import TERMINAL_KINDS, ChatEvent, ConversationCreatedPayload
from services.lifecycle.timers import UNREGISTER, TimerRegistry

LOGGER = logging.getLogger(__name__)


@dataclass
class _BridgeEntry:
	handlers: HandlerSet
	closed: bool = False


class HandlerBridge:
	"""Map message ids to caller callbacks.

	Lookups here never depend on the registry, so a callback can still be
	reached while the registry entry is missing or being cleaned up. Once a
	terminal callback has run for an id, the entry is closed and later events
	for that id invoke nothing.
	"""

	def __init__(self, timers: TimerRegistry, grace_period: float = 2.0) -> None:
		self._timers = timers
		self.grace_period = grace_period
		self._entries: Dict[str, _BridgeEntry] = {}
		self._tasks: Set[asyncio.Future] = set()

	def register(self, message_id: str, handlers: HandlerSet) -> None:
		self._timers.cancel(message_id, UNREGISTER)
		self._entries[message_id] = _BridgeEntry(handlers=handlers)
		LOGGER.debug("Registered handlers for %s", message_id)

	def get(self, message_id: str) -> Optional[HandlerSet]:
		entry = self._entries.get(message_id)
		return entry.handlers if entry else None

	def is_closed(self, message_id: str) -> bool:
		entry = self._entries.get(message_id)
		return bool(entry and entry.closed)

	def unregister(self, message_id: str) -> bool:
		self._timers.cancel(message_id, UNREGISTER)
		removed = self._entries.pop(message_id, None) is not None
		if removed:
			LOGGER.debug("Unregistered handlers for %s", message_id)
		return removed

	def close(self, message_id: str) -> None:
		"""Stop delivery for an id and unregister it after the grace period."""
		entry = self._entries.get(message_id)
		if entry is None:
			return
		entry.closed = True
		self._timers.call_later(message_id, UNREGISTER, self.grace_period, self.unregister, message_id)

	def dispatch(self, message_id: str, event: ChatEvent) -> bool:
		"""Invoke the callback for `event`. Returns False when nothing may run."""
		entry = self._entries.get(message_id)
		if entry is None:
			LOGGER.debug("No handlers registered for %s", message_id)
			return False
		if entry.closed:
			LOGGER.warning("Dropping %s for %s: terminal callback already delivered", event.kind.value, message_id)
			return False
		if event.kind in TERMINAL_KINDS:
			self.close(message_id)
		callback = entry.handlers.callback_for(event.kind)
		if callback is not None:
			self._invoke(callback, event, message_id)
		return True

	def broadcast_conversation_created(
		self, payload: ConversationCreatedPayload, message_ids: Iterable[str]
	) -> List[str]:
		"""Notify every open handler set in `message_ids`; return who was notified."""
		notified = []
		for message_id in message_ids:
			entry = self._entries.get(message_id)
			if entry is None or entry.closed:
				continue
			callback = entry.handlers.on_conversation_created
			if callback is not None:
				self._invoke(callback, payload, message_id)
				notified.append(message_id)
		return notified

	def ids(self) -> List[str]:
		return list(self._entries)

	def clear(self) -> None:
		for message_id in list(self._entries):
			self.unregister(message_id)

	def __contains__(self, message_id: object) -> bool:
		return message_id in self._entries

	def __len__(self) -> int:
		return len(self._entries)

	def _invoke(self, callback: Handler, payload: Any, message_id: str) -> None:
		try:
			result = callback(payload)
		except Exception:
			LOGGER.exception("Handler for %s raised", message_id)
			return
		if not inspect.isawaitable(result):
			return
		try:
			loop = asyncio.get_running_loop()
		except RuntimeError:
			LOGGER.error("Async handler for %s needs a running event loop", message_id)
			if inspect.iscoroutine(result):
				result.close()
			return
		task = asyncio.ensure_future(result, loop=loop)
		self._tasks.add(task)
		task.add_done_callback(self._task_done)

	def _task_done(self, task: asyncio.Future) -> None:
		self._tasks.discard(task)
		if task.cancelled():
			return
		exc = task.exception()
		if exc is not None:
			LOGGER.error("Async handler raised: %s", exc, exc_info=exc)
