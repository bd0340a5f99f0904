"""Scheduled callbacks owned by message id and purpose."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

LOGGER = logging.getLogger(__name__)

STUCK = "stuck"
CLEANUP = "cleanup"
UNREGISTER = "unregister"
RETRY = "retry"
MONITOR = "monitor"


class TimerRegistry:
	"""Keep every scheduled callback addressable so it can be cancelled.

	Timers are indexed by an owner key (a message id, or a service name for
	periodic work) and a purpose. Scheduling the same owner and purpose again
	replaces the earlier timer.
	"""

	def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
		self._loop = loop
		self._timers: Dict[str, Dict[str, Any]] = {}

	def now(self) -> float:
		return time.time()

	def call_later(self, owner: str, purpose: str, delay: float, callback: Callable[..., Any], *args: Any) -> None:
		"""Run `callback(*args)` after `delay` seconds."""
		self.cancel(owner, purpose)

		def _fire() -> None:
			slots = self._timers.get(owner)
			if slots is not None:
				slots.pop(purpose, None)
				if not slots:
					del self._timers[owner]
			try:
				callback(*args)
			except Exception:
				LOGGER.exception("Timer %s/%s failed", owner, purpose)

		self._timers.setdefault(owner, {})[purpose] = self._schedule(max(0.0, delay), _fire)

	def cancel(self, owner: str, purpose: str) -> bool:
		slots = self._timers.get(owner)
		if not slots or purpose not in slots:
			return False
		slots.pop(purpose).cancel()
		if not slots:
			del self._timers[owner]
		return True

	def cancel_owner(self, owner: str) -> int:
		slots = self._timers.pop(owner, {})
		for handle in slots.values():
			handle.cancel()
		return len(slots)

	def cancel_all(self) -> int:
		count = 0
		for owner in list(self._timers):
			count += self.cancel_owner(owner)
		return count

	def is_scheduled(self, owner: str, purpose: str) -> bool:
		return purpose in self._timers.get(owner, {})

	def __len__(self) -> int:
		return sum(len(slots) for slots in self._timers.values())

	def _schedule(self, delay: float, fn: Callable[[], None]) -> Any:
		loop = self._loop or asyncio.get_running_loop()
		return loop.call_later(delay, fn)
