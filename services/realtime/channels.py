"""In-memory outboxes for connected chat clients, keyed by client session id."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Optional, Union

from models.wire_protocol import WirePayload, encode_frame

LOGGER = logging.getLogger(__name__)

_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def is_valid_session_id(session_id: Optional[str]) -> bool:
	return bool(session_id) and _SESSION_ID_PATTERN.match(session_id) is not None


@dataclass
class ClientChannel:
	"""Buffered outbound frames for one client session.

	Frames queue here regardless of which transport the client is using, so
	a client that reconnects with the same session id receives whatever was
	emitted while it was away.
	"""

	session_id: str
	max_frames: int = 1000
	frames: Deque[str] = field(default_factory=deque)
	connections: int = 0
	generating: int = 0
	dropped: int = 0
	last_seen: float = field(default_factory=lambda: time.time())
	_ready: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

	def emit(self, event: str, data: Union[WirePayload, Dict[str, Any], None] = None, ack: Optional[int] = None) -> None:
		"""Queue one frame, dropping the oldest when the outbox is full."""
		if len(self.frames) >= self.max_frames:
			self.frames.popleft()
			self.dropped += 1
			LOGGER.warning("Outbox full for session %s; dropped oldest frame", self.session_id)
		self.frames.append(encode_frame(event, data, ack))
		self._ready.set()

	def requeue(self, frames: Iterable[str]) -> None:
		"""Put frames that could not be delivered back at the front, in order."""
		self.frames.extendleft(reversed(list(frames)))
		if self.frames:
			self._ready.set()

	async def next_frames(self, timeout: float) -> List[str]:
		"""Wait up to `timeout` seconds for frames and take everything queued."""
		if not self.frames and timeout > 0:
			self._ready.clear()
			try:
				await asyncio.wait_for(self._ready.wait(), timeout)
			except asyncio.TimeoutError:
				pass
		batch = list(self.frames)
		self.frames.clear()
		self._ready.clear()
		self.touch()
		return batch

	def touch(self) -> None:
		self.last_seen = time.time()


class ChannelStore:
	"""Create, look up and expire client channels."""

	def __init__(self, max_frames: int = 1000, idle_ttl: float = 300.0) -> None:
		self.max_frames = max_frames
		self.idle_ttl = idle_ttl
		self._channels: Dict[str, ClientChannel] = {}

	def open(self, session_id: str) -> ClientChannel:
		"""Return the channel for a session id, creating it on first use."""
		channel = self._channels.get(session_id)
		if channel is None:
			channel = ClientChannel(session_id=session_id, max_frames=self.max_frames)
			self._channels[session_id] = channel
			LOGGER.info("Opened channel for session %s", session_id)
		channel.touch()
		return channel

	def get(self, session_id: str) -> ClientChannel:
		"""Return a channel or raise KeyError if missing."""
		channel = self._channels.get(session_id)
		if channel is None:
			raise KeyError(f"Channel {session_id} not found")
		return channel

	def attach(self, session_id: str) -> ClientChannel:
		channel = self.open(session_id)
		channel.connections += 1
		return channel

	def detach(self, session_id: str) -> None:
		channel = self._channels.get(session_id)
		if channel is not None:
			channel.connections = max(0, channel.connections - 1)
			channel.touch()

	def expire_idle(self, now: Optional[float] = None) -> List[str]:
		"""Drop channels with no live websocket or running generation, idle past the TTL."""
		now = time.time() if now is None else now
		expired = [
			session_id
			for session_id, channel in self._channels.items()
			if channel.connections == 0 and channel.generating == 0 and now - channel.last_seen > self.idle_ttl
		]
		for session_id in expired:
			del self._channels[session_id]
		if expired:
			LOGGER.info("Expired %d idle channel(s)", len(expired))
		return expired

	async def run_periodic_expiry(self, interval: float = 60.0) -> None:
		while True:
			self.expire_idle()
			await asyncio.sleep(interval)

	def __contains__(self, session_id: object) -> bool:
		return session_id in self._channels

	def __len__(self) -> int:
		return len(self._channels)
