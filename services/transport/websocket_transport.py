"""Primary client transport: a single websocket to ``/ws``."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets

from services.transport.base import TransportError

LOGGER = logging.getLogger(__name__)


def socket_url(base_url: str, session_id: str) -> str:
	"""Turn ``http(s)://host[/prefix]`` into ``ws(s)://host[/prefix]/ws?sid=...``."""
	parts = urlsplit(base_url)
	scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
	path = parts.path.rstrip("/") + "/ws"
	return urlunsplit((scheme, parts.netloc, path, urlencode({"sid": session_id}), ""))


class WebSocketTransport:
	name = "websocket"

	def __init__(
		self,
		base_url: str,
		*,
		open_timeout: float = 15.0,
		ping_interval: Optional[float] = 20.0,
		ping_timeout: Optional[float] = 20.0,
	) -> None:
		self.base_url = base_url
		self.open_timeout = open_timeout
		self.ping_interval = ping_interval
		self.ping_timeout = ping_timeout
		self._ws = None

	async def open(self, session_id: str) -> None:
		url = socket_url(self.base_url, session_id)
		try:
			self._ws = await websockets.connect(
				url,
				open_timeout=self.open_timeout,
				ping_interval=self.ping_interval,
				ping_timeout=self.ping_timeout,
			)
		except websockets.exceptions.InvalidURI as exc:
			raise TransportError(f"Invalid websocket URL {url}: {exc}") from exc
		except websockets.exceptions.InvalidHandshake as exc:
			raise TransportError(f"Websocket handshake failed: {exc}") from exc
		except (OSError, asyncio.TimeoutError) as exc:
			raise TransportError(f"Network error connecting to {url}: {exc}") from exc
		LOGGER.debug("Websocket open: %s", url)

	async def send(self, raw: str) -> None:
		if self._ws is None:
			raise TransportError("Websocket is not open")
		try:
			await self._ws.send(raw)
		except websockets.ConnectionClosed as exc:
			raise TransportError(f"Websocket closed while sending: {exc}") from exc

	async def receive(self) -> AsyncIterator[str]:
		if self._ws is None:
			raise TransportError("Websocket is not open")
		try:
			async for message in self._ws:
				yield message.decode("utf-8") if isinstance(message, bytes) else message
		except websockets.ConnectionClosed as exc:
			raise TransportError(f"Websocket closed: {exc}") from exc

	async def close(self) -> None:
		ws, self._ws = self._ws, None
		if ws is not None:
			await ws.close()
