"""Fallback client transport: HTTP long-polling against ``/poll/{sid}``."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, List, Optional

import httpx

from services.transport.base import TransportError

LOGGER = logging.getLogger(__name__)


class PollingTransport:
	"""Send frames with POST and receive them with long-poll GET requests."""

	name = "polling"

	def __init__(
		self,
		base_url: str,
		*,
		poll_timeout: float = 25.0,
		client: Optional[httpx.AsyncClient] = None,
	) -> None:
		self.base_url = base_url.rstrip("/")
		self.poll_timeout = poll_timeout
		self._client = client
		self._owns_client = client is None
		self._session_id: Optional[str] = None
		self._pending: List[str] = []
		self._closed = False

	async def open(self, session_id: str) -> None:
		if self._client is None:
			self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.poll_timeout + 10.0)
		self._session_id = session_id
		self._closed = False
		# A zero-timeout poll proves the endpoint is reachable and collects anything buffered.
		self._pending = await self._poll(0.0)
		LOGGER.debug("Polling transport attached to session %s", session_id)

	async def send(self, raw: str) -> None:
		if self._client is None or self._session_id is None:
			raise TransportError("Polling transport is not open")
		try:
			response = await self._client.post(
				f"/poll/{self._session_id}",
				content=f"[{raw}]",
				headers={"Content-Type": "application/json"},
			)
			response.raise_for_status()
		except httpx.HTTPError as exc:
			raise TransportError(f"Polling send failed: {exc}") from exc

	async def receive(self) -> AsyncIterator[str]:
		while self._pending:
			yield self._pending.pop(0)
		while not self._closed:
			for raw in await self._poll(self.poll_timeout):
				yield raw

	async def close(self) -> None:
		self._closed = True
		if self._client is not None and self._owns_client:
			await self._client.aclose()
			self._client = None

	async def _poll(self, timeout: float) -> List[str]:
		if self._client is None or self._session_id is None:
			raise TransportError("Polling transport is not open")
		try:
			response = await self._client.get(f"/poll/{self._session_id}", params={"timeout": timeout})
			response.raise_for_status()
			body: Any = response.json()
		except httpx.HTTPError as exc:
			raise TransportError(f"Polling request failed: {exc}") from exc
		except ValueError as exc:
			raise TransportError(f"Polling response was not JSON: {exc}") from exc
		frames = body.get("frames", []) if isinstance(body, dict) else []
		return [json.dumps(frame) for frame in frames]
