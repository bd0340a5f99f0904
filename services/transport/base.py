"""Transport errors and the interface every client transport implements."""

from __future__ import annotations

from typing import AsyncIterator, Protocol


class TransportError(RuntimeError):
	"""The connection to the chat server failed or is unavailable."""


class AckTimeoutError(TransportError):
	"""The server did not acknowledge a frame in time."""


class Transport(Protocol):
	"""Carries JSON text frames in both directions for one session id."""

	name: str

	async def open(self, session_id: str) -> None:
		...

	async def send(self, raw: str) -> None:
		...

	def receive(self) -> AsyncIterator[str]:
		...

	async def close(self) -> None:
		...
