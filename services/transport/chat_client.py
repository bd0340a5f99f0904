"""Caller-facing chat client built on the transport session and lifecycle core."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional, Set

from models.lifecycle_models import HandlerSet
from models.wire_protocol import CancelPayload, ChatMessagePayload, EventNames
from services.lifecycle.coordinator import LifecycleCoordinator
from services.transport.base import AckTimeoutError, TransportError
from services.transport.transport_session import TransportSession
from utils.settings import DeliverySettings, TransportSettings

LOGGER = logging.getLogger(__name__)

SEND_FAILED = "Failed to send message"
NETWORK_ERROR = "Network error while sending message"


class ChatClient:
	"""Send chat messages and route their streamed events to caller handlers.

	Example:
		async with ChatClient("http://localhost:8000") as client:
			message_id = await client.send_message("Hello", "gpt-4o-mini", HandlerSet(on_token=print))
	"""

	def __init__(
		self,
		server_url: Optional[str] = None,
		*,
		delivery_settings: Optional[DeliverySettings] = None,
		transport_settings: Optional[TransportSettings] = None,
		coordinator: Optional[LifecycleCoordinator] = None,
		session: Optional[TransportSession] = None,
	) -> None:
		transport_settings = transport_settings or TransportSettings.from_env()
		if server_url:
			transport_settings = replace(transport_settings, server_url=server_url.rstrip("/"))
		self.coordinator = coordinator or LifecycleCoordinator(delivery_settings or DeliverySettings.from_env())
		self.session = session or TransportSession(self.coordinator, transport_settings)
		self._send_tasks: Set[asyncio.Task] = set()

	async def __aenter__(self) -> "ChatClient":
		await self.connect()
		return self

	async def __aexit__(self, *exc_info: Any) -> None:
		await self.disconnect()

	async def connect(self) -> None:
		await self.session.connect()

	async def disconnect(self) -> None:
		for task in list(self._send_tasks):
			task.cancel()
		if self._send_tasks:
			await asyncio.gather(*self._send_tasks, return_exceptions=True)
		await self.session.disconnect()

	async def send_message(
		self,
		content: str,
		model: str,
		handlers: HandlerSet,
		*,
		vision_model: Optional[str] = None,
		conversation_id: Optional[str] = None,
		images: Optional[List[str]] = None,
	) -> str:
		"""Create the message, register its handlers, send it, and return its id.

		Handlers are registered before the request leaves, so no server event
		can outrun them. Send failures arrive through `on_error`.
		"""
		if not self.session.is_connected:
			LOGGER.info("Not connected; connecting before send")
			await self.session.connect()

		lifecycle = self.coordinator.create_message(
			content,
			model,
			vision_model=vision_model,
			conversation_id=conversation_id,
			has_images=bool(images),
		)
		self.coordinator.register_handlers(lifecycle.id, handlers)
		payload = ChatMessagePayload(
			message_id=lifecycle.id,
			content=content,
			model=model,
			vision_model=vision_model,
			conversation_id=conversation_id,
			images=images or None,
		)
		task = asyncio.create_task(self._transmit(payload))
		self._send_tasks.add(task)
		task.add_done_callback(self._send_tasks.discard)
		return lifecycle.id

	async def cancel_message(self, message_id: str) -> bool:
		"""Ask the server to stop, then cancel locally whatever the server says."""
		if self.session.is_connected:
			try:
				await self.session.send(EventNames.CHAT_CANCEL, CancelPayload(message_id=message_id))
			except TransportError as exc:
				LOGGER.warning("Could not send cancel for %s: %s", message_id, exc)
		return self.coordinator.cancel(message_id)

	def connection_info(self) -> Dict[str, Any]:
		return self.session.snapshot()

	def message_states(self) -> List[Dict[str, Any]]:
		return self.coordinator.message_states()

	async def _transmit(self, payload: ChatMessagePayload) -> None:
		message_id = payload.message_id
		try:
			ack = await self.session.send(
				EventNames.CHAT_MESSAGE,
				payload,
				ack_timeout=self.session.settings.ack_timeout,
			)
		except AckTimeoutError as exc:
			LOGGER.error("Send of %s was not acknowledged: %s", message_id, exc)
			self.coordinator.fail(message_id, SEND_FAILED)
			return
		except TransportError as exc:
			LOGGER.error("Send of %s failed: %s", message_id, exc)
			self.coordinator.fail(message_id, NETWORK_ERROR)
			return

		if ack and not ack.get("accepted", True):
			reason = ack.get("error") or "Message rejected by server"
			LOGGER.warning("Server rejected %s: %s", message_id, reason)
			self.coordinator.fail(message_id, reason)
		elif ack and ack.get("duplicate"):
			LOGGER.info("Server already generating %s", message_id)
		else:
			LOGGER.debug("Server acknowledged %s", message_id)
