"""Server-side producer of the per-message chat event sequence."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Set

from models.message_record import MessageRecord
from models.wire_protocol import (
	ChatMessagePayload,
	CompletePayload,
	ConversationCreatedPayload,
	ErrorPayload,
	EventNames,
	GeneratingPayload,
	ThinkingPayload,
	TokenPayload,
)
from services.realtime.channels import ClientChannel
from services.realtime.chat_history import ChatHistory
from services.realtime.chat_streamer import ChatPrompt, InferenceBackend

LOGGER = logging.getLogger(__name__)

CANCELLED_ERROR = "Generation cancelled"


class ChatEventEmitter:
	"""Run one generation task per chat message and emit its events.

	Every event carries the client's message id. A message ends with exactly
	one `chat:complete` or `chat:error`.
	"""

	def __init__(
		self,
		backend: InferenceBackend,
		history: ChatHistory,
		*,
		history_limit: int = 20,
		max_output_tokens: int = 2000,
	) -> None:
		self.backend = backend
		self.history = history
		self.history_limit = history_limit
		self.max_output_tokens = max_output_tokens
		self._active: Dict[str, asyncio.Task] = {}
		self._channels: Dict[str, ClientChannel] = {}
		self._running: Set[str] = set()

	def is_active(self, message_id: str) -> bool:
		return message_id in self._active

	def active_ids(self) -> List[str]:
		return list(self._active)

	def start(self, channel: ClientChannel, request: ChatMessagePayload) -> bool:
		"""Start generating; returns False if this message id is already running."""
		message_id = request.message_id
		if message_id in self._active:
			LOGGER.warning("Ignoring duplicate chat:message for %s", message_id)
			return False
		task = asyncio.create_task(self._run(channel, request), name=f"chat:{message_id}")
		self._active[message_id] = task
		self._channels[message_id] = channel
		channel.generating += 1
		task.add_done_callback(lambda _task, mid=message_id: self._forget(mid))
		return True

	def cancel(self, message_id: str) -> bool:
		task = self._active.get(message_id)
		if task is None or task.done():
			return False
		if message_id not in self._running:
			# A task cancelled before its first step never runs its body.
			self._channels[message_id].emit(
				EventNames.CHAT_ERROR, ErrorPayload(message_id=message_id, error=CANCELLED_ERROR)
			)
		task.cancel()
		return True

	def _forget(self, message_id: str) -> None:
		self._active.pop(message_id, None)
		channel = self._channels.pop(message_id, None)
		self._running.discard(message_id)
		if channel is not None:
			channel.generating -= 1
			channel.touch()

	async def shutdown(self) -> None:
		tasks = list(self._active.values())
		for task in tasks:
			task.cancel()
		if tasks:
			await asyncio.gather(*tasks, return_exceptions=True)

	async def _run(self, channel: ClientChannel, request: ChatMessagePayload) -> None:
		message_id = request.message_id
		self._running.add(message_id)
		started = time.time()
		try:
			channel.emit(EventNames.CHAT_THINKING, ThinkingPayload(message_id=message_id))

			conversation_id, created = await self.history.ensure_conversation(
				request.conversation_id, content=request.content, model=request.model
			)
			if created:
				channel.emit(
					EventNames.CONVERSATION_CREATED,
					ConversationCreatedPayload(conversation_id=conversation_id),
				)
			past = await self.history.recent(conversation_id, self.history_limit)
			await self.history.save(
				MessageRecord(
					id=None,
					message_id=message_id,
					conversation_id=conversation_id,
					role="user",
					content=request.content,
					image_count=len(request.images or []),
				)
			)

			channel.emit(EventNames.CHAT_GENERATING, GeneratingPayload(message_id=message_id))
			prompt = ChatPrompt(
				model=request.model,
				content=request.content,
				history=past,
				images=list(request.images or []),
				vision_model=request.vision_model,
				max_output_tokens=self.max_output_tokens,
			)
			parts: List[str] = []
			usage: Dict[str, object] = {}
			async for chunk in self.backend.generate(prompt):
				if chunk.token:
					parts.append(chunk.token)
					channel.emit(EventNames.CHAT_TOKEN, TokenPayload(message_id=message_id, token=chunk.token))
				if chunk.done:
					usage = dict(chunk.usage)

			metadata: Dict[str, object] = {
				"model": request.model,
				"tokens": len(parts),
				"generationTime": int((time.time() - started) * 1000),
			}
			if request.vision_model:
				metadata["visionModel"] = request.vision_model
			if any(value is not None for value in usage.values()):
				metadata["usage"] = usage

			await self.history.save(
				MessageRecord(
					id=None,
					message_id=message_id,
					conversation_id=conversation_id,
					role="assistant",
					content="".join(parts),
					metadata=metadata,
				)
			)
			channel.emit(
				EventNames.CHAT_COMPLETE,
				CompletePayload(message_id=message_id, conversation_id=conversation_id, metadata=metadata),
			)
			LOGGER.info("Completed %s (%d tokens)", message_id, len(parts))
		except asyncio.CancelledError:
			LOGGER.info("Generation cancelled for %s", message_id)
			channel.emit(EventNames.CHAT_ERROR, ErrorPayload(message_id=message_id, error=CANCELLED_ERROR))
			raise
		except Exception as exc:
			LOGGER.exception("Generation failed for %s", message_id)
			channel.emit(
				EventNames.CHAT_ERROR,
				ErrorPayload(message_id=message_id, error=str(exc) or exc.__class__.__name__),
			)
