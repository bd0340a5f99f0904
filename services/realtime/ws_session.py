"""Dispatch inbound client frames to the chat event emitter."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from models.wire_protocol import (
	CancelPayload,
	ChatMessagePayload,
	EventNames,
	Frame,
	ProtocolError,
	decode_frame,
	parse_payload,
)
from services.realtime.channels import ClientChannel
from services.realtime.event_emitter import ChatEventEmitter
from utils.media_validation import validate_chat_images

LOGGER = logging.getLogger(__name__)


class RealtimeSessionHandler:
	"""Route frames from any transport for a client channel."""

	def __init__(self, emitter: ChatEventEmitter) -> None:
		self.emitter = emitter

	async def handle(self, channel: ClientChannel, raw: str) -> None:
		"""Process a single inbound frame. Replies go to the channel outbox."""
		try:
			frame = decode_frame(raw)
		except ProtocolError as exc:
			self._send_error(channel, str(exc))
			return

		channel.touch()
		try:
			if frame.event == EventNames.CHAT_MESSAGE:
				result = self._start_chat(channel, frame)
			elif frame.event == EventNames.CHAT_CANCEL:
				result = self._cancel_chat(frame)
			elif frame.event == EventNames.PING:
				channel.emit(EventNames.PONG)
				result = None
			else:
				raise ValueError(f"Unsupported event: {frame.event}")
			if frame.ack is not None:
				channel.emit(EventNames.ACK, result or {"accepted": True}, ack=frame.ack)
		except Exception as exc:
			LOGGER.warning("Rejected %s frame on %s: %s", frame.event, channel.session_id, exc)
			if frame.ack is not None:
				channel.emit(EventNames.ACK, {"accepted": False, "error": str(exc)}, ack=frame.ack)
			else:
				self._send_error(channel, str(exc))

	def _start_chat(self, channel: ClientChannel, frame: Frame) -> Dict[str, Any]:
		request: ChatMessagePayload = parse_payload(ChatMessagePayload, frame.data)
		validate_chat_images(request.images)
		started = self.emitter.start(channel, request)
		return {"accepted": True, "messageId": request.message_id, "duplicate": not started}

	def _cancel_chat(self, frame: Frame) -> Optional[Dict[str, Any]]:
		request: CancelPayload = parse_payload(CancelPayload, frame.data)
		cancelled = self.emitter.cancel(request.message_id)
		if not cancelled:
			LOGGER.info("Cancel for %s ignored: not generating", request.message_id)
		return {"accepted": True, "messageId": request.message_id, "cancelled": cancelled}

	def _send_error(self, channel: ClientChannel, detail: str) -> None:
		channel.emit(EventNames.ERROR, {"detail": detail})
