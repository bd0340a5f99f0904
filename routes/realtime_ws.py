"""WebSocket endpoint carrying chat frames for one client session."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket
from starlette.websockets import WebSocketDisconnect

from models.wire_protocol import EventNames, encode_frame
from services.realtime.channels import ChannelStore, ClientChannel, is_valid_session_id

router = APIRouter()

LOGGER = logging.getLogger(__name__)

OUTBOX_WAIT = 30.0


def _require_channel_store(websocket: WebSocket) -> ChannelStore:
	store = getattr(websocket.app.state, "channel_store", None)
	if store is None:
		raise HTTPException(status_code=500, detail="Channel store unavailable")
	return store


async def _drain_outbox(websocket: WebSocket, channel: ClientChannel) -> None:
	"""Forward queued frames to the socket until it fails."""
	while True:
		frames = await channel.next_frames(OUTBOX_WAIT)
		sent = 0
		try:
			for raw in frames:
				await websocket.send_text(raw)
				sent += 1
		except asyncio.CancelledError:
			channel.requeue(frames[sent:])
			raise
		except Exception as exc:
			channel.requeue(frames[sent:])
			LOGGER.debug("Socket for %s closed while sending: %s", channel.session_id, exc)
			return


@router.websocket("/ws")
async def realtime_socket(
	websocket: WebSocket,
	sid: str = Query(default=""),
	store: ChannelStore = Depends(_require_channel_store),
):
	"""Attach the client's channel and shuttle frames both ways."""
	await websocket.accept()
	if not is_valid_session_id(sid):
		await websocket.send_text(encode_frame(EventNames.ERROR, {"detail": "A valid sid query parameter is required"}))
		await websocket.close(code=1008)
		return

	channel = store.attach(sid)
	handler = websocket.app.state.realtime_handler
	writer = asyncio.create_task(_drain_outbox(websocket, channel))
	LOGGER.info("Websocket attached to session %s", sid)
	try:
		while True:
			try:
				raw = await websocket.receive_text()
			except (WebSocketDisconnect, RuntimeError):
				break
			except Exception:
				channel.emit(EventNames.ERROR, {"detail": "Invalid websocket frame"})
				continue
			await handler.handle(channel, raw)
	finally:
		writer.cancel()
		with contextlib.suppress(asyncio.CancelledError):
			await writer
		store.detach(sid)
		LOGGER.info("Websocket detached from session %s", sid)
	try:
		await websocket.close()
	except Exception:
		pass
