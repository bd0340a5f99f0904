"""Long-polling fallback for clients that cannot keep a websocket open."""

from __future__ import annotations

import json
from typing import Any, Dict, List

from fastapi import HTTPException, Request

from services.realtime.channels import ChannelStore, is_valid_session_id
from services.realtime.ws_session import RealtimeSessionHandler


def _channel_store(request: Request, session_id: str) -> ChannelStore:
	if not is_valid_session_id(session_id):
		raise HTTPException(status_code=400, detail="Invalid session id")
	store = getattr(request.app.state, "channel_store", None)
	if store is None:
		raise HTTPException(status_code=500, detail="Channel store unavailable")
	return store


async def poll_frames(request: Request, session_id: str, timeout: float) -> Dict[str, Any]:
	"""Wait up to `timeout` seconds and return every frame queued for the session."""
	store = _channel_store(request, session_id)
	channel = store.open(session_id)
	frames = await channel.next_frames(timeout)
	return {"frames": [json.loads(raw) for raw in frames]}


async def push_frames(request: Request, session_id: str, frames: List[Dict[str, Any]]) -> Dict[str, Any]:
	"""Dispatch client frames exactly as if they had arrived on the websocket."""
	store = _channel_store(request, session_id)
	handler: RealtimeSessionHandler = request.app.state.realtime_handler
	channel = store.open(session_id)
	for frame in frames:
		await handler.handle(channel, json.dumps(frame))
	return {"accepted": len(frames)}
