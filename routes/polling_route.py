"""FastAPI routes for the HTTP long-polling transport."""

from typing import Any, Dict, List

from fastapi import APIRouter, Body, HTTPException, Query, Request

from controllers.polling_controller import poll_frames, push_frames

router = APIRouter(prefix="/poll")


@router.get("/{session_id}")
async def poll_frames_route(
	request: Request,
	session_id: str,
	timeout: float = Query(default=25.0, ge=0.0, le=60.0),
):
	try:
		return await poll_frames(request, session_id, timeout)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.post("/{session_id}")
async def push_frames_route(request: Request, session_id: str, frames: List[Dict[str, Any]] = Body(...)):
	try:
		return await push_frames(request, session_id, frames)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))
