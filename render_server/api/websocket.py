"""WebSocket support for real-time render progress notifications.

This module provides:
- The per-job progress endpoint, fed by a JobEventChannel subscription
- Message creation helpers: Standardized message formats
"""

import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from render_server.api.deps import JobManager
from render_server.schemas.render import JobView
from render_server.services.event_channel import RenderEvent

router = APIRouter()
logger = logging.getLogger(__name__)

# Close code for an unknown job id (4000-4999 are application codes)
CLOSE_JOB_NOT_FOUND = 4404

TERMINAL_MESSAGE_TYPES = {"completed": "completed", "failed": "failed", "cancelled": "cancelled"}


def create_status_message(view: JobView, last_event: RenderEvent | None = None) -> dict[str, Any]:
    """Create the message describing a job's current state.

    The job view carries no memory figures; they come from the job's most
    recent event, when there is one.
    """
    message: dict[str, Any] = {
        "type": TERMINAL_MESSAGE_TYPES.get(view.status, "status"),
        "job_id": view.job_id,
        "status": view.status,
        "progress": view.progress,
        "phase": view.phase,
        "phase_progress": view.phase_progress,
        "time_remaining": view.time_remaining,
        "elapsed_ms": int(view.elapsed * 1000),
        "memory_usage": last_event.memory_usage if last_event else None,
    }
    if view.error is not None:
        message["error"] = view.error
    if view.output_ref is not None:
        message["output_ref"] = view.output_ref
    return message


@router.websocket("/ws/render/{job_id}")
async def render_progress(websocket: WebSocket, job_id: str, manager: JobManager) -> None:
    """Push progress messages for one job until its terminal message."""
    await websocket.accept()

    # Subscribe before reading the status so no event falls in between
    subscription = manager.events.subscribe(job_id, replay_last=False)
    try:
        view = manager.status(job_id)
        if view is None:
            await websocket.close(code=CLOSE_JOB_NOT_FOUND, reason="Job not found")
            return

        await websocket.send_json(create_status_message(view, manager.events.last_event(job_id)))
        if view.status not in TERMINAL_MESSAGE_TYPES:
            async for event in subscription:
                await websocket.send_json(event.to_message())
        await websocket.close()
    except WebSocketDisconnect:
        logger.info(f"[WS] Client disconnected from job {job_id}")
    finally:
        subscription.close()
