"""Render job API endpoints."""

import logging

from fastapi import APIRouter, status
from fastapi.responses import StreamingResponse

from render_server.api.deps import JobManager
from render_server.exceptions import JobNotFoundError
from render_server.schemas.render import (
    JobView,
    RenderRequest,
    SaveRequest,
    SaveResponse,
    SubmitResponse,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/render/start",
    response_model=SubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_render(render_request: RenderRequest, manager: JobManager) -> SubmitResponse:
    """
    Start a render job.

    Returns immediately; progress is available from the status endpoint and
    the job's WebSocket channel.
    """
    result = await manager.submit(render_request.composition, render_request.options)
    view = manager.status(result.job_id)
    return SubmitResponse(
        job_id=result.job_id,
        status=view.status if view else "initialized",
        capabilities=result.capabilities.to_dict(),
    )


@router.get("/render/status/{job_id}", response_model=JobView)
async def get_render_status(job_id: str, manager: JobManager) -> JobView:
    view = manager.status(job_id)
    if view is None:
        raise JobNotFoundError(job_id)
    return view


@router.post("/render/cancel/{job_id}", response_model=JobView)
async def cancel_render(job_id: str, manager: JobManager) -> JobView:
    """Cancel a running job. Cancelling a finished job is a no-op."""
    return manager.cancel(job_id)


@router.post("/render/save/{job_id}", response_model=SaveResponse)
async def save_render(job_id: str, save_request: SaveRequest, manager: JobManager) -> SaveResponse:
    """Copy the finished video to a path on the server's filesystem."""
    result = await manager.save(job_id, save_request.output_path)
    return SaveResponse(
        success=True,
        output_path=result.output_path,
        message=f"Video saved to {result.output_path}",
    )


@router.get("/render/download/{job_id}")
async def download_render(job_id: str, manager: JobManager) -> StreamingResponse:
    artifact = manager.download(job_id)
    logger.info(f"[RENDER] Streaming {artifact.filename} ({artifact.size_bytes} bytes) for job {job_id}")
    return StreamingResponse(
        artifact,
        media_type=artifact.media_type,
        headers={
            "Content-Disposition": f'attachment; filename="{artifact.filename}"',
            "Content-Length": str(artifact.size_bytes),
        },
    )
