from typing import Any

from fastapi import APIRouter

from render_server.api.deps import JobManager

router = APIRouter()


@router.get("/system/capabilities")
async def get_capabilities(manager: JobManager) -> dict[str, Any]:
    """Fresh snapshot of host capabilities (never cached)."""
    capabilities = await manager.detector()
    return capabilities.to_dict()
