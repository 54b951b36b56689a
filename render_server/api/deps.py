from typing import Annotated

from fastapi import Depends
from fastapi.requests import HTTPConnection

from render_server.services.job_manager import RenderJobManager


def get_job_manager(connection: HTTPConnection) -> RenderJobManager:
    """The process-wide job manager created in the app lifespan."""
    return connection.app.state.job_manager


JobManager = Annotated[RenderJobManager, Depends(get_job_manager)]
