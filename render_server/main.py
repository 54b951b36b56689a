import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from render_server.api import render, system, websocket
from render_server.config import get_settings
from render_server.constants.error_codes import get_error_spec
from render_server.exceptions import RenderServerError
from render_server.services.job_manager import RenderJobManager

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    app.state.job_manager = RenderJobManager(settings=settings)
    logger.info(f"[RENDER] {settings.app_name} {settings.app_version} started, scratch dir {settings.render_temp_dir}")
    yield
    # Shutdown
    await app.state.job_manager.shutdown()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RenderServerError)
async def render_server_exception_handler(request: Request, exc: RenderServerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"[RENDER] {request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Global exception handler to ensure errors return proper JSON
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception: {exc}")
    spec = get_error_spec("INTERNAL_ERROR")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "code": "INTERNAL_ERROR",
            "retryable": spec.get("retryable", False),
        },
    )


# Routers
app.include_router(render.router, prefix="/api", tags=["render"])
app.include_router(system.router, prefix="/api", tags=["system"])
app.include_router(websocket.router, tags=["websocket"])


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy", "version": settings.app_version, "git_hash": settings.git_hash}


@app.get("/api/version")
async def get_version() -> dict[str, str]:
    """Return the server version info."""
    return {"version": settings.app_version, "git_hash": settings.git_hash}
