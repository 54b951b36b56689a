from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from render_server.schemas.composition import Composition


class OutputOptions(BaseModel):
    width: int = Field(default=1920, ge=16, le=7680)
    height: int = Field(default=1080, ge=16, le=4320)
    fps: int = Field(default=30, ge=1, le=120)
    quality: str = "Full HD (1080p)"  # quality tier label, e.g. "4K (2160p)"
    container_format: Literal["mp4", "mov", "mkv"] = "mp4"
    filename: str | None = None  # target filename, derived from quality when omitted

    @field_validator("width", "height")
    @classmethod
    def _even_dimension(cls, v: int) -> int:
        # yuv420p needs even dimensions
        if v % 2:
            raise ValueError("must be an even number")
        return v

    @field_validator("filename")
    @classmethod
    def _plain_filename(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        if not v or "/" in v or "\\" in v or v in (".", ".."):
            raise ValueError("must be a plain file name")
        return v

    def output_filename(self) -> str:
        if self.filename:
            stem = self.filename.rsplit(".", 1)[0] if "." in self.filename else self.filename
            return f"{stem}.{self.container_format}"
        slug = "-".join(self.quality.lower().split())
        return f"output-{slug}.{self.container_format}"


class RenderRequest(BaseModel):
    composition: Composition
    options: OutputOptions = Field(default_factory=OutputOptions)


class SubmitResponse(BaseModel):
    job_id: str
    status: str
    capabilities: dict[str, Any]


class JobView(BaseModel):
    """Read-only view of a render job."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    status: str
    phase: str
    progress: int
    phase_progress: dict[str, float]
    time_remaining: float | None = None  # seconds
    elapsed: float = 0.0  # seconds
    error: str | None = None
    output_ref: str | None = None
    output_path: str | None = None  # only set when completed
    created_at: datetime


class SaveRequest(BaseModel):
    output_path: str = Field(min_length=1)


class SaveResponse(BaseModel):
    success: bool
    output_path: str
    message: str
