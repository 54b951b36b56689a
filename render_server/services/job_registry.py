"""In-process registry of render jobs, keyed by job id."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from render_server.schemas.composition import Composition
from render_server.schemas.render import JobView, OutputOptions
from render_server.system.capabilities import SystemCapabilities

if TYPE_CHECKING:
    from render_server.render.encoding import EncodingPlan
    from render_server.render.progress import ProgressTracker

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Render job status."""

    INITIALIZED = "initialized"
    EXTRACTING = "extracting"
    ENCODING = "encoding"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


# Allowed status transitions
TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.INITIALIZED: frozenset({JobStatus.EXTRACTING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.EXTRACTING: frozenset({JobStatus.ENCODING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.ENCODING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def download_ref(job_id: str) -> str:
    return f"/api/render/download/{job_id}"


@dataclass
class RenderJobRecord:
    """Mutable job state, owned by the job manager."""

    id: str
    composition: Composition
    options: OutputOptions
    capabilities: SystemCapabilities
    scratch_dir: str
    status: JobStatus = JobStatus.INITIALIZED
    phase: str = "initialized"
    progress: int = 0
    phase_progress: dict[str, float] = field(default_factory=dict)
    time_remaining: float | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_monotonic: float = field(default_factory=time.monotonic)
    finished_monotonic: float | None = None
    plan: "EncodingPlan | None" = None
    tracker: "ProgressTracker | None" = None
    task: asyncio.Task | None = None
    _output_path: str | None = None

    @property
    def output_path(self) -> str | None:
        """Artifact path, readable only once the job is completed."""
        return self._output_path if self.status == JobStatus.COMPLETED else None

    @property
    def elapsed_s(self) -> float:
        end = self.finished_monotonic if self.finished_monotonic is not None else time.monotonic()
        return end - self.started_monotonic

    def transition(self, status: JobStatus) -> bool:
        """Move to ``status`` if allowed; returns False (and changes nothing) otherwise."""
        if status not in TRANSITIONS[self.status]:
            logger.debug(f"[JOB] {self.id}: ignoring transition {self.status.value} -> {status.value}")
            return False
        self.status = status
        if status.is_terminal:
            self.finished_monotonic = time.monotonic()
            self.time_remaining = None
        return True

    def complete(self, output_path: str) -> bool:
        self._output_path = output_path
        if not self.transition(JobStatus.COMPLETED):
            self._output_path = None
            return False
        self.phase = "completed"
        self.progress = 100
        self.time_remaining = 0.0
        return True

    def view(self) -> JobView:
        completed = self.status == JobStatus.COMPLETED
        return JobView(
            job_id=self.id,
            status=self.status.value,
            phase=self.phase,
            progress=self.progress,
            phase_progress=dict(self.phase_progress),
            time_remaining=self.time_remaining,
            elapsed=round(self.elapsed_s, 3),
            error=self.error if self.status == JobStatus.FAILED else None,
            output_ref=download_ref(self.id) if completed else None,
            output_path=self.output_path,
            created_at=self.created_at,
        )


class JobRegistry:
    """One record per job id. Reads never raise."""

    def __init__(self) -> None:
        self._jobs: dict[str, RenderJobRecord] = {}

    def add(self, record: RenderJobRecord) -> None:
        if record.id in self._jobs:
            raise ValueError(f"Job already registered: {record.id}")
        self._jobs[record.id] = record

    def get(self, job_id: str) -> RenderJobRecord | None:
        return self._jobs.get(job_id)

    def remove(self, job_id: str) -> RenderJobRecord | None:
        return self._jobs.pop(job_id, None)

    def active(self) -> list[RenderJobRecord]:
        return [job for job in self._jobs.values() if not job.status.is_terminal]

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)
