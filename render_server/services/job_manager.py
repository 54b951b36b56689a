"""
Render job lifecycle.

Owns the job registry and drives each job through
Initialized -> Extracting -> Encoding -> Completed (or Failed / Cancelled):

- submit: validate options, snapshot host capabilities, create the scratch
  directory and record, start the pipeline task
- pipeline: frame extraction and audio preparation run concurrently, then
  the encoder plan is built and its passes run in order
- cancel / save / download, plus scheduled cleanup of scratch directories
  and eviction of finished records
"""

import asyncio
import json
import logging
import os
import shutil
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import pydantic

from render_server.config import Settings, get_settings
from render_server.exceptions import (
    ArtifactMissingError,
    ArtifactSaveError,
    InvalidOutputOptionsError,
    JobNotCompletedError,
    JobNotFoundError,
    RenderServerError,
)
from render_server.render.audio_mixer import AudioMixingProcessor
from render_server.render.composition import resolve_timeline_duration
from render_server.render.encoding import EncodingPlanner
from render_server.render.extraction import (
    FrameExtractionOrchestrator,
    FrameRenderer,
    SubprocessFrameRenderer,
)
from render_server.render.process_runner import EncoderRunner
from render_server.render.progress import ProgressTracker
from render_server.schemas.composition import Composition
from render_server.schemas.render import JobView, OutputOptions
from render_server.services.asset_fetcher import AssetFetcher
from render_server.services.event_channel import JobEventChannel, RenderEvent
from render_server.services.job_registry import (
    JobRegistry,
    JobStatus,
    RenderJobRecord,
    download_ref,
)
from render_server.system.capabilities import SystemCapabilities, detect_system
from render_server.system.memory import MemoryMonitor

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024

MEDIA_TYPES = {
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "mkv": "video/x-matroska",
}

Detector = Callable[[], Awaitable[SystemCapabilities]]


@dataclass(frozen=True)
class SubmitResult:
    job_id: str
    capabilities: SystemCapabilities


@dataclass(frozen=True)
class SaveResult:
    output_path: str
    size_bytes: int


@dataclass(frozen=True)
class ArtifactStream:
    """A completed job's artifact, streamed in chunks."""

    path: str
    filename: str
    size_bytes: int
    media_type: str
    chunk_size: int = DOWNLOAD_CHUNK_SIZE

    async def __aiter__(self) -> AsyncIterator[bytes]:
        with open(self.path, "rb") as f:
            while True:
                chunk = await asyncio.to_thread(f.read, self.chunk_size)
                if not chunk:
                    break
                yield chunk


async def _gather_or_cancel(*aws: Awaitable[Any]) -> list[Any]:
    """Like gather, but a failure cancels (and awaits) the siblings."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class RenderJobManager:
    """Creates, runs and tracks render jobs."""

    def __init__(
        self,
        registry: JobRegistry | None = None,
        events: JobEventChannel | None = None,
        detector: Detector | None = None,
        frame_renderer: FrameRenderer | None = None,
        asset_fetcher: AssetFetcher | None = None,
        encoder_runner: EncoderRunner | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry or JobRegistry()
        self.events = events or JobEventChannel(self.settings.event_queue_size)
        self.detector = detector or (lambda: detect_system(self.settings))
        self.extractor = FrameExtractionOrchestrator(
            frame_renderer or SubprocessFrameRenderer(self.settings), self.settings
        )
        self.audio = AudioMixingProcessor(asset_fetcher or AssetFetcher(self.settings), self.settings)
        self.planner = EncodingPlanner(self.settings)
        self.encoder_runner = encoder_runner or EncoderRunner(self.settings)
        self._scheduled: set[asyncio.Task] = set()

    # ========================================================================
    # Public operations
    # ========================================================================

    async def submit(
        self,
        composition: Composition | dict[str, Any],
        options: OutputOptions | dict[str, Any] | None = None,
    ) -> SubmitResult:
        """Create a job and start its pipeline.

        Raises:
            InvalidOutputOptionsError: Options (or composition) failed validation;
                no job record is created
        """
        try:
            if not isinstance(composition, Composition):
                composition = Composition.model_validate(composition)
            if not isinstance(options, OutputOptions):
                options = OutputOptions.model_validate(options or {})
        except pydantic.ValidationError as e:
            raise InvalidOutputOptionsError(f"Invalid render request: {e.errors()[0]['msg']}") from e

        job_id = str(uuid4())
        capabilities = await self.detector()

        scratch_dir = os.path.join(self.settings.render_temp_dir, job_id)
        os.makedirs(os.path.join(scratch_dir, "frames"), exist_ok=True)
        os.makedirs(os.path.join(scratch_dir, "audio"), exist_ok=True)
        self._write_job_data(scratch_dir, job_id, composition, options)

        record = RenderJobRecord(
            id=job_id,
            composition=composition,
            options=options,
            capabilities=capabilities,
            scratch_dir=scratch_dir,
        )
        record.phase_progress = {"extraction": 0.0, "encoding": 0.0}
        record.tracker = ProgressTracker(
            job_id,
            phases={
                "extraction": self.settings.extraction_weight,
                "encoding": self.settings.encoding_weight,
            },
            on_update=lambda event: self._on_event(record, event),
            memory_monitor=MemoryMonitor(),
        )
        self.registry.add(record)
        record.task = asyncio.create_task(self._run_pipeline(record), name=f"render-{job_id}")

        logger.info(
            f"[JOB] Created job {job_id}: {options.width}x{options.height}@{options.fps}fps "
            f"{options.quality} -> {options.output_filename()}"
        )
        return SubmitResult(job_id=job_id, capabilities=capabilities)

    def status(self, job_id: str) -> JobView | None:
        record = self.registry.get(job_id)
        return record.view() if record else None

    def cancel(self, job_id: str) -> JobView:
        """Cancel an active job; a no-op for finished jobs.

        Status flips to Cancelled immediately and one terminal event is
        published. The child process is terminated by the pipeline task as
        it unwinds, so it may outlive this call briefly.

        Raises:
            JobNotFoundError: Unknown job id
        """
        record = self.registry.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        if record.status.is_terminal:
            logger.info(f"[JOB] Cancel ignored for job {job_id}: already {record.status.value}")
            return record.view()

        record.transition(JobStatus.CANCELLED)
        record.phase = "cancelled"
        if record.tracker:
            record.tracker.cancel()
        if record.task and not record.task.done():
            record.task.cancel()

        logger.info(f"[JOB] Cancelled job {job_id}")
        self._schedule(self.settings.cancel_cleanup_delay_s, self._remove_scratch, record.scratch_dir)
        self._schedule(self.settings.job_retention_s, self._evict, job_id)
        return record.view()

    async def save(self, job_id: str, destination: str) -> SaveResult:
        """Copy a completed job's artifact to ``destination``.

        Relative destinations resolve against the working directory; an
        existing directory receives the artifact under its own filename.
        The job stays Completed until the scheduled cleanup runs.

        Raises:
            JobNotFoundError, JobNotCompletedError, ArtifactMissingError,
            ArtifactSaveError
        """
        record = self._require_artifact(job_id)
        source = record.output_path

        target = os.path.abspath(os.path.expanduser(destination))
        if os.path.isdir(target):
            target = os.path.join(target, os.path.basename(source))

        try:
            await asyncio.to_thread(self._copy_artifact, source, target)
        except OSError as e:
            logger.error(f"[JOB] Save failed for job {job_id}: {e}")
            raise ArtifactSaveError(f"Failed to save output video: {e}") from e

        size = os.path.getsize(target)
        logger.info(f"[JOB] Saved job {job_id} output to {target} ({size} bytes)")
        self._schedule(self.settings.save_cleanup_delay_s, self._evict, job_id)
        return SaveResult(output_path=target, size_bytes=size)

    def download(self, job_id: str) -> ArtifactStream:
        """Stream of the completed artifact; validated before any byte is read.

        Raises:
            JobNotFoundError, JobNotCompletedError, ArtifactMissingError
        """
        record = self._require_artifact(job_id)
        path = record.output_path
        fmt = record.options.container_format
        return ArtifactStream(
            path=path,
            filename=os.path.basename(path),
            size_bytes=os.path.getsize(path),
            media_type=MEDIA_TYPES.get(fmt, "application/octet-stream"),
        )

    async def shutdown(self) -> None:
        """Cancel running pipelines and pending cleanup timers."""
        tasks: list[asyncio.Task] = []
        for record in self.registry.active():
            record.transition(JobStatus.CANCELLED)
            record.phase = "cancelled"
            if record.tracker:
                record.tracker.cancel()
            if record.task and not record.task.done():
                record.task.cancel()
                tasks.append(record.task)
        for task in self._scheduled:
            task.cancel()
        tasks.extend(self._scheduled)
        await asyncio.gather(*tasks, return_exceptions=True)
        self._scheduled.clear()
        logger.info(f"[JOB] Shutdown complete ({len(tasks)} tasks cancelled)")

    # ========================================================================
    # Pipeline
    # ========================================================================

    async def _run_pipeline(self, record: RenderJobRecord) -> None:
        job_id = record.id
        tracker = record.tracker
        options = record.options
        try:
            if not record.transition(JobStatus.EXTRACTING):
                return
            tracker.start_phase("extraction")

            duration_ms = resolve_timeline_duration(record.composition, self.settings.default_duration_ms)
            extraction, audio_plan = await _gather_or_cancel(
                self.extractor.extract(
                    job_id,
                    record.composition,
                    options,
                    record.capabilities,
                    record.scratch_dir,
                    on_progress=lambda pct: tracker.update_phase("extraction", pct),
                    duration_ms=duration_ms,
                ),
                self.audio.prepare(record.composition, record.scratch_dir, duration_ms, job_id=job_id),
            )
            tracker.complete_phase("extraction")

            if not record.transition(JobStatus.ENCODING):
                return
            tracker.start_phase("encoding")

            output_path = os.path.join(record.scratch_dir, options.output_filename())
            plan = self.planner.build(
                record.capabilities,
                options,
                extraction.frame_pattern,
                audio_plan,
                output_path,
                extraction.batch_size,
            )
            record.plan = plan

            for encoder_pass in plan.passes:
                await self.encoder_runner.run(
                    encoder_pass,
                    on_progress=lambda pct: tracker.update_phase("encoding", pct),
                    expected_duration_s=extraction.duration_s,
                )

            if not record.complete(output_path):
                return
            tracker.complete(output_ref=download_ref(job_id))
            logger.info(f"[JOB] Job {job_id} completed in {record.elapsed_s:.1f}s: {output_path}")

            self._schedule(
                self.settings.frames_cleanup_delay_s,
                self._remove_scratch,
                extraction.frames_dir,
            )
            self._schedule(self.settings.job_retention_s, self._evict, job_id)

        except asyncio.CancelledError:
            logger.info(f"[JOB] Pipeline for job {job_id} stopped (status: {record.status.value})")
            raise
        except RenderServerError as e:
            self._fail(record, e.message)
        except Exception as e:
            logger.exception(f"[JOB] Unexpected error in job {job_id}")
            self._fail(record, str(e) or e.__class__.__name__)

    def _fail(self, record: RenderJobRecord, message: str) -> None:
        limit = self.settings.max_error_message_chars
        if len(message) > limit:
            message = message[: limit - 3] + "..."
        if not record.transition(JobStatus.FAILED):
            return
        record.error = message
        record.phase = "failed"
        logger.error(f"[JOB] Job {record.id} failed: {message}")
        if record.tracker:
            record.tracker.fail(message)
        self._schedule(self.settings.job_retention_s, self._evict, record.id)

    def _on_event(self, record: RenderJobRecord, event: RenderEvent) -> None:
        """Mirror tracker events onto the record, then publish them."""
        if record.status.is_terminal and not event.is_terminal:
            return
        record.progress = max(record.progress, event.progress)
        record.phase_progress = dict(event.phase_progress)
        if not event.is_terminal:
            record.phase = event.phase
            record.time_remaining = event.time_remaining
        self.events.publish(event)

    # ========================================================================
    # Helpers
    # ========================================================================

    def _require_artifact(self, job_id: str) -> RenderJobRecord:
        record = self.registry.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        if record.status != JobStatus.COMPLETED:
            raise JobNotCompletedError(job_id, record.status.value)
        if not record.output_path or not os.path.isfile(record.output_path):
            raise ArtifactMissingError()
        return record

    @staticmethod
    def _copy_artifact(source: str, target: str) -> None:
        parent = os.path.dirname(target)
        if parent:
            os.makedirs(parent, exist_ok=True)
        shutil.copyfile(source, target)

    @staticmethod
    def _write_job_data(
        scratch_dir: str,
        job_id: str,
        composition: Composition,
        options: OutputOptions,
    ) -> None:
        job_data = {
            "jobId": job_id,
            "design": composition.to_payload(),
            "options": options.model_dump(),
            "timestamp": datetime.now(UTC).isoformat(),
        }
        with open(os.path.join(scratch_dir, "job-data.json"), "w", encoding="utf-8") as f:
            json.dump(job_data, f)

    def _schedule(self, delay_s: float, func: Callable[..., Any], *args: Any) -> None:
        async def run_later() -> None:
            await asyncio.sleep(delay_s)
            result = func(*args)
            if asyncio.iscoroutine(result):
                await result

        task = asyncio.create_task(run_later())
        self._scheduled.add(task)
        task.add_done_callback(self._scheduled.discard)

    async def _remove_scratch(self, path: str) -> None:
        if not os.path.exists(path):
            return
        try:
            await asyncio.to_thread(shutil.rmtree, path)
            logger.info(f"[JOB] Removed {path}")
        except OSError as e:
            logger.warning(f"[JOB] Failed to remove {path}: {e}")

    def _evict(self, job_id: str) -> None:
        record = self.registry.remove(job_id)
        if record is None:
            return
        self.events.forget(job_id)
        logger.info(f"[JOB] Evicted job {job_id} ({record.status.value})")
        if os.path.exists(record.scratch_dir):
            self._schedule(0, self._remove_scratch, record.scratch_dir)
