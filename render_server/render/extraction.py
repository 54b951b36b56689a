"""
Frame extraction.

Resolves the frame count for a composition, picks a memory-safe batch size,
drives the external frame renderer over the full frame range, and verifies
the numbered frame files it leaves behind before encoding may start.
"""

import asyncio
import codecs
import json
import logging
import os
import shlex
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from render_server.config import Settings, get_settings
from render_server.exceptions import ExtractionError
from render_server.render.composition import resolve_timeline_duration, total_frame_count
from render_server.render.process_runner import (
    LINE_SPLIT_RE,
    READ_CHUNK_SIZE,
    DiagnosticTail,
    terminate_process,
)
from render_server.schemas.composition import Composition
from render_server.schemas.render import OutputOptions
from render_server.system.capabilities import SystemCapabilities

logger = logging.getLogger(__name__)

JPEG_QUALITY = 90
RENDERER_ERROR_TAIL_CHARS = 2000

# (is_memory_constrained, resolution class) -> frames per renderer batch
BATCH_SIZES: dict[tuple[bool, str], int] = {
    (True, "4k"): 10,
    (True, "1080p"): 15,
    (True, "other"): 20,
    (False, "4k"): 20,
    (False, "1080p"): 30,
    (False, "other"): 60,
}

FrameCallback = Callable[[int], None]


def resolution_class(width: int, height: int) -> str:
    if width >= 3840 or height >= 2160:
        return "4k"
    if width >= 1920 or height >= 1080:
        return "1080p"
    return "other"


def select_batch_size(is_memory_constrained: bool, width: int, height: int) -> int:
    return BATCH_SIZES[(is_memory_constrained, resolution_class(width, height))]


def frame_digits(total_frames: int, min_digits: int = 4) -> int:
    """Zero-padding width: wide enough for the last index, never below ``min_digits``."""
    return max(min_digits, len(str(max(total_frames - 1, 0))))


def frame_filename(index: int, digits: int, prefix: str, image_format: str) -> str:
    return f"{prefix}{index:0{digits}d}.{image_format}"


def frame_pattern(prefix: str, digits: int, image_format: str) -> str:
    """printf-style pattern the encoder uses to address the frames."""
    return f"{prefix}%0{digits}d.{image_format}"


@dataclass(frozen=True)
class FrameRenderRequest:
    """Everything the frame renderer needs for one job."""

    job_id: str
    props_path: str
    output_dir: str
    first_frame: int
    last_frame: int
    width: int
    height: int
    fps: int
    batch_size: int
    image_format: str
    filename_pattern: str

    @property
    def frame_count(self) -> int:
        return self.last_frame - self.first_frame + 1


class FrameRenderer(Protocol):
    """Composition + frame range -> one numbered image file per frame."""

    async def render(self, request: FrameRenderRequest, on_frame: FrameCallback) -> None:
        """Render every frame in the request.

        ``on_frame`` receives the number of frames rendered so far.
        Raises ExtractionError on failure.
        """
        ...


class SubprocessFrameRenderer:
    """Runs the configured frame renderer command as a child process.

    Progress is read from stdout lines of the form ``frame=<n>``; stderr is
    kept (bounded) for the error message.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def build_command(self, request: FrameRenderRequest) -> list[str]:
        return [
            *shlex.split(self.settings.frame_renderer_command),
            "--props", request.props_path,
            "--output-dir", request.output_dir,
            "--frame-range", f"{request.first_frame}-{request.last_frame}",
            "--width", str(request.width),
            "--height", str(request.height),
            "--fps", str(request.fps),
            "--batch-size", str(request.batch_size),
            "--image-format", request.image_format,
            "--jpeg-quality", str(JPEG_QUALITY),
            "--filename-pattern", request.filename_pattern,
        ]

    async def render(self, request: FrameRenderRequest, on_frame: FrameCallback) -> None:
        cmd = self.build_command(request)
        logger.info(f"[EXTRACT] Job {request.job_id}: {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ExtractionError(f"Failed to start frame renderer: {e}") from e

        tail = DiagnosticTail(RENDERER_ERROR_TAIL_CHARS)

        def handle_line(line: str) -> None:
            line = line.strip()
            if not line.startswith("frame="):
                return
            try:
                rendered = int(line.split("=", 1)[1])
            except ValueError:
                logger.debug(f"[EXTRACT] Ignoring malformed progress line: {line}")
                return
            on_frame(rendered)

        async def read_progress() -> None:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            pending = ""
            while True:
                chunk = await proc.stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                *lines, pending = LINE_SPLIT_RE.split(pending + decoder.decode(chunk))
                for line in lines:
                    handle_line(line)
            handle_line(pending + decoder.decode(b"", final=True))

        async def read_errors() -> None:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                chunk = await proc.stderr.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                tail.append(decoder.decode(chunk))

        readers = [asyncio.ensure_future(read_progress()), asyncio.ensure_future(read_errors())]
        try:
            await asyncio.gather(*readers)
            returncode = await proc.wait()
        except BaseException as e:
            for reader in readers:
                reader.cancel()
            if isinstance(e, asyncio.CancelledError):
                logger.info(f"[EXTRACT] Job {request.job_id}: cancelled, stopping renderer pid {proc.pid}")
            else:
                logger.warning(f"[EXTRACT] Job {request.job_id}: {e!r}, stopping renderer pid {proc.pid}")
            await terminate_process(proc, self.settings.process_kill_timeout_s)
            raise

        if returncode != 0:
            detail = tail.text or "no error output"
            raise ExtractionError(f"Frame renderer exited with code {returncode}: {detail}")


@dataclass(frozen=True)
class ExtractionResult:
    frames_dir: str
    frame_pattern: str  # absolute printf-style path
    total_frames: int
    batch_size: int
    duration_ms: float
    fps: int

    @property
    def duration_s(self) -> float:
        return self.total_frames / self.fps


class FrameExtractionOrchestrator:
    """Drives the frame renderer for one job and verifies its output."""

    def __init__(self, renderer: FrameRenderer, settings: Settings | None = None):
        self.renderer = renderer
        self.settings = settings or get_settings()

    async def extract(
        self,
        job_id: str,
        composition: Composition,
        options: OutputOptions,
        capabilities: SystemCapabilities,
        scratch_dir: str,
        on_progress: Callable[[float], None] | None = None,
        duration_ms: float | None = None,
    ) -> ExtractionResult:
        """Render all frames of the composition into ``<scratch_dir>/frames``.

        Args:
            job_id: Job the frames belong to
            composition: Composition to render
            options: Output dimensions and fps
            capabilities: Host snapshot used for the batch size
            scratch_dir: Job scratch directory
            on_progress: Receives extraction phase progress (0-100)
            duration_ms: Pre-resolved timeline duration; resolved here if None

        Raises:
            ExtractionError: Invalid dimensions or frame count, renderer
                failure, or a frame set that does not match the frame count
        """
        width, height, fps = options.width, options.height, options.fps
        if width <= 0 or height <= 0:
            raise ExtractionError(f"Invalid dimensions: {width}x{height}")
        if fps <= 0:
            raise ExtractionError(f"Invalid fps: {fps}")

        if duration_ms is None:
            duration_ms = resolve_timeline_duration(composition, self.settings.default_duration_ms)
        total_frames = total_frame_count(duration_ms, fps)
        if total_frames <= 0:
            raise ExtractionError(f"Invalid frame count {total_frames} for duration {duration_ms}ms")

        batch_size = select_batch_size(capabilities.is_memory_constrained, width, height)
        digits = frame_digits(total_frames, self.settings.frame_min_digits)
        prefix = self.settings.frame_filename_prefix
        image_format = self.settings.frame_image_format
        pattern = frame_pattern(prefix, digits, image_format)

        frames_dir = os.path.join(scratch_dir, "frames")
        os.makedirs(frames_dir, exist_ok=True)
        props_path = self._write_input_props(scratch_dir, job_id, composition, options, total_frames, duration_ms)

        logger.info(
            f"[EXTRACT] Job {job_id}: {total_frames} frames ({duration_ms}ms @ {fps}fps), "
            f"{width}x{height}, batch size {batch_size}"
        )

        last_pct = 0.0

        def on_frame(rendered: int) -> None:
            nonlocal last_pct
            pct = min(max(rendered / total_frames * 100, 0.0), 100.0)
            if pct > last_pct:
                last_pct = pct
                if on_progress:
                    on_progress(pct)

        request = FrameRenderRequest(
            job_id=job_id,
            props_path=props_path,
            output_dir=frames_dir,
            first_frame=0,
            last_frame=total_frames - 1,
            width=width,
            height=height,
            fps=fps,
            batch_size=batch_size,
            image_format=image_format,
            filename_pattern=pattern,
        )
        try:
            await self.renderer.render(request, on_frame)
        except ExtractionError:
            raise
        except (OSError, RuntimeError) as e:
            raise ExtractionError(f"Frame renderer failed: {e}") from e

        self.verify_frames(frames_dir, total_frames, digits)
        if on_progress and last_pct < 100:
            on_progress(100.0)

        return ExtractionResult(
            frames_dir=frames_dir,
            frame_pattern=os.path.join(frames_dir, pattern),
            total_frames=total_frames,
            batch_size=batch_size,
            duration_ms=duration_ms,
            fps=fps,
        )

    def verify_frames(self, frames_dir: str, total_frames: int, digits: int) -> None:
        """Require exactly ``total_frames`` sequentially numbered frame files."""
        prefix = self.settings.frame_filename_prefix
        image_format = self.settings.frame_image_format
        suffix = f".{image_format}"
        present = {
            name for name in os.listdir(frames_dir)
            if name.startswith(prefix) and name.endswith(suffix)
        }
        expected = {frame_filename(i, digits, prefix, image_format) for i in range(total_frames)}

        missing = sorted(expected - present)
        unexpected = sorted(present - expected)
        if missing or unexpected:
            detail = f"first missing: {missing[0]}" if missing else f"unexpected: {unexpected[0]}"
            raise ExtractionError(
                f"Frame count mismatch: expected {total_frames} frames, found {len(present)} ({detail})"
            )

    @staticmethod
    def _write_input_props(
        scratch_dir: str,
        job_id: str,
        composition: Composition,
        options: OutputOptions,
        total_frames: int,
        duration_ms: float,
    ) -> str:
        props_path = os.path.join(scratch_dir, "input-props.json")
        props = {
            "design": composition.to_payload(),
            "jobId": job_id,
            "width": options.width,
            "height": options.height,
            "fps": options.fps,
            "durationInFrames": total_frames,
            "timelineDuration": duration_ms,
        }
        with open(props_path, "w", encoding="utf-8") as f:
            json.dump(props, f)
        return props_path
