"""
Pytest fixtures for render server tests.

External collaborators (frame renderer, encoder, asset fetch) are replaced by
in-process fakes so pipeline tests run without a browser or ffmpeg. Process
tests use small Python scripts standing in for ffmpeg / the frame renderer.

Tests that need the real ffmpeg binary are marked with @pytest.mark.requires_ffmpeg
and skipped when it is not on PATH.
"""

import asyncio
import os
import shutil
import stat
import sys
import time
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from render_server.api.deps import get_job_manager
from render_server.config import Settings
from render_server.exceptions import AssetDownloadError
from render_server.main import app
from render_server.render.encoding import EncoderPass
from render_server.render.extraction import FrameRenderRequest
from render_server.schemas.composition import Composition
from render_server.services.job_manager import RenderJobManager
from render_server.system.capabilities import ArchitectureClass, SystemCapabilities

requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None,
    reason="ffmpeg not installed",
)


# =============================================================================
# Builders
# =============================================================================


def make_capabilities(
    constrained: bool = False,
    accelerators: tuple[str, ...] = (),
    architecture: ArchitectureClass = ArchitectureClass.GENERAL,
) -> SystemCapabilities:
    return SystemCapabilities(
        architecture=architecture,
        total_memory_mb=8192 if constrained else 32768,
        free_memory_mb=2048 if constrained else 16384,
        is_memory_constrained=constrained,
        accelerators=frozenset(accelerators),
        cpu_cores=8,
        cpu_model="Test CPU",
        cpu_load=0.0,
        platform="Linux",
    )


def make_composition(
    duration_ms: float = 1000,
    audio: list[dict[str, Any]] | None = None,
    timeline_duration: float | None = None,
) -> dict[str, Any]:
    """Composition payload with one video item spanning ``duration_ms``."""
    items: dict[str, Any] = {
        "video-1": {
            "id": "video-1",
            "type": "video",
            "display": {"from": 0, "to": duration_ms},
            "details": {"src": "https://example.com/video.mp4"},
        }
    }
    for i, spec in enumerate(audio or []):
        item_id = spec.get("id", f"audio-{i + 1}")
        items[item_id] = {"id": item_id, "type": "audio", **spec}

    payload: dict[str, Any] = {
        "duration": duration_ms,
        "trackItemIds": list(items),
        "trackItemsMap": items,
    }
    if timeline_duration is not None:
        payload["timelineDuration"] = timeline_duration
    return payload


# =============================================================================
# Fakes
# =============================================================================


class FakeFrameRenderer:
    """Writes one small file per requested frame."""

    def __init__(
        self,
        frames_to_write: int | None = None,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ):
        self.frames_to_write = frames_to_write
        self.error = error
        self.gate = gate
        self.requests: list[FrameRenderRequest] = []
        self.started = asyncio.Event()
        self.cancelled = False

    async def render(self, request: FrameRenderRequest, on_frame) -> None:
        self.requests.append(request)
        self.started.set()
        try:
            if self.gate is not None:
                await self.gate.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error

        count = request.frame_count if self.frames_to_write is None else self.frames_to_write
        for i in range(count):
            name = request.filename_pattern % (request.first_frame + i)
            Path(request.output_dir, name).write_bytes(b"\xff\xd8frame")
            on_frame(i + 1)
            await asyncio.sleep(0)


class FakeEncoderRunner:
    """Records passes, reports progress and writes the output file."""

    def __init__(
        self,
        error: Exception | None = None,
        fail_on: str | None = None,
        gate: asyncio.Event | None = None,
        output_bytes: bytes = b"\x00\x00\x00\x18ftypmp42fake-video",
    ):
        self.error = error
        self.fail_on = fail_on
        self.gate = gate
        self.output_bytes = output_bytes
        self.passes: list[EncoderPass] = []
        self.log: list[tuple[str, str, float | None]] = []
        self.started = asyncio.Event()

    async def run(self, encoder_pass: EncoderPass, on_progress=None, expected_duration_s=None) -> None:
        self.passes.append(encoder_pass)
        self.log.append(("start", encoder_pass.label, None))
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None and self.fail_on in (None, encoder_pass.label):
            raise self.error

        midpoint = (encoder_pass.progress_start + encoder_pass.progress_end) / 2
        for pct in (midpoint, encoder_pass.progress_end):
            self.log.append(("progress", encoder_pass.label, pct))
            if on_progress:
                on_progress(pct)
            await asyncio.sleep(0)

        if encoder_pass.writes_output:
            Path(encoder_pass.output_path).write_bytes(self.output_bytes)
        self.log.append(("end", encoder_pass.label, None))


class FakeAssetFetcher:
    """Writes placeholder bytes instead of downloading."""

    def __init__(self, fail_on: str | None = None):
        self.fail_on = fail_on
        self.fetched: list[tuple[str, str]] = []

    async def fetch(self, uri: str, local_path: str) -> str:
        if self.fail_on is not None and uri == self.fail_on:
            raise AssetDownloadError(uri, "HTTP 404")
        self.fetched.append((uri, local_path))
        Path(local_path).write_bytes(b"ID3fake-audio")
        return local_path


def write_script(path: Path, body: str) -> Path:
    """Write an executable Python script run by the current interpreter."""
    path.write_text(f"#!{sys.executable}\n{body}")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


async def wait_for_status(manager, job_id: str, statuses: set[str], timeout: float = 5.0):
    """Poll until the job reaches one of ``statuses``."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        view = manager.status(job_id)
        if view is not None and view.status in statuses:
            return view
        await asyncio.sleep(0.01)
    raise AssertionError(f"Job {job_id} did not reach {statuses}: {manager.status(job_id)}")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        render_temp_dir=str(tmp_path / "scratch"),
        ffmpeg_path=str(tmp_path / "missing-ffmpeg"),
        frames_cleanup_delay_s=60,
        save_cleanup_delay_s=0.05,
        cancel_cleanup_delay_s=0.05,
        job_retention_s=60,
        process_kill_timeout_s=0.5,
        capability_probe_timeout_s=2,
    )


@pytest.fixture
def composition() -> Composition:
    return Composition.model_validate(make_composition(duration_ms=1000))


@pytest.fixture
def fake_ffmpeg(tmp_path: Path):
    """Factory for a script that behaves like ffmpeg on stderr.

    ``chunks`` are written to stderr as-is (so ``\\r`` progress lines can be
    simulated); the last argument is treated as the output path. The script
    writes its pid to ``ffmpeg-N.started`` next to itself once running.
    """
    counter = {"n": 0}

    def _make(
        chunks: list[str],
        exit_code: int = 0,
        output: bytes | None = b"fake-video",
        delay: float = 0.0,
        ignore_sigterm: bool = False,
        sleep_after: float = 0.0,
    ) -> str:
        counter["n"] += 1
        marker = tmp_path / f"ffmpeg-{counter['n']}.started"
        body = f"""
import os, signal, sys, time
if {ignore_sigterm!r}:
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
with open({str(marker)!r}, "w") as m:
    m.write(str(os.getpid()))
for chunk in {chunks!r}:
    sys.stderr.write(chunk)
    sys.stderr.flush()
    time.sleep({delay!r})
time.sleep({sleep_after!r})
out = sys.argv[-1]
if {output!r} is not None and out != {os.devnull!r}:
    with open(out, "wb") as f:
        f.write({output!r})
sys.exit({exit_code!r})
"""
        script = write_script(tmp_path / f"ffmpeg-{counter['n']}.py", body)
        return str(script)

    return _make


@pytest.fixture
def api_manager(settings) -> RenderJobManager:
    """Job manager wired to the in-process fakes, for API tests."""
    return RenderJobManager(
        detector=AsyncMock(return_value=make_capabilities()),
        frame_renderer=FakeFrameRenderer(),
        asset_fetcher=FakeAssetFetcher(),
        encoder_runner=FakeEncoderRunner(),
        settings=settings,
    )


@pytest.fixture
def client(api_manager):
    """Test client whose routes use ``api_manager``.

    Entering the client keeps one event loop alive for the whole test, so
    pipeline tasks keep running between requests.
    """
    app.dependency_overrides[get_job_manager] = lambda: api_manager
    with TestClient(app) as test_client:
        yield test_client
        test_client.portal.call(api_manager.shutdown)
    app.dependency_overrides.clear()


def poll_status(client: TestClient, job_id: str, statuses: set[str], timeout: float = 5.0) -> dict[str, Any]:
    """Poll the status endpoint until the job reaches one of ``statuses``."""
    deadline = time.monotonic() + timeout
    body: dict[str, Any] = {}
    while time.monotonic() < deadline:
        body = client.get(f"/api/render/status/{job_id}").json()
        if body.get("status") in statuses:
            return body
        time.sleep(0.02)
    raise AssertionError(f"Job {job_id} did not reach {statuses}: {body}")
