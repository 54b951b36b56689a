"""Tests for job records and the in-memory job registry."""

import pytest

from render_server.schemas.composition import Composition
from render_server.schemas.render import OutputOptions
from render_server.services.job_registry import JobRegistry, JobStatus, RenderJobRecord

from conftest import make_capabilities, make_composition


def _record(job_id: str, tmp_path) -> RenderJobRecord:
    return RenderJobRecord(
        id=job_id,
        composition=Composition.model_validate(make_composition()),
        options=OutputOptions(),
        capabilities=make_capabilities(),
        scratch_dir=str(tmp_path / job_id),
    )


class TestRenderJobRecord:
    def test_output_path_only_when_completed(self, tmp_path):
        record = _record("job1", tmp_path)
        record.transition(JobStatus.EXTRACTING)
        record.transition(JobStatus.ENCODING)
        assert record.output_path is None

        assert record.complete(str(tmp_path / "out.mp4"))
        assert record.output_path == str(tmp_path / "out.mp4")
        assert record.view().output_ref == "/api/render/download/job1"

    def test_terminal_state_is_final(self, tmp_path):
        record = _record("job1", tmp_path)
        record.transition(JobStatus.EXTRACTING)
        assert record.transition(JobStatus.CANCELLED)

        assert not record.transition(JobStatus.ENCODING)
        assert not record.complete(str(tmp_path / "out.mp4"))
        assert record.status == JobStatus.CANCELLED
        assert record.output_path is None


class TestJobRegistry:
    def test_rejects_duplicate_id(self, tmp_path):
        registry = JobRegistry()
        registry.add(_record("job1", tmp_path))

        with pytest.raises(ValueError, match="job1"):
            registry.add(_record("job1", tmp_path))
        assert len(registry) == 1

    def test_active_skips_terminal_jobs(self, tmp_path):
        registry = JobRegistry()
        running, finished = _record("running", tmp_path), _record("finished", tmp_path)
        running.transition(JobStatus.EXTRACTING)
        finished.transition(JobStatus.FAILED)
        registry.add(running)
        registry.add(finished)

        assert [record.id for record in registry.active()] == ["running"]

    def test_reads_never_raise(self, tmp_path):
        registry = JobRegistry()
        registry.add(_record("job1", tmp_path))

        assert registry.get("missing") is None
        assert registry.remove("missing") is None
        assert "job1" in registry
        assert registry.remove("job1").id == "job1"
        assert "job1" not in registry
