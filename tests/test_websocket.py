"""Tests for WebSocket progress notifications.

Features:
- Unknown jobs are rejected with an application close code
- Messages stream until the terminal message, then the socket closes
- Late subscribers get the job's current (terminal) state at once
"""

import asyncio
from datetime import UTC, datetime

import pytest
from starlette.websockets import WebSocketDisconnect

from render_server.api.websocket import CLOSE_JOB_NOT_FOUND, create_status_message
from render_server.schemas.render import JobView
from render_server.services.event_channel import RenderEvent

from conftest import make_composition, poll_status


def _start(client) -> str:
    response = client.post("/api/render/start", json={"composition": make_composition(duration_ms=1000)})
    assert response.status_code == 202
    return response.json()["job_id"]


def _view(**overrides) -> JobView:
    values = dict(
        job_id="job1",
        status="encoding",
        phase="encoding",
        progress=60,
        phase_progress={"extraction": 100.0, "encoding": 20.0},
        time_remaining=12.5,
        elapsed=3.2,
        created_at=datetime.now(UTC),
    )
    values.update(overrides)
    return JobView(**values)


class TestCreateStatusMessage:
    def test_running_job(self):
        message = create_status_message(_view())

        assert message["type"] == "status"
        assert message["status"] == "encoding"
        assert message["progress"] == 60
        assert message["elapsed_ms"] == 3200
        assert message["time_remaining"] == 12.5
        assert "error" not in message
        assert "output_ref" not in message
        assert message["memory_usage"] is None

    def test_memory_usage_from_last_event(self):
        event = RenderEvent(
            event_type="progress",
            job_id="job1",
            status="encoding",
            progress=60,
            phase="encoding",
            memory_usage={"rss_mb": 512.0, "system_free_mb": 2048.0},
        )

        message = create_status_message(_view(), event)

        assert message["memory_usage"] == {"rss_mb": 512.0, "system_free_mb": 2048.0}
        assert message["progress"] == 60

    def test_failed_job(self):
        message = create_status_message(_view(status="failed", phase="failed", error="boom"))
        assert message["type"] == "failed"
        assert message["error"] == "boom"

    def test_completed_job(self):
        message = create_status_message(
            _view(status="completed", phase="completed", progress=100, output_ref="/api/render/download/job1")
        )
        assert message["type"] == "completed"
        assert message["output_ref"] == "/api/render/download/job1"


class TestProgressSocket:
    def test_unknown_job_is_closed(self, client):
        with client.websocket_connect("/ws/render/no-such-job") as ws:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert exc_info.value.code == CLOSE_JOB_NOT_FOUND

    def test_streams_until_completed(self, client, api_manager):
        gate = asyncio.Event()
        api_manager.encoder_runner.gate = gate
        job_id = _start(client)
        poll_status(client, job_id, {"encoding"})

        with client.websocket_connect(f"/ws/render/{job_id}") as ws:
            first = ws.receive_json()
            assert first["type"] == "status"
            assert first["status"] == "encoding"
            assert first["memory_usage"]["rss_mb"] > 0

            client.portal.call(gate.set)
            messages = [first]
            while messages[-1]["type"] not in ("completed", "failed", "cancelled"):
                messages.append(ws.receive_json())

            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()

        final = messages[-1]
        assert final["type"] == "completed"
        assert final["progress"] == 100
        assert final["output_ref"] == f"/api/render/download/{job_id}"
        progress = [m["progress"] for m in messages]
        assert progress == sorted(progress)
        assert all(m["job_id"] == job_id for m in messages)

    def test_finished_job_gets_terminal_message(self, client):
        job_id = _start(client)
        poll_status(client, job_id, {"completed"})

        with client.websocket_connect(f"/ws/render/{job_id}") as ws:
            message = ws.receive_json()
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()

        assert message["type"] == "completed"
        assert message["progress"] == 100

    def test_cancel_is_pushed(self, client, api_manager):
        api_manager.encoder_runner.gate = asyncio.Event()
        job_id = _start(client)
        poll_status(client, job_id, {"encoding"})

        with client.websocket_connect(f"/ws/render/{job_id}") as ws:
            assert ws.receive_json()["type"] == "status"
            client.post(f"/api/render/cancel/{job_id}")
            message = ws.receive_json()

        assert message["type"] == "cancelled"
        assert message["status"] == "cancelled"
