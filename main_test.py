"""Tests for main.py - FastAPI routes."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from unittest.mock import AsyncMock, patch

import base64
import json

import pytest

from ffmpeg_process import StreamStartError
from snapshot import SnapshotError


KEY = base64.b64encode(b"k" * 16).decode()
SALT = base64.b64encode(b"s" * 14).decode()

PREPARE_BODY = {
    "target_address": "10.0.0.5",
    "video": {"port": 51000, "srtp_key": KEY, "srtp_salt": SALT},
    "audio": {"port": 51002, "srtp_key": KEY, "srtp_salt": SALT},
}
START_BODY = {
    "video": {"pt": 99, "max_bit_rate": 300},
    "audio": {"pt": 110, "max_bit_rate": 24},
}


class FakeFfmpegProcess:
    """Reports start immediately, or fails with `start_error`."""

    start_error: Exception | None = None

    def __init__(self, title, cmd, on_started=None, on_terminated=None, debug_output=False):
        self.cmd = list(cmd)
        self.on_started = on_started
        self.stopped = False

    async def start(self) -> None:
        self.on_started(type(self).start_error)

    def stop(self) -> None:
        self.stopped = True


@pytest.fixture
def settings_file(tmp_path: Path) -> Path:
    path = tmp_path / "settings.json"
    path.write_text(
        json.dumps(
            {
                "cameras": [
                    {
                        "name": "Front Door",
                        "serial": "CAM1",
                        "local_ip": "192.168.1.40",
                        "channel_number": 1,
                        "username": "admin",
                        "code": "ABCDEF",
                        "switches": [{"type": 22, "enable": True}],
                    },
                    {
                        "name": "Nursery",
                        "serial": "CAM2",
                        "local_ip": "192.168.1.41",
                        "channel_number": 1,
                        "username": "admin",
                        "code": "GHIJKL",
                        "switches": [{"type": 21, "enable": True}],
                    },
                ]
            }
        )
    )
    return path


@contextmanager
def _make_client(settings_file: Path, installed: bool = True):
    from fastapi.testclient import TestClient

    import main

    with (
        patch("ffmpeg_command._load_settings", dict),
        patch("main._settings_path", settings_file),
        patch("ffmpeg_session.is_ffmpeg_installed", return_value=installed),
        patch("ffmpeg_session.does_ffmpeg_support_codec", return_value=True),
        patch("ffmpeg_session.FfmpegProcess", FakeFfmpegProcess),
    ):
        with TestClient(main.app) as client:
            yield client
        assert main._delegates == {}


@pytest.fixture
def client(settings_file: Path):
    with _make_client(settings_file) as client:
        yield client


def _prepare(client, serial: str = "CAM1", session_id: str = "s1"):
    return client.post(f"/cameras/{serial}/streams/{session_id}/prepare", json=PREPARE_BODY)


# =============================================================================
# Camera Listing Tests
# =============================================================================


class TestCameras:
    """Tests for GET /cameras."""

    def test_lists_configured_cameras(self, client):
        resp = client.get("/cameras")
        assert resp.status_code == 200
        cameras = {c["serial"]: c for c in resp.json()}
        assert set(cameras) == {"CAM1", "CAM2"}
        assert cameras["CAM1"]["audio"] is True
        assert cameras["CAM1"]["sleeping"] is False
        assert cameras["CAM2"]["sleeping"] is True
        assert cameras["CAM1"]["pending"] == []

    def test_unknown_camera(self, client):
        resp = _prepare(client, serial="NOPE")
        assert resp.status_code == 404


# =============================================================================
# Stream Lifecycle Tests
# =============================================================================


class TestPrepare:
    """Tests for the prepare route."""

    def test_prepare(self, client):
        resp = _prepare(client)
        assert resp.status_code == 200
        data = resp.json()
        assert 10_000 <= data["video"]["port"] < 20_000
        assert 10_000 <= data["audio"]["port"] < 20_000
        assert data["video"]["ssrc"] != data["audio"]["ssrc"]
        assert data["video"]["srtp_key"] == KEY
        assert data["audio"]["srtp_salt"] == SALT

        cameras = {c["serial"]: c for c in client.get("/cameras").json()}
        assert cameras["CAM1"]["pending"] == ["s1"]

    def test_invalid_base64(self, client):
        body = json.loads(json.dumps(PREPARE_BODY))
        body["video"]["srtp_key"] = "not base64!"
        resp = client.post("/cameras/CAM1/streams/s1/prepare", json=body)
        assert resp.status_code == 422

    def test_ports_exhausted(self, client):
        async def always_busy(port: int) -> bool:
            return False

        with patch("rtp._probe_port", always_busy):
            resp = _prepare(client)
        assert resp.status_code == 503


class TestStartStop:
    """Tests for start/reconfigure/stop routes."""

    def test_start_and_stop(self, client):
        _prepare(client)
        resp = client.post("/cameras/CAM1/streams/s1/start", json=START_BODY)
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}
        cameras = {c["serial"]: c for c in client.get("/cameras").json()}
        assert cameras["CAM1"]["ongoing"] == ["s1"]
        assert cameras["CAM1"]["pending"] == []

        resp = client.post("/cameras/CAM1/streams/s1/stop")
        assert resp.status_code == 200
        cameras = {c["serial"]: c for c in client.get("/cameras").json()}
        assert cameras["CAM1"]["ongoing"] == []

    def test_start_without_audio(self, client):
        _prepare(client)
        resp = client.post("/cameras/CAM1/streams/s1/start", json={"video": START_BODY["video"]})
        assert resp.status_code == 200

    def test_start_unknown_session(self, client):
        resp = client.post("/cameras/CAM1/streams/missing/start", json=START_BODY)
        assert resp.status_code == 404

    def test_start_failure(self, client):
        _prepare(client)
        with patch.object(FakeFfmpegProcess, "start_error", StreamStartError("Connection refused")):
            resp = client.post("/cameras/CAM1/streams/s1/start", json=START_BODY)
        assert resp.status_code == 500
        assert "Connection refused" in resp.json()["detail"]

    def test_ffmpeg_not_installed(self, settings_file):
        with _make_client(settings_file, installed=False) as client:
            _prepare(client)
            resp = client.post("/cameras/CAM1/streams/s1/start", json=START_BODY)
        assert resp.status_code == 503

    def test_reconfigure_without_body(self, client):
        _prepare(client)
        client.post("/cameras/CAM1/streams/s1/start", json=START_BODY)
        resp = client.post("/cameras/CAM1/streams/s1/reconfigure")
        assert resp.status_code == 200

    def test_reconfigure_with_video(self, client):
        resp = client.post(
            "/cameras/CAM1/streams/s1/reconfigure",
            json={"video": {"pt": 99, "max_bit_rate": 150}},
        )
        assert resp.status_code == 200

    def test_stop_unknown_session_ok(self, client):
        resp = client.post("/cameras/CAM1/streams/never/stop")
        assert resp.status_code == 200


# =============================================================================
# Snapshot Tests
# =============================================================================


class TestSnapshot:
    """Tests for GET /cameras/{serial}/snapshot."""

    def test_sleeping_camera_returns_offline_image(self, client):
        resp = client.get("/cameras/CAM2/snapshot")
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/jpeg"
        assert resp.content.startswith(b"\xff\xd8")

    def test_live_snapshot(self, client):
        with patch("ffmpeg_session.get_snapshot", new=AsyncMock(return_value=b"\xff\xd8jpeg")):
            resp = client.get("/cameras/CAM1/snapshot")
        assert resp.status_code == 200
        assert resp.content == b"\xff\xd8jpeg"

    def test_snapshot_failure(self, client):
        with patch(
            "ffmpeg_session.get_snapshot",
            new=AsyncMock(side_effect=SnapshotError("401 Unauthorized")),
        ):
            resp = client.get("/cameras/CAM1/snapshot")
        assert resp.status_code == 502
        assert "401 Unauthorized" in resp.json()["detail"]


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
