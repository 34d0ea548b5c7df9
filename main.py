"""HTTP control surface for camera streaming sessions."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import argparse
import base64
import binascii
import functools
import logging
import pathlib

from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel

import uvicorn

import ffmpeg_command
import settings as settings_module

from ffmpeg_command import AudioInfo, VideoInfo
from ffmpeg_session import (
    FfmpegNotInstalledError,
    MediaPrepareRequest,
    MediaPrepareResponse,
    PrepareStreamRequest,
    StreamingDelegate,
    StreamRequest,
    StreamRequestType,
    StreamSessionError,
)
from rtp import PortBroker, PortReservationError
from snapshot import SnapshotError


log = logging.getLogger(__name__)

# Module state
_settings_path: pathlib.Path | None = None
_delegates: dict[str, StreamingDelegate] = {}


def _load_settings() -> dict[str, Any]:
    return settings_module.load_settings(_settings_path)


def _on_session_ended(serial: str, session_id: str) -> None:
    log.info("Session %s on %s ended by ffmpeg exit", session_id, serial)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    ffmpeg_command.init(_load_settings)
    # One broker for all cameras so sessions never share a port
    ports = PortBroker()
    for device in settings_module.get_cameras(_load_settings()):
        serial = device.serial or device.name
        delegate = StreamingDelegate(
            device,
            ports,
            on_session_ended=functools.partial(_on_session_ended, serial),
        )
        await delegate.initialize()
        _delegates[serial] = delegate
    log.info("Loaded %d camera(s)", len(_delegates))
    try:
        yield
    finally:
        for delegate in _delegates.values():
            delegate.shutdown()
        _delegates.clear()


app = FastAPI(lifespan=lifespan)


# ===========================================================================
# Request Bodies
# ===========================================================================


class MediaPrepareBody(BaseModel):
    port: int
    srtp_key: str  # base64
    srtp_salt: str  # base64
    srtp_crypto_suite: int = 0


class PrepareBody(BaseModel):
    target_address: str
    video: MediaPrepareBody
    audio: MediaPrepareBody


class VideoBody(BaseModel):
    pt: int
    max_bit_rate: int
    mtu: int = 1378
    width: int = 1280
    height: int = 720
    fps: int = 30


class AudioBody(BaseModel):
    pt: int
    max_bit_rate: int
    sample_rate: int = 16
    channels: int = 1


class StartBody(BaseModel):
    video: VideoBody
    audio: AudioBody | None = None


class ReconfigureBody(BaseModel):
    video: VideoBody | None = None


# ===========================================================================
# Helpers
# ===========================================================================


def _get_delegate(serial: str) -> StreamingDelegate:
    delegate = _delegates.get(serial)
    if delegate is None:
        raise HTTPException(404, "Camera not found")
    return delegate


def _decode_b64(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as e:
        raise HTTPException(422, f"Invalid base64 in {field}") from e


def _media_request(body: MediaPrepareBody, kind: str) -> MediaPrepareRequest:
    return MediaPrepareRequest(
        port=body.port,
        srtp_key=_decode_b64(body.srtp_key, f"{kind}.srtp_key"),
        srtp_salt=_decode_b64(body.srtp_salt, f"{kind}.srtp_salt"),
        srtp_crypto_suite=body.srtp_crypto_suite,
    )


def _media_response(media: MediaPrepareResponse) -> dict[str, Any]:
    return {
        "port": media.port,
        "ssrc": media.ssrc,
        "srtp_key": base64.b64encode(media.srtp_key).decode("ascii"),
        "srtp_salt": base64.b64encode(media.srtp_salt).decode("ascii"),
    }


async def _run_stream_request(delegate: StreamingDelegate, request: StreamRequest) -> None:
    """Run a stream request and turn its callback result into an HTTP error."""
    results: list[Exception | None] = []
    await delegate.handle_stream_request(request, results.append)
    error = results[0] if results else None
    if error is None:
        return
    if isinstance(error, StreamSessionError):
        raise HTTPException(404, str(error))
    if isinstance(error, FfmpegNotInstalledError):
        raise HTTPException(503, str(error))
    raise HTTPException(500, f"Stream failed to start: {error}")


# ===========================================================================
# Routes
# ===========================================================================


@app.get("/cameras")
async def list_cameras() -> list[dict[str, Any]]:
    return [
        {
            "serial": serial,
            "name": delegate.device.name,
            "sleeping": delegate.device.sleeping,
            "audio": delegate.device.audio_enabled,
            "pending": sorted(delegate.pending_sessions),
            "ongoing": sorted(delegate.ongoing_sessions),
        }
        for serial, delegate in _delegates.items()
    ]


@app.post("/cameras/{serial}/streams/{session_id}/prepare")
async def prepare_stream(serial: str, session_id: str, body: PrepareBody) -> dict[str, Any]:
    delegate = _get_delegate(serial)
    request = PrepareStreamRequest(
        session_id=session_id,
        target_address=body.target_address,
        video=_media_request(body.video, "video"),
        audio=_media_request(body.audio, "audio"),
    )
    try:
        response = await delegate.prepare_stream(request)
    except (PortReservationError, OSError) as e:
        log.error("Prepare failed for %s session %s: %s", serial, session_id, e)
        raise HTTPException(503, f"Could not reserve stream ports: {e}") from e
    return {"video": _media_response(response.video), "audio": _media_response(response.audio)}


@app.post("/cameras/{serial}/streams/{session_id}/start")
async def start_stream(serial: str, session_id: str, body: StartBody) -> dict[str, Any]:
    delegate = _get_delegate(serial)
    request = StreamRequest(
        session_id=session_id,
        type=StreamRequestType.START,
        video=VideoInfo(**body.video.model_dump()),
        audio=AudioInfo(**body.audio.model_dump()) if body.audio else None,
    )
    await _run_stream_request(delegate, request)
    return {"ok": True}


@app.post("/cameras/{serial}/streams/{session_id}/reconfigure")
async def reconfigure_stream(
    serial: str,
    session_id: str,
    body: ReconfigureBody | None = None,
) -> dict[str, Any]:
    delegate = _get_delegate(serial)
    video = VideoInfo(**body.video.model_dump()) if body and body.video else None
    request = StreamRequest(session_id=session_id, type=StreamRequestType.RECONFIGURE, video=video)
    await _run_stream_request(delegate, request)
    return {"ok": True}


@app.post("/cameras/{serial}/streams/{session_id}/stop")
async def stop_stream(serial: str, session_id: str) -> dict[str, Any]:
    delegate = _get_delegate(serial)
    await _run_stream_request(
        delegate, StreamRequest(session_id=session_id, type=StreamRequestType.STOP)
    )
    return {"ok": True}


@app.get("/cameras/{serial}/snapshot")
async def snapshot(serial: str) -> Response:
    delegate = _get_delegate(serial)
    try:
        image = await delegate.handle_snapshot_request()
    except SnapshotError as e:
        raise HTTPException(502, f"Snapshot failed: {e}") from e
    return Response(content=image, media_type="image/jpeg")


# ===========================================================================
# Entry Point
# ===========================================================================


def main() -> None:
    global _settings_path
    parser = argparse.ArgumentParser(description="Camera streaming session server")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8090, help="Listen port (default: 8090)")
    parser.add_argument(
        "--settings",
        type=pathlib.Path,
        default=None,
        help=f"Settings file (default: {settings_module.SETTINGS_FILE})",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _settings_path = args.settings
    uvicorn.run(app, host=args.host, port=args.port, log_level="debug" if args.debug else "info")


if __name__ == "__main__":
    main()
