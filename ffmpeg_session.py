"""Streaming session lifecycle management."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType

import asyncio
import logging
import secrets

from device import DeviceStreamingContext
from ffmpeg_command import (
    AUDIO_ENCODER,
    AudioInfo,
    SrtpTarget,
    VideoInfo,
    build_stream_ffmpeg_cmd,
    does_ffmpeg_support_codec,
    get_ffmpeg_path,
    get_offline_image,
    get_settings,
    is_ffmpeg_installed,
)
from ffmpeg_process import FfmpegProcess
from rtp import PortBroker, RtpSplitter
from snapshot import SnapshotError, get_snapshot, read_offline_image


log = logging.getLogger(__name__)

StreamCallback = Callable[[Exception | None], None]


class FfmpegNotInstalledError(Exception):
    pass


class StreamSessionError(Exception):
    pass


class StreamRequestType(str, Enum):
    START = "start"
    RECONFIGURE = "reconfigure"
    STOP = "stop"


# ===========================================================================
# Request/Response Shapes
# ===========================================================================


@dataclass(slots=True)
class MediaPrepareRequest:
    port: int
    srtp_key: bytes
    srtp_salt: bytes
    srtp_crypto_suite: int = 0  # AES_CM_128_HMAC_SHA1_80


@dataclass(slots=True)
class PrepareStreamRequest:
    session_id: str
    target_address: str
    video: MediaPrepareRequest
    audio: MediaPrepareRequest


@dataclass(slots=True)
class MediaPrepareResponse:
    port: int
    ssrc: int
    srtp_key: bytes
    srtp_salt: bytes


@dataclass(slots=True)
class PrepareStreamResponse:
    video: MediaPrepareResponse
    audio: MediaPrepareResponse


@dataclass(slots=True)
class StreamRequest:
    session_id: str
    type: StreamRequestType
    video: VideoInfo | None = None
    audio: AudioInfo | None = None


@dataclass(slots=True)
class SessionInfo:
    """Transport parameters negotiated for one session."""

    address: str  # address of the viewer

    video_port: int
    return_video_port: int
    video_crypto_suite: int
    video_srtp: bytes  # key and salt concatenated
    video_ssrc: int

    audio_port: int
    return_audio_port: int
    two_way_audio_port: int
    audio_server_port: int
    audio_crypto_suite: int
    audio_srtp: bytes
    audio_ssrc: int

    rtp_splitter: RtpSplitter
    reserved_ports: list[int]

    def video_target(self) -> SrtpTarget:
        return SrtpTarget(
            self.address, self.video_port, self.return_video_port, self.video_ssrc, self.video_srtp
        )

    def audio_target(self) -> SrtpTarget:
        return SrtpTarget(
            self.address, self.audio_port, self.return_audio_port, self.audio_ssrc, self.audio_srtp
        )


@dataclass(slots=True)
class _OngoingSession:
    info: SessionInfo
    process: FfmpegProcess


def generate_ssrc() -> int:
    """Random RTP synchronisation source in [0, 2**24)."""
    return secrets.randbits(24)


# ===========================================================================
# Streaming Delegate
# ===========================================================================


class StreamingDelegate:
    """Negotiates, starts and tears down stream sessions for one camera.

    A session sits in `pending` from prepare until start, then in `ongoing`
    while ffmpeg runs; stop, process exit or shutdown remove it from both and
    release its audio splitter and ports. All methods run on the event loop
    thread, so the registries need no lock.
    """

    def __init__(
        self,
        device: DeviceStreamingContext,
        port_broker: PortBroker | None = None,
        on_session_ended: Callable[[str], None] | None = None,
    ) -> None:
        self.device = device
        self.ffmpeg_installed = True
        self.audio_codec_supported = True
        self._ports = port_broker or PortBroker()
        self._on_session_ended = on_session_ended
        self._missing_codec_logged = False
        self._pending: dict[str, SessionInfo] = {}
        self._ongoing: dict[str, _OngoingSession] = {}

    @property
    def pending_sessions(self) -> Mapping[str, SessionInfo]:
        return MappingProxyType(self._pending)

    @property
    def ongoing_sessions(self) -> Mapping[str, FfmpegProcess]:
        return MappingProxyType({sid: s.process for sid, s in self._ongoing.items()})

    async def initialize(self) -> None:
        """Probe the ffmpeg binary and the audio encoder once."""
        ffmpeg_path = get_ffmpeg_path()
        self.ffmpeg_installed = await asyncio.to_thread(is_ffmpeg_installed, ffmpeg_path)
        if not self.ffmpeg_installed:
            log.error(
                "FFmpeg not found at %s, streams for %s will fail", ffmpeg_path, self.device.name
            )
            return
        self.audio_codec_supported = await asyncio.to_thread(
            does_ffmpeg_support_codec, AUDIO_ENCODER, ffmpeg_path
        )
        log.info(
            "FFmpeg ready for %s (%s available: %s)",
            self.device.name,
            AUDIO_ENCODER,
            self.audio_codec_supported,
        )

    # =======================================================================
    # Snapshots
    # =======================================================================

    async def handle_snapshot_request(self) -> bytes:
        """Return a JPEG: the offline image while sleeping, else a live frame."""
        if self.device.sleeping:
            return await read_offline_image(get_offline_image())
        try:
            return await get_snapshot(self.device.rtsp_url, get_ffmpeg_path())
        except SnapshotError as e:
            log.error("Error fetching snapshot for %s: %s", self.device.name, e)
            raise

    # =======================================================================
    # Prepare
    # =======================================================================

    async def _reserve(self, reserved: list[int], count: int = 1) -> int:
        ports = await self._ports.reserve_ports(count)
        reserved.extend(ports)
        return ports[0]

    async def prepare_stream(self, request: PrepareStreamRequest) -> PrepareStreamResponse:
        """Allocate ports and SSRCs for a new session and record it as pending.

        Raises PortReservationError (or OSError from the audio splitter bind)
        with nothing recorded and every reserved port released.
        """
        session_id = request.session_id
        video = request.video
        audio = request.audio
        reserved: list[int] = []
        splitter: RtpSplitter | None = None
        try:
            return_video_port = await self._reserve(reserved)
            return_audio_port = await self._reserve(reserved)
            two_way_audio_port = await self._reserve(reserved, 2)
            audio_server_port = await self._reserve(reserved)
            splitter = RtpSplitter(audio_server_port, return_audio_port, two_way_audio_port)
            await splitter.open()
        except Exception:
            if splitter is not None:
                splitter.close()
            self._ports.release_ports(reserved)
            raise

        # No await between this check and the insert below
        if session_id in self._pending or session_id in self._ongoing:
            log.warning("Session %s prepared again, dropping previous state", session_id)
            self.stop_stream(session_id)

        video_ssrc = generate_ssrc()
        audio_ssrc = generate_ssrc()
        while audio_ssrc == video_ssrc:
            audio_ssrc = generate_ssrc()

        self._pending[session_id] = SessionInfo(
            address=request.target_address,
            video_port=video.port,
            return_video_port=return_video_port,
            video_crypto_suite=video.srtp_crypto_suite,
            video_srtp=video.srtp_key + video.srtp_salt,
            video_ssrc=video_ssrc,
            audio_port=audio.port,
            return_audio_port=return_audio_port,
            two_way_audio_port=two_way_audio_port,
            audio_server_port=audio_server_port,
            # Taken from the video stream, as negotiated upstream; both legs
            # are emitted with the same suite so this has no wire effect.
            audio_crypto_suite=video.srtp_crypto_suite,
            audio_srtp=audio.srtp_key + audio.srtp_salt,
            audio_ssrc=audio_ssrc,
            rtp_splitter=splitter,
            reserved_ports=reserved,
        )
        log.debug("Prepared session %s for %s: ports %s", session_id, self.device.name, reserved)

        return PrepareStreamResponse(
            video=MediaPrepareResponse(
                port=return_video_port,
                ssrc=video_ssrc,
                srtp_key=video.srtp_key,
                srtp_salt=video.srtp_salt,
            ),
            audio=MediaPrepareResponse(
                port=audio_server_port,
                ssrc=audio_ssrc,
                srtp_key=audio.srtp_key,
                srtp_salt=audio.srtp_salt,
            ),
        )

    # =======================================================================
    # Start/Reconfigure/Stop
    # =======================================================================

    def build_command(
        self,
        info: SessionInfo,
        video: VideoInfo,
        audio: AudioInfo | None,
    ) -> list[str]:
        """Build the ffmpeg command from current device state."""
        if not self.audio_codec_supported and not self._missing_codec_logged:
            self._missing_codec_logged = True
            log.error(
                "This version of FFmpeg does not support the audio codec '%s'. "
                "You may need to recompile FFmpeg using '--enable-libfdk-aac'.",
                AUDIO_ENCODER,
            )
        return build_stream_ffmpeg_cmd(
            self.device.rtsp_url,
            video,
            info.video_target(),
            audio,
            info.audio_target(),
            sleep=self.device.sleeping,
            audio_enabled=self.device.audio_enabled,
            audio_supported=self.audio_codec_supported,
        )

    async def handle_stream_request(self, request: StreamRequest, callback: StreamCallback) -> None:
        """Dispatch a start/reconfigure/stop request. `callback` fires exactly once."""
        if request.type == StreamRequestType.START:
            await self._start_stream(request, callback)
        elif request.type == StreamRequestType.RECONFIGURE:
            log.debug("(Not implemented) Received request to reconfigure to: %s", request.video)
            callback(None)
        elif request.type == StreamRequestType.STOP:
            self.stop_stream(request.session_id)
            callback(None)
        else:
            callback(StreamSessionError(f"Unknown stream request type {request.type!r}"))

    async def _start_stream(self, request: StreamRequest, callback: StreamCallback) -> None:
        session_id = request.session_id
        info = self._pending.get(session_id)
        if info is None or request.video is None:
            log.warning("Start requested for unknown session %s", session_id)
            callback(StreamSessionError(f"No prepared session {session_id}"))
            return

        if not self.ffmpeg_installed:
            log.error("FFmpeg is not installed. Please install it and restart.")
            callback(FfmpegNotInstalledError("FFmpeg not installed"))
            return

        cmd = self.build_command(info, request.video, request.audio)
        started: asyncio.Future[Exception | None] = asyncio.get_running_loop().create_future()

        def on_started(error: Exception | None) -> None:
            if not started.done():
                started.set_result(error)
            callback(error)

        def on_terminated() -> None:
            self._on_process_terminated(session_id, process)

        process = FfmpegProcess(
            "STREAM",
            cmd,
            on_started,
            on_terminated,
            debug_output=bool(get_settings().get("ffmpeg_debug_output", False)),
        )
        del self._pending[session_id]
        self._ongoing[session_id] = _OngoingSession(info, process)

        await process.start()
        error = await started
        entry = self._ongoing.get(session_id)
        if error is not None:
            log.warning("Streaming failed to start for %s: %s", self.device.name, error)
        elif entry is None or entry.process is not process:
            log.info("Session %s stopped while streaming was starting", session_id)
        else:
            log.info("Streaming started for %s", self.device.name)

    def _on_process_terminated(self, session_id: str, process: FfmpegProcess) -> None:
        entry = self._ongoing.get(session_id)
        if entry is None or entry.process is not process:
            return
        self.stop_stream(session_id)
        if self._on_session_ended is not None:
            self._on_session_ended(session_id)

    def stop_stream(self, session_id: str) -> None:
        """Tear down a session in either registry. No-op if it is already gone."""
        ongoing = self._ongoing.pop(session_id, None)
        pending = self._pending.pop(session_id, None)
        info = ongoing.info if ongoing is not None else pending

        if ongoing is not None:
            try:
                ongoing.process.stop()
            except OSError as e:
                log.error("Error occurred terminating the video process: %s", e)
            log.info("Streaming stopped for %s", self.device.name)

        if info is not None:
            info.rtp_splitter.close()
            self._ports.release_ports(info.reserved_ports)

    def shutdown(self) -> None:
        """Stop every pending and ongoing session."""
        for session_id in [*self._pending, *self._ongoing]:
            self.stop_stream(session_id)

