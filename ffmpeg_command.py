"""FFmpeg command building and capability probing."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import base64
import logging
import subprocess
import threading

from settings import OFFLINE_IMAGE


log = logging.getLogger(__name__)

SRTP_SUITE = "AES_CM_128_HMAC_SHA1_80"
AUDIO_ENCODER = "libfdk_aac"

# HomeKit requests extremely low bitrates, so scale them before use
VIDEO_BITRATE_SCALE = 4
_AUDIO_PKT_SIZE = 188
_PROBE_TIMEOUT_SEC = 10

# Module state
_probe_lock = threading.Lock()
_codecs_cache: dict[str, str | None] = {}  # ffmpeg path -> `-codecs` output, None = not runnable
_load_settings: Callable[[], dict[str, Any]] = dict


@dataclass(slots=True)
class VideoInfo:
    pt: int
    max_bit_rate: int  # kbps
    mtu: int = 1378
    width: int = 1280
    height: int = 720
    fps: int = 30


@dataclass(slots=True)
class AudioInfo:
    pt: int
    max_bit_rate: int  # kbps
    sample_rate: int = 16  # kHz
    channels: int = 1


@dataclass(slots=True)
class SrtpTarget:
    """Where one RTP leg goes and how it is encrypted."""

    address: str
    port: int
    return_port: int
    ssrc: int
    srtp: bytes  # key and salt concatenated


def init(load_settings: Callable[[], dict[str, Any]]) -> None:
    """Initialize module with settings loader."""
    global _load_settings
    _load_settings = load_settings


def get_settings() -> dict[str, Any]:
    """Get current settings."""
    return _load_settings()


def get_ffmpeg_path() -> str:
    return get_settings().get("ffmpeg_path") or "ffmpeg"


def get_offline_image() -> str:
    return get_settings().get("offline_image") or str(OFFLINE_IMAGE)


# ===========================================================================
# Capability Probing
# ===========================================================================


def _probe_codecs(ffmpeg_path: str) -> str | None:
    """Run `ffmpeg -codecs` once per path. Returns None if ffmpeg can't run."""
    with _probe_lock:
        if ffmpeg_path in _codecs_cache:
            return _codecs_cache[ffmpeg_path]
    output: str | None = None
    try:
        result = subprocess.run(
            [ffmpeg_path, "-hide_banner", "-codecs"],
            capture_output=True,
            text=True,
            timeout=_PROBE_TIMEOUT_SEC,
        )
        if result.returncode == 0:
            output = result.stdout
        else:
            log.debug("%s -codecs exited with %d", ffmpeg_path, result.returncode)
    except (OSError, subprocess.TimeoutExpired) as e:
        log.debug("ffmpeg probe failed for %s: %s", ffmpeg_path, e)
    with _probe_lock:
        _codecs_cache[ffmpeg_path] = output
    return output


def is_ffmpeg_installed(ffmpeg_path: str | None = None) -> bool:
    return _probe_codecs(ffmpeg_path or get_ffmpeg_path()) is not None


def get_codecs_output(ffmpeg_path: str | None = None) -> str:
    return _probe_codecs(ffmpeg_path or get_ffmpeg_path()) or ""


def does_ffmpeg_support_codec(codec: str, ffmpeg_path: str | None = None) -> bool:
    if not codec:
        return False
    if codec == "copy":
        return True
    return codec in get_codecs_output(ffmpeg_path)


def clear_probe_cache() -> None:
    with _probe_lock:
        _codecs_cache.clear()


# ===========================================================================
# Command Building
# ===========================================================================


def scale_video_bitrate(max_bit_rate: int) -> int:
    return max_bit_rate * VIDEO_BITRATE_SCALE


def _build_srtp_output(payload_type: int, target: SrtpTarget, pkt_size: int) -> list[str]:
    """RTP muxer + SRTP output args for one leg."""
    url = (
        f"srtp://{target.address}:{target.port}"
        f"?rtcpport={target.port}&localrtcpport={target.return_port}&pkt_size={pkt_size}"
    )
    return [
        "-payload_type",
        str(payload_type),
        "-ssrc",
        str(target.ssrc),
        "-f",
        "rtp",
        "-srtp_out_suite",
        SRTP_SUITE,
        "-srtp_out_params",
        base64.b64encode(target.srtp).decode("ascii"),
        url,
    ]


def _build_video_args(video: VideoInfo) -> list[str]:
    """Copy the camera's H.264 stream; bitrate flags only bound the muxer."""
    bitrate = scale_video_bitrate(video.max_bit_rate)
    return [
        "-map",
        "0:0",
        "-c:v",
        "copy",
        "-b:v",
        f"{bitrate}k",
        "-bufsize",
        f"{bitrate}k",
        "-maxrate",
        f"{2 * bitrate}k",
        "-pix_fmt",
        "yuv420p",
        "-an",
    ]


def _build_audio_args(audio: AudioInfo) -> list[str]:
    return [
        "-map",
        "0:1",
        "-c:a",
        AUDIO_ENCODER,
        "-profile:a",
        "aac_eld",
        "-ac",
        str(audio.channels),
        "-vn",
        "-ar",
        f"{audio.sample_rate}k",
        "-b:a",
        f"{audio.max_bit_rate}k",
        "-flags",
        "+global_header",
    ]


def _build_offline_video_args(offline_image: str) -> list[str]:
    """Still-image source encoded as cheaply as possible."""
    return [
        "-loop",
        "1",
        "-i",
        offline_image,
        "-c:v",
        "libx264",
        "-preset",
        "ultrafast",
        "-tune",
        "stillimage",
        "-pix_fmt",
        "yuv420p",
        "-an",
    ]


def build_stream_ffmpeg_cmd(
    source_url: str,
    video: VideoInfo,
    video_target: SrtpTarget,
    audio: AudioInfo | None = None,
    audio_target: SrtpTarget | None = None,
    *,
    sleep: bool = False,
    audio_enabled: bool = False,
    audio_supported: bool = True,
    offline_image: str | None = None,
    ffmpeg_path: str | None = None,
) -> list[str]:
    """Build ffmpeg command for an SRTP stream session.

    The audio leg is added only when the encoder is available and the
    device's audio switch is on. In sleep mode the RTSP source is replaced by
    the offline image and nothing but that still-image video leg is emitted.
    """
    cmd = [ffmpeg_path or get_ffmpeg_path()]

    if sleep:
        cmd.extend(_build_offline_video_args(offline_image or get_offline_image()))
        cmd.extend(_build_srtp_output(video.pt, video_target, video.mtu))
        return cmd

    cmd.extend(["-i", source_url])
    cmd.extend(_build_video_args(video))
    cmd.extend(_build_srtp_output(video.pt, video_target, video.mtu))

    if audio is not None and audio_target is not None and audio_supported and audio_enabled:
        cmd.extend(_build_audio_args(audio))
        cmd.extend(_build_srtp_output(audio.pt, audio_target, _AUDIO_PKT_SIZE))

    return cmd


def build_snapshot_ffmpeg_cmd(url: str, ffmpeg_path: str | None = None) -> list[str]:
    """Grab a single frame as MJPEG on stdout."""
    return [ffmpeg_path or get_ffmpeg_path(), "-i", url, "-vframes", "1", "-f", "mjpeg", "-"]
