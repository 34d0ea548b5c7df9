"""One-shot snapshot capture."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import pathlib

from ffmpeg_command import build_snapshot_ffmpeg_cmd


log = logging.getLogger(__name__)

_SNAPSHOT_TIMEOUT_SEC = 10.0


class SnapshotError(Exception):
    pass


async def get_snapshot(url: str, ffmpeg_path: str | None = None) -> bytes:
    """Pull a single JPEG frame from `url`. Raises SnapshotError on any failure."""
    cmd = build_snapshot_ffmpeg_cmd(url, ffmpeg_path)
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise SnapshotError(f"Failed to run ffmpeg: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(), timeout=_SNAPSHOT_TIMEOUT_SEC
        )
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        raise SnapshotError(f"Snapshot timed out after {_SNAPSHOT_TIMEOUT_SEC:.0f}s") from None

    if process.returncode != 0 or not stdout:
        lines = stderr.decode(errors="replace").strip().splitlines()
        raise SnapshotError(lines[-1] if lines else f"ffmpeg exited with code {process.returncode}")
    log.debug("Snapshot: %d bytes", len(stdout))
    return stdout


async def read_offline_image(path: str | pathlib.Path) -> bytes:
    """Read the offline placeholder image."""
    try:
        return await asyncio.to_thread(pathlib.Path(path).read_bytes)
    except OSError as e:
        raise SnapshotError(f"Offline image unavailable: {e}") from e
