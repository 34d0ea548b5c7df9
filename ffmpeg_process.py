"""Supervised ffmpeg process for one streaming session."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Sequence

import asyncio
import contextlib
import logging
import re


log = logging.getLogger(__name__)

# Timing constants
_START_TIMEOUT_SEC = 3.0
_KILL_TIMEOUT_SEC = 5.0

_READ_CHUNK_BYTES = 4096

# Any of these on stderr means ffmpeg is pushing frames
_START_MARKERS = ("frame=", "fps=", "size=")
_BENIGN_EXIT_MARKERS = ("Exiting normally", "SIGTERM")

# ffmpeg ends progress lines with CR, regular log lines with LF
_LINE_SPLIT_RE = re.compile(rb"[\r\n]")

StartCallback = Callable[[Exception | None], None]


class StreamStartError(Exception):
    pass


class _StartSignal:
    """Consume-once slot for the start callback."""

    __slots__ = ("_callback", "_fired")

    def __init__(self, callback: StartCallback | None) -> None:
        self._callback = callback
        self._fired = False

    @property
    def fired(self) -> bool:
        return self._fired

    def fire(self, error: Exception | None = None) -> None:
        if self._fired:
            raise RuntimeError("start signal already fired")
        self._fired = True
        if self._callback is not None:
            self._callback(error)


async def _iter_lines(stream: asyncio.StreamReader) -> AsyncIterator[str]:
    """Yield non-empty lines from a byte stream, splitting on CR or LF."""
    buf = b""
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            break
        *lines, buf = _LINE_SPLIT_RE.split(buf + chunk)
        for line in lines:
            text = line.decode(errors="replace").strip()
            if text:
                yield text
    text = buf.decode(errors="replace").strip()
    if text:
        yield text


class FfmpegProcess:
    """One running ffmpeg process plus its start/exit bookkeeping.

    `on_started` fires exactly once over the lifetime of the process: with
    None when a progress line shows up on stderr or the start timeout passes,
    or with a StreamStartError when ffmpeg fails to spawn or goes away before
    that (a stop during spawn included).
    `on_terminated` fires once after the process is gone, whatever the cause.
    """

    def __init__(
        self,
        title: str,
        cmd: Sequence[str],
        on_started: StartCallback | None = None,
        on_terminated: Callable[[], None] | None = None,
        debug_output: bool = False,
    ) -> None:
        self.title = title
        self.cmd = tuple(cmd)
        self._start_signal = _StartSignal(on_started)
        self._on_terminated = on_terminated
        self._debug_output = debug_output
        self._process: asyncio.subprocess.Process | None = None
        self._monitor_task: asyncio.Task[None] | None = None
        self._start_timer: asyncio.TimerHandle | None = None
        self._kill_timer: asyncio.TimerHandle | None = None
        self._started = False
        self._stopping = False
        self._terminated = False
        self._last_output = ""

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def started(self) -> bool:
        """True once a progress line has been seen."""
        return self._started

    @property
    def last_output(self) -> str:
        return self._last_output

    def _log_output(self, text: str) -> None:
        log.log(logging.INFO if self._debug_output else logging.DEBUG, "%s: %s", self.title, text)

    def _fire_start(self, error: Exception | None) -> None:
        if not self._start_signal.fired:
            self._start_signal.fire(error)

    def _cancel_timers(self) -> None:
        if self._start_timer is not None:
            self._start_timer.cancel()
            self._start_timer = None
        if self._kill_timer is not None:
            self._kill_timer.cancel()
            self._kill_timer = None

    def _terminate(self) -> None:
        if self._terminated:
            return
        self._terminated = True
        if self._on_terminated is not None:
            self._on_terminated()

    # =======================================================================
    # Lifecycle
    # =======================================================================

    async def start(self) -> None:
        """Spawn ffmpeg and begin monitoring it. Spawn errors go to `on_started`."""
        if self._process is not None or self._terminated:
            raise RuntimeError(f"{self.title} process already started")
        self._log_output(f"command: {' '.join(self.cmd)}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            log.error("[%s] Failed to start stream: %s", self.title, e)
            self._fire_start(StreamStartError("ffmpeg process creation failed!"))
            self._terminate()
            return

        if self._stopping:
            log.debug(
                "%s stopped while spawning, terminating pid %d", self.title, self._process.pid
            )
            self._fire_start(StreamStartError("Stream stopped before start"))
            self._send_sigterm(self._process)
            self._monitor_task = asyncio.create_task(self._monitor())
            return

        loop = asyncio.get_running_loop()
        self._start_timer = loop.call_later(_START_TIMEOUT_SEC, self._on_start_timeout)
        self._monitor_task = asyncio.create_task(self._monitor())

    def _on_start_timeout(self) -> None:
        self._start_timer = None
        if not self._start_signal.fired:
            log.debug("%s: Stream start timeout reached, calling callback", self.title)
            self._fire_start(None)

    async def _monitor(self) -> None:
        process = self._process
        assert process is not None and process.stderr is not None
        try:
            async for line in _iter_lines(process.stderr):
                self._last_output = line
                self._log_output(line)
                if not self._started and any(m in line for m in _START_MARKERS):
                    self._started = True
                    if self._start_timer is not None:
                        self._start_timer.cancel()
                        self._start_timer = None
                    self._fire_start(None)
            await process.wait()
        except Exception as e:
            log.error("%s process error: %s", self.title, e)
            self._cancel_timers()
            self._fire_start(StreamStartError(f"FFmpeg process error: {e}"))
            self._stopping = True
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
            self._terminate()
            return
        self._handle_exit(process.returncode)

    def _handle_exit(self, returncode: int | None) -> None:
        self._cancel_timers()
        # Negative return codes mean the process was killed by a signal
        if returncode is not None and returncode > 0 and not self._stopping:
            output = self._last_output
            if output and not any(m in output for m in _BENIGN_EXIT_MARKERS):
                log.error("%s exited with error: %s", self.title, output)
            self._fire_start(StreamStartError(output or "FFmpeg process failed to start"))
        elif not self._start_signal.fired:
            self._fire_start(
                StreamStartError(f"FFmpeg exited before stream start (code {returncode})")
            )
        else:
            log.debug("%s exited with code %s", self.title, returncode)
        self._terminate()

    def stop(self) -> None:
        """Ask ffmpeg to exit (SIGTERM), then SIGKILL if it lingers. Idempotent.

        A stop that lands while the process is still spawning is remembered,
        and `start()` terminates the process as soon as it exists.
        """
        process = self._process
        if self._stopping or self._terminated:
            return
        if process is not None and process.returncode is not None:
            return
        self._stopping = True
        if process is not None:
            self._send_sigterm(process)

    def _send_sigterm(self, process: asyncio.subprocess.Process) -> None:
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        loop = asyncio.get_running_loop()
        self._kill_timer = loop.call_later(_KILL_TIMEOUT_SEC, self._kill)

    def _kill(self) -> None:
        self._kill_timer = None
        process = self._process
        if process is None or process.returncode is not None:
            return
        log.warning("%s did not exit after SIGTERM, killing", self.title)
        with contextlib.suppress(ProcessLookupError):
            process.kill()

    async def wait(self) -> int | None:
        """Wait for the process to exit and its exit handling to finish."""
        if self._monitor_task is not None:
            await self._monitor_task
        return self.returncode
