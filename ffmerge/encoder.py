import asyncio
import logging
import os
import re
import signal
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, List, Optional, Protocol

from .errors import EncoderExitError, EncoderNotFound, EncoderOutputMissing, EncoderTimeout


logger = logging.getLogger("ffmerge.encoder")

DIAGNOSTIC_TAIL_CHARS = 500


@dataclass(frozen=True)
class EncodeParams:
    image_path: Path
    audio_path: Path
    output_path: Path
    width: int
    height: int
    duration: Optional[float] = None
    label: str = "-"


class Encoder(Protocol):
    async def encode(self, params: EncodeParams) -> Path:
        ...


class FFmpegProgressParser:
    """Logs encoded media time every ``every_seconds`` of progress."""

    _TIME_PATTERN = re.compile(r"time=(\d+):(\d+):(\d+(?:\.\d+)?)")
    _SPEED_PATTERN = re.compile(r"speed=\s*(\d+\.?\d*)x")

    def __init__(self, label: str, every_seconds: float = 5.0) -> None:
        self._label = label
        self._every = every_seconds
        self._last_logged = 0.0

    def __call__(self, line: str) -> None:
        match = self._TIME_PATTERN.search(line)
        if not match:
            return
        hours, minutes, seconds = match.groups()
        try:
            elapsed = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
        except ValueError:
            return
        if elapsed < self._last_logged + self._every:
            return
        self._last_logged = elapsed
        speed = self._SPEED_PATTERN.search(line)
        if speed:
            logger.info("[%s] FFmpeg progress: %ds (speed=%sx)", self._label, int(elapsed), speed.group(1))
        else:
            logger.info("[%s] FFmpeg progress: %ds", self._label, int(elapsed))


def build_merge_command(params: EncodeParams, binary: str = "ffmpeg") -> List[str]:
    w, h = params.width, params.height
    cmd = [binary, "-y", "-loop", "1", "-i", str(params.image_path), "-i", str(params.audio_path)]
    if params.duration is not None:
        cmd += ["-t", f"{params.duration:.3f}"]
    cmd += [
        "-c:v", "libx264",
        "-preset", "medium",
        "-tune", "stillimage",
        "-c:a", "aac",
        "-b:a", "192k",
        "-pix_fmt", "yuv420p",
        "-vf", f"scale={w}:{h}:force_original_aspect_ratio=decrease,pad={w}:{h}:(ow-iw)/2:(oh-ih)/2",
        "-shortest",
        "-movflags", "+faststart",
        str(params.output_path),
    ]
    return cmd


class FFmpegEncoder:
    """Runs ffmpeg as an asyncio subprocess without blocking the event loop.

    Only the last ``DIAGNOSTIC_TAIL_CHARS`` characters of ffmpeg's output are
    kept for error reporting.
    """

    def __init__(self, binary: str = "ffmpeg", *, timeout: Optional[float] = None) -> None:
        self.binary = binary
        self.timeout = timeout if timeout else None

    async def encode(self, params: EncodeParams) -> Path:
        cmd = build_merge_command(params, self.binary)
        logger.info("[%s] FFmpeg command: %s", params.label, " ".join(cmd))

        tail: Deque[str] = deque()
        tail_len = 0

        def remember(line: str) -> None:
            nonlocal tail_len
            tail.append(line)
            tail_len += len(line)
            while tail and tail_len - len(tail[0]) >= DIAGNOSTIC_TAIL_CHARS:
                tail_len -= len(tail.popleft())

        progress = FFmpegProgressParser(params.label)
        returncode = await self._run(cmd, params.label, remember, progress)
        diagnostic = "".join(tail)[-DIAGNOSTIC_TAIL_CHARS:]

        if returncode != 0:
            logger.error("[%s] FFmpeg failed (code %s): %s", params.label, returncode, diagnostic)
            raise EncoderExitError(returncode, diagnostic)
        if not params.output_path.exists():
            logger.error("[%s] FFmpeg exited cleanly but produced no output", params.label)
            raise EncoderOutputMissing("FFmpeg produced no output file")
        logger.info("[%s] FFmpeg finished", params.label)
        return params.output_path

    async def _run(
        self,
        cmd: List[str],
        label: str,
        remember: Callable[[str], None],
        progress: Callable[[str], None],
    ) -> int:
        def _child_setup() -> None:
            signal.signal(signal.SIGTERM, signal.SIG_DFL)

        kwargs = {
            "stdin": asyncio.subprocess.DEVNULL,
            "stdout": asyncio.subprocess.DEVNULL,
            "stderr": asyncio.subprocess.PIPE,
        }
        if os.name != "nt":
            kwargs["preexec_fn"] = _child_setup

        try:
            proc = await asyncio.create_subprocess_exec(*cmd, **kwargs)
        except FileNotFoundError as exc:
            logger.error("[%s] FFmpeg binary not found: %s", label, self.binary)
            raise EncoderNotFound(f"FFmpeg binary not found: {self.binary}") from exc
        except PermissionError as exc:
            raise EncoderNotFound(f"FFmpeg binary is not executable: {self.binary}") from exc

        pump = asyncio.create_task(self._pump_stderr(proc.stderr, remember, progress))
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error("[%s] FFmpeg timed out after %s seconds", label, self.timeout)
            await self._terminate(proc)
            raise EncoderTimeout(f"FFmpeg timed out after {self.timeout:g} seconds")
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise
        finally:
            try:
                await asyncio.wait_for(pump, timeout=5)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pump.cancel()
        return proc.returncode

    @staticmethod
    async def _pump_stderr(
        stream: Optional[asyncio.StreamReader],
        remember: Callable[[str], None],
        progress: Callable[[str], None],
    ) -> None:
        if stream is None:
            return
        buffer = ""
        while True:
            # Small reads so \r-terminated stats lines are seen while encoding.
            chunk = await stream.read(1024)
            if not chunk:
                break
            buffer += chunk.decode("utf-8", errors="ignore")
            parts = re.split(r"[\r\n]", buffer)
            buffer = parts[-1]
            for line in parts[:-1]:
                if not line:
                    continue
                remember(line + "\n")
                progress(line)
        if buffer:
            remember(buffer)
            progress(buffer)

    @staticmethod
    async def _terminate(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=5)
        except asyncio.TimeoutError:
            proc.kill()
            try:
                await asyncio.wait_for(proc.wait(), timeout=1)
            except asyncio.TimeoutError:
                pass
