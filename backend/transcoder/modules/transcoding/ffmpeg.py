"""FFmpeg encode engine adapter.

Runs ffmpeg as a child process and reports its lifecycle as a stream of
``EncodeEvent`` values: one STARTED, any number of PROGRESS, then exactly one
terminal COMPLETED or FAILED.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional

logger = logging.getLogger(__name__)

AUDIO_CODEC = "aac"
DEFAULT_FORMAT = "mp4"

# Keep this many stderr lines for the failure message
STDERR_TAIL_LINES = 20


@dataclass(frozen=True)
class OutputProfile:
    """How a requested format is written: file extension, muxer and codec."""
    extension: str
    muxer: str
    video_codec: str


FORMAT_PROFILES = {
    "mp4": OutputProfile(extension="mp4", muxer="mp4", video_codec="libx264"),
    "m4v": OutputProfile(extension="m4v", muxer="mp4", video_codec="libx264"),
    "mov": OutputProfile(extension="mov", muxer="mov", video_codec="libx264"),
    "mkv": OutputProfile(extension="mkv", muxer="matroska", video_codec="libx265"),
    "avi": OutputProfile(extension="avi", muxer="avi", video_codec="mpeg4"),
}


def select_profile(requested_format: str) -> OutputProfile:
    """Map a requested format to its output profile.

    Unknown formats fall back to the mp4/H.264 profile instead of failing.
    """
    normalized = (requested_format or "").strip().lower().lstrip(".")
    return FORMAT_PROFILES.get(normalized, FORMAT_PROFILES[DEFAULT_FORMAT])


def select_codec(requested_format: str) -> str:
    return select_profile(requested_format).video_codec


class EncodeEventType(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class EncodeEvent:
    type: EncodeEventType
    progress: int = 0
    message: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.type in (EncodeEventType.COMPLETED, EncodeEventType.FAILED)


@dataclass
class FFmpegConfig:
    """Configuration for one FFmpeg encode."""
    input_path: str
    output_path: str
    muxer: str
    video_codec: str
    bitrate: str = ""
    resolution: str = ""
    audio_codec: str = AUDIO_CODEC
    audio_bitrate: str = "128k"


def build_transcode_command(ffmpeg_path: str, config: FFmpegConfig) -> list[str]:
    """Build the FFmpeg argument list.

    Bitrate and resolution are passed through untouched; ffmpeg itself
    rejects values it cannot parse.
    """
    cmd = [
        ffmpeg_path,
        "-y",
        "-hide_banner",
        "-nostats",
        "-progress", "pipe:1",
        "-i", config.input_path,
        "-c:v", config.video_codec,
    ]
    if config.bitrate:
        cmd.extend(["-b:v", config.bitrate])
    if config.resolution:
        cmd.extend(["-s", config.resolution])

    cmd.extend(["-c:a", config.audio_codec, "-b:a", config.audio_bitrate])

    if config.muxer in ("mp4", "mov"):
        cmd.extend(["-movflags", "+faststart"])

    cmd.extend(["-f", config.muxer, config.output_path])
    return cmd


def parse_progress_line(line: str, duration: Optional[float]) -> Optional[int]:
    """Turn an ``-progress`` key=value line into a percentage.

    Only ``out_time_us`` / ``out_time_ms`` lines carry position (both are in
    microseconds). Returns None for other lines or when the input duration is
    unknown. Capped at 99; 100 is reserved for a completed encode.
    """
    if not duration or duration <= 0:
        return None
    key, sep, value = line.strip().partition("=")
    if not sep or key not in ("out_time_us", "out_time_ms"):
        return None
    try:
        position = int(value) / 1_000_000
    except ValueError:
        return None
    if position < 0:
        return None
    return min(99, int(position / duration * 100))


class FFmpegTranscoder:
    """Asyncio FFmpeg runner."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", ffprobe_path: str = "ffprobe"):
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path

    async def probe_duration(self, input_path: str) -> Optional[float]:
        """Input duration in seconds, or None if ffprobe cannot tell."""
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            input_path,
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await process.communicate()
        except OSError as e:
            logger.warning(f"ffprobe unavailable: {e}")
            return None

        if process.returncode != 0:
            return None
        try:
            return float(stdout.decode().strip())
        except ValueError:
            return None

    async def encode(self, config: FFmpegConfig) -> AsyncIterator[EncodeEvent]:
        """Run one encode, yielding its lifecycle events.

        Closing the generator early (e.g. on timeout) kills ffmpeg.
        """
        duration = await self.probe_duration(config.input_path)
        cmd = build_transcode_command(self.ffmpeg_path, config)
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            yield EncodeEvent(EncodeEventType.FAILED, message=f"Could not start ffmpeg: {e}")
            return

        stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        stderr_task = asyncio.create_task(self._collect_stderr(process, stderr_tail))

        try:
            yield EncodeEvent(EncodeEventType.STARTED)

            last_progress = 0
            async for raw_line in process.stdout:
                progress = parse_progress_line(raw_line.decode(errors="replace"), duration)
                if progress is not None and progress > last_progress:
                    last_progress = progress
                    yield EncodeEvent(EncodeEventType.PROGRESS, progress=progress)

            returncode = await process.wait()
            await stderr_task

            if returncode == 0:
                yield EncodeEvent(EncodeEventType.COMPLETED, progress=100)
            else:
                message = "\n".join(stderr_tail) or f"ffmpeg exited with code {returncode}"
                yield EncodeEvent(EncodeEventType.FAILED, message=message)
        finally:
            if process.returncode is None:
                logger.warning(f"Killing ffmpeg process {process.pid}")
                process.kill()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()

    async def _collect_stderr(self, process: asyncio.subprocess.Process, tail: deque) -> None:
        async for raw_line in process.stderr:
            line = raw_line.decode(errors="replace").rstrip()
            if line:
                tail.append(line)
