"""
Utility functions for media transforms.

FFmpeg command execution and ffprobe helpers.
"""
import asyncio
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional, Tuple, Union

from shared.errors import MediaTransformError, RetryableError
from shared.logging import get_logger
from shared.retry import retry_with_backoff

logger = get_logger("media_transform.utils")

PathLike = Union[str, Path]


def check_ffmpeg_available() -> bool:
    """Check if FFmpeg is installed and available in PATH."""
    return shutil.which("ffmpeg") is not None


@retry_with_backoff(max_attempts=2, base_delay=2)
async def run_ffmpeg_command(cmd: List[str], job_id: Optional[str] = None, timeout: int = 300) -> None:
    """
    Run an FFmpeg command.

    Args:
        cmd: FFmpeg command as list of strings
        job_id: Job ID for logging
        timeout: Timeout in seconds (default: 300)

    Raises:
        RetryableError: Non-zero exit or timeout (retried once)
        MediaTransformError: FFmpeg could not be started
    """
    logger.info(
        "Running FFmpeg command",
        extra={"job_id": job_id, "command": " ".join(cmd)}
    )

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
    except (FileNotFoundError, PermissionError) as e:
        raise MediaTransformError(f"FFmpeg could not be started: {e}", job_id=job_id) from e

    try:
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        raise RetryableError(f"FFmpeg command timeout after {timeout}s", job_id=job_id)

    if process.returncode != 0:
        error_msg = stderr.decode(errors="replace")[-2000:] if stderr else "Unknown FFmpeg error"
        logger.error(
            "FFmpeg command failed",
            extra={"job_id": job_id, "error": error_msg}
        )
        raise RetryableError(f"FFmpeg command failed: {error_msg}", job_id=job_id)


def _ffprobe(args: List[str], timeout: int = 10) -> Optional[str]:
    try:
        result = subprocess.run(
            ["ffprobe", "-v", "error", *args],
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout
        )
        return result.stdout.strip()
    except (FileNotFoundError, subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
        logger.warning(f"ffprobe failed: {e}", extra={"args": " ".join(args)})
        return None


def probe_duration(path: PathLike, default: float = 0.0) -> float:
    """Container duration in seconds, or default if it cannot be read."""
    output = _ffprobe([
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(path)
    ])
    try:
        return float(output) if output else default
    except ValueError:
        return default


def has_audio_stream(path: PathLike) -> bool:
    output = _ffprobe([
        "-select_streams", "a",
        "-show_entries", "stream=index",
        "-of", "csv=p=0",
        str(path)
    ])
    return bool(output)


def probe_dimensions(path: PathLike, default: Tuple[int, int] = (720, 1280)) -> Tuple[int, int]:
    """(width, height) of the first video stream."""
    output = _ffprobe([
        "-select_streams", "v:0",
        "-show_entries", "stream=width,height",
        "-of", "csv=p=0:s=x",
        str(path)
    ])
    try:
        width, height = (int(v) for v in output.split("x")[:2])
        if width > 0 and height > 0:
            return width, height
    except (AttributeError, ValueError):
        pass
    return default
