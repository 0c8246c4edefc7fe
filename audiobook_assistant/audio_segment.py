from __future__ import annotations

import asyncio
import contextlib
import math
import shutil
from pathlib import Path
from typing import Iterator
from uuid import uuid4

from loguru import logger

from audiobook_assistant.core.error_taxonomy import CleanupError, ExtractionError


def parse_time_range(start: object, end: object) -> tuple[float, float]:
    """Validate a requested [start, end) range in seconds."""
    try:
        start_f = float(start)  # type: ignore[arg-type]
        end_f = float(end)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValueError(f"Invalid time range: startTime={start!r}, endTime={end!r}")
    if not (math.isfinite(start_f) and math.isfinite(end_f)):
        raise ValueError(f"Invalid time range: startTime={start!r}, endTime={end!r}")
    start_f = max(0.0, start_f)
    if end_f <= start_f:
        raise ValueError(f"Invalid time range: endTime must be greater than startTime ({start_f} >= {end_f})")
    return start_f, end_f


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        err = CleanupError(f"Failed to remove temporary file {path}: {exc}")
        logger.warning(str(err))


@contextlib.contextmanager
def temporary_segment_paths(temp_dir: str | Path, suffix: str = ".mp3") -> Iterator[tuple[Path, Path]]:
    """Yield unique input/output paths and remove both files on exit, whatever happened."""
    base = Path(temp_dir)
    base.mkdir(parents=True, exist_ok=True)
    suffix = suffix if suffix.startswith(".") else f".{suffix}"
    input_path = base / f"{uuid4().hex}{suffix}"
    output_path = base / f"{uuid4().hex}{suffix}"
    try:
        yield input_path, output_path
    finally:
        # Each file is removed on its own so one failure never leaks the other.
        _remove_quietly(input_path)
        _remove_quietly(output_path)


async def _stop_process(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=3)
    except asyncio.TimeoutError:
        logger.warning("ffmpeg did not exit after kill")


async def cut_segment(
    input_path: str | Path,
    output_path: str | Path,
    start: float,
    end: float,
    *,
    timeout: float = 60.0,
) -> None:
    """Copy the [start, end) stretch of `input_path` into `output_path` without re-encoding."""
    ffmpeg = shutil.which("ffmpeg") or shutil.which("ffmpeg.exe")
    if not ffmpeg:
        raise ExtractionError("ffmpeg not found on PATH.")

    cmd = [
        ffmpeg,
        "-hide_banner",
        "-loglevel",
        "error",
        "-y",
        "-ss",
        f"{start:.3f}",
        "-i",
        str(input_path),
        "-t",
        f"{end - start:.3f}",
        "-vn",
        "-c",
        "copy",
        str(output_path),
    ]
    logger.debug(f"FFmpeg command: {' '.join(cmd)}")

    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        _, stderr_b = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _stop_process(proc)
        raise ExtractionError(f"ffmpeg timed out after {timeout:.0f}s")
    except asyncio.CancelledError:
        await _stop_process(proc)
        raise

    if proc.returncode != 0:
        err = (stderr_b or b"").decode("utf-8", errors="replace").strip()
        raise ExtractionError(err or f"ffmpeg exited with code {proc.returncode}")
    if not Path(output_path).exists() or Path(output_path).stat().st_size == 0:
        raise ExtractionError("ffmpeg produced no audio for the requested range")
