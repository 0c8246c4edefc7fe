"""
Media source holder: the audio file currently selected for playback.
"""
from __future__ import annotations

import asyncio
import mimetypes
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from loguru import logger

from audiobook_assistant.core.error_taxonomy import UploadError

UPLOADS_URL_PREFIX = "/uploads/"

AUDIO_EXTENSIONS = {".mp3", ".m4a", ".m4b", ".wav", ".ogg", ".oga", ".opus", ".flac", ".aac", ".webm"}

_EXTRA_MIME_TYPES = {
    ".m4a": "audio/mp4",
    ".m4b": "audio/mp4",
    ".opus": "audio/ogg",
    ".oga": "audio/ogg",
    ".flac": "audio/flac",
    ".aac": "audio/aac",
    ".webm": "audio/webm",
}


def guess_mime_type(filename: str) -> str:
    ext = Path(filename or "").suffix.lower()
    if ext in _EXTRA_MIME_TYPES:
        return _EXTRA_MIME_TYPES[ext]
    guessed, _ = mimetypes.guess_type(filename or "")
    return guessed or "application/octet-stream"


def is_audio_file(filename: str, content_type: str | None = None) -> bool:
    """Accept `audio/*` uploads, falling back to the extension when the browser sends a generic type."""
    ctype = (content_type or "").split(";")[0].strip().lower()
    if ctype.startswith("audio/"):
        return True
    return Path(filename or "").suffix.lower() in AUDIO_EXTENSIONS


@dataclass
class AudioSource:
    raw_bytes: bytes
    mime_type: str
    display_name: str
    playable_handle: Optional[str]
    path: Optional[Path] = None
    _released: bool = field(default=False, repr=False)

    @property
    def released(self) -> bool:
        return self._released

    @property
    def size(self) -> int:
        return len(self.raw_bytes)

    def release(self) -> None:
        """Invalidate the playable handle; the holder is discarded afterwards."""
        if self._released:
            return
        self._released = True
        self.playable_handle = None
        self.raw_bytes = b""

    def to_public(self) -> dict:
        return {
            "fileName": self.display_name,
            "fileUrl": self.playable_handle,
            "mimeType": self.mime_type,
            "size": self.size,
        }


def resolve_upload_path(upload_dir: Path, file_url: str) -> Path:
    """Map a `/uploads/<name>` URL back onto the upload directory."""
    raw = (file_url or "").strip()
    if not raw:
        raise UploadError("Missing fileUrl")
    name = raw[len(UPLOADS_URL_PREFIX):] if raw.startswith(UPLOADS_URL_PREFIX) else raw
    if not name or Path(name).name != name or name in {".", ".."}:
        raise UploadError(f"Invalid upload reference: {raw}")
    return upload_dir / name


async def load_uploaded_source(upload_dir: Path, file_url: str, display_name: str | None = None) -> AudioSource:
    path = resolve_upload_path(upload_dir, file_url)
    if not path.is_file():
        raise FileNotFoundError(f"Uploaded file not found: {path.name}")
    name = (display_name or "").strip() or path.name
    if not is_audio_file(name) and not is_audio_file(path.name):
        raise UploadError(f"Unsupported file type: {Path(name).suffix or name}")
    source = AudioSource(
        raw_bytes=await asyncio.to_thread(path.read_bytes),
        mime_type=guess_mime_type(path.name),
        display_name=name,
        playable_handle=f"{UPLOADS_URL_PREFIX}{path.name}",
        path=path,
    )
    logger.info(f"Loaded audio source '{source.display_name}' ({source.size} bytes, {source.mime_type})")
    return source


async def read_duration(path: str | Path, *, timeout: float = 15.0) -> float:
    """Return the media duration in seconds via ffprobe, or 0.0 when it cannot be determined."""
    ffprobe = shutil.which("ffprobe") or shutil.which("ffprobe.exe")
    if not ffprobe:
        logger.debug("ffprobe not found on PATH; duration will come from the player")
        return 0.0

    cmd = [
        ffprobe,
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        str(path),
    ]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout_b, stderr_b = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"ffprobe timed out for {path}")
        return 0.0
    except OSError as exc:
        logger.warning(f"ffprobe failed to start: {exc}")
        return 0.0

    if proc.returncode != 0:
        err = (stderr_b or b"").decode("utf-8", errors="replace").strip()
        logger.warning(f"ffprobe exited with code {proc.returncode}: {err[:200]}")
        return 0.0
    try:
        return max(0.0, float((stdout_b or b"").decode("utf-8", errors="replace").strip()))
    except ValueError:
        return 0.0
