"""
Transcript client: cut a time window out of an audio file and transcribe it.
"""
from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Optional

import aiohttp
from loguru import logger

from audiobook_assistant.audio_segment import cut_segment, parse_time_range, temporary_segment_paths
from audiobook_assistant.config import Config
from audiobook_assistant.core.error_taxonomy import ExtractionError, classify_exception
from audiobook_assistant.core.logging_setup import emit_event
from audiobook_assistant.media import guess_mime_type
from audiobook_assistant.openai_stt import extract_text as _payload_text
from audiobook_assistant.openai_stt import transcribe_with_openai

_log = logger.bind(component="transcript")


def _segment_suffix(filename: str, mime_type: str) -> str:
    ext = Path(filename or "").suffix.lower()
    if ext:
        return ext
    if "wav" in (mime_type or ""):
        return ".wav"
    if "ogg" in (mime_type or ""):
        return ".ogg"
    if "mp4" in (mime_type or "") or "m4a" in (mime_type or ""):
        return ".m4a"
    return ".mp3"


class TranscriptClient:
    """Stateless apart from its HTTP session and settings."""

    def __init__(
        self,
        *,
        session: aiohttp.ClientSession | None = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        temp_dir: Optional[str | Path] = None,
        timeout_secs: Optional[float] = None,
    ):
        self._session = session
        self._api_key = api_key
        self._model = model or Config.TRANSCRIBE_MODEL
        self._base_url = base_url or Config.OPENAI_BASE_URL
        self._temp_dir = Path(temp_dir or Config.TEMP_DIR)
        self._timeout_secs = float(timeout_secs or Config.TIMEOUT_TRANSCRIBE_SEC)

    def attach_session(self, session: aiohttp.ClientSession | None) -> None:
        self._session = session

    @property
    def api_key(self) -> str:
        return self._api_key if self._api_key is not None else (Config.OPENAI_API_KEY or "")

    async def _post(self, content: bytes, filename: str, content_type: str) -> dict:
        async def _transcribe(session: aiohttp.ClientSession) -> dict:
            return await transcribe_with_openai(
                session=session,
                api_key=self.api_key,
                model=self._model,
                file_content=content,
                filename=filename,
                content_type=content_type,
                base_url=self._base_url,
                timeout_secs=self._timeout_secs,
            )

        if self._session:
            return await _transcribe(self._session)
        async with aiohttp.ClientSession() as session:
            return await _transcribe(session)

    async def _transcribe_range(
        self,
        input_path: Path,
        output_path: Path,
        start: float,
        end: float,
        suffix: str,
        label: str,
    ) -> str:
        _log.info(f"Extracting {start:.2f}s-{end:.2f}s from '{label}'")
        await cut_segment(input_path, output_path, start, end)
        segment = await asyncio.to_thread(output_path.read_bytes)
        try:
            payload = await self._post(segment, f"audio{suffix}", guess_mime_type(f"audio{suffix}"))
        except aiohttp.ClientError as exc:
            raise ExtractionError(f"Transcription request failed (connection): {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise ExtractionError("Transcription request timed out") from exc
        return _payload_text(payload)

    async def extract_text(
        self,
        audio: bytes,
        *,
        start: float,
        end: float,
        filename: str = "audio.mp3",
        mime_type: Optional[str] = None,
    ) -> str:
        """Transcribe [start, end) of in-memory `audio`; raises on any failure.

        The bytes are spooled to a temporary file for ffmpeg. Temporary files
        are removed before returning on every path.
        """
        start_f, end_f = parse_time_range(start, end)
        if not audio:
            raise ValueError("No audio provided")
        if not self.api_key:
            raise ExtractionError("OpenAI API key not configured.")

        suffix = _segment_suffix(filename, mime_type or guess_mime_type(filename))
        with temporary_segment_paths(self._temp_dir, suffix) as (input_path, output_path):
            await asyncio.to_thread(input_path.write_bytes, audio)
            return await self._transcribe_range(input_path, output_path, start_f, end_f, suffix, filename)

    async def extract_file(
        self,
        path: str | Path,
        *,
        start: float,
        end: float,
        mime_type: Optional[str] = None,
    ) -> str:
        """Transcribe [start, end) of an audio file already on disk; ffmpeg reads it in place."""
        start_f, end_f = parse_time_range(start, end)
        source = Path(path)
        if not source.is_file():
            raise ValueError(f"Audio file not found: {source.name}")
        if not self.api_key:
            raise ExtractionError("OpenAI API key not configured.")

        suffix = _segment_suffix(source.name, mime_type or guess_mime_type(source.name))
        with temporary_segment_paths(self._temp_dir, suffix) as (_spool_path, output_path):
            return await self._transcribe_range(source, output_path, start_f, end_f, suffix, source.name)

    async def transcribe(
        self,
        audio: bytes | str | Path,
        *,
        start: float,
        end: float,
        filename: str = "audio.mp3",
        mime_type: Optional[str] = None,
    ) -> str:
        """Transcribe bytes or a file path; failures are logged and come back as an empty string."""
        started = time.perf_counter()
        try:
            if isinstance(audio, (str, Path)):
                text = await self.extract_file(audio, start=start, end=end, mime_type=mime_type)
            else:
                text = await self.extract_text(audio, start=start, end=end, filename=filename, mime_type=mime_type)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            emit_event(
                _log,
                f"Text extraction error: {exc}",
                level="WARNING",
                event="transcript.extract",
                stage="transcribe",
                provider="openai",
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
                outcome="error",
                error_category=classify_exception(exc).value,
            )
            return ""
        emit_event(
            _log,
            f"Transcribed {start}s-{end}s ({len(text)} chars)",
            event="transcript.extract",
            stage="transcribe",
            provider="openai",
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
            outcome="ok",
        )
        return text
