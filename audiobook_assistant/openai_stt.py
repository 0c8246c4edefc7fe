"""
OpenAI speech-to-text over plain HTTP.
"""
from __future__ import annotations

import json
from typing import Any, BinaryIO

import aiohttp
from loguru import logger

from audiobook_assistant.core.error_taxonomy import ExtractionError


_TRANSCRIPTIONS_PATH = "/audio/transcriptions"


def extract_text(payload: dict[str, Any]) -> str:
    text = (payload.get("text") or "").strip()
    if text:
        return text
    segments = payload.get("segments") or []
    if isinstance(segments, list):
        return " ".join(
            str(seg.get("text", "")).strip()
            for seg in segments
            if isinstance(seg, dict) and seg.get("text")
        ).strip()
    return ""


async def transcribe_with_openai(
    *,
    session: aiohttp.ClientSession,
    api_key: str,
    model: str,
    file_content: bytes | BinaryIO,
    filename: str,
    content_type: str,
    base_url: str = "https://api.openai.com/v1",
    language: str | None = None,
    timeout_secs: float = 120,
) -> dict[str, Any]:
    data = aiohttp.FormData()
    data.add_field("file", file_content, filename=filename, content_type=content_type)
    data.add_field("model", model)
    if language:
        data.add_field("language", language)

    headers = {"Authorization": f"Bearer {api_key}"}

    async with session.post(
        f"{base_url.rstrip('/')}{_TRANSCRIPTIONS_PATH}",
        data=data,
        headers=headers,
        timeout=aiohttp.ClientTimeout(total=timeout_secs),
    ) as resp:
        raw = await resp.text()
        if resp.status >= 400:
            raise ExtractionError(f"OpenAI transcription failed ({resp.status}): {raw[:500]}")

    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("OpenAI returned non-JSON transcription payload; using text fallback")
        return {"text": raw}
    if not isinstance(parsed, dict):
        return {"text": str(parsed)}
    return parsed
