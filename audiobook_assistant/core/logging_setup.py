from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any

from loguru import logger


PROJECT_ROOT = Path(__file__).resolve().parents[2]

_VALID_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}
_CONFIGURED_PATHS: dict[str, str] | None = None


def _normalize_level(level: str | None) -> str:
    raw = (level or "INFO").strip().upper()
    if raw in _VALID_LEVELS:
        return raw
    return "INFO"


def _log_dir() -> Path:
    raw = os.getenv("AUDIOBOOK_LOG_DIR", "").strip()
    return Path(raw) if raw else PROJECT_ROOT


def _is_event(record: dict) -> bool:
    return "event" in record["extra"]


def setup_logging(
    *,
    component: str = "web",
    level: str | None = None,
    log_dir: str | Path | None = None,
    force: bool = False,
    add_stderr: bool = True,
) -> dict[str, str]:
    """Install the loguru sinks used by the server.

    * stderr and ``audiobook.log``: human readable lines for every record.
    * ``audiobook.events.jsonl``: serialized records emitted through `emit_event` only.
    """
    global _CONFIGURED_PATHS

    if _CONFIGURED_PATHS is not None and not force:
        return dict(_CONFIGURED_PATHS)

    base = Path(log_dir) if log_dir else _log_dir()
    base.mkdir(parents=True, exist_ok=True)
    pretty_path = base / "audiobook.log"
    events_path = base / "audiobook.events.jsonl"

    logger.remove()
    logger.configure(extra={"component": component, "session": "------", "stage": "-"})

    fmt = (
        "{time:HH:mm:ss.SSS} {level:<7} "
        "[{extra[component]:<10}] "
        "[{extra[session]:<6}] "
        "[{extra[stage]:<10}] "
        "{message}"
    )
    level_name = _normalize_level(level or os.getenv("AUDIOBOOK_LOG_LEVEL", "INFO"))

    if add_stderr:
        logger.add(sys.stderr, level=level_name, format=fmt, colorize=False, backtrace=False, diagnose=False)

    logger.add(
        pretty_path,
        level=level_name,
        format=fmt,
        encoding="utf-8",
        mode="w",
        backtrace=False,
        diagnose=False,
    )
    logger.add(
        events_path,
        level="DEBUG",
        filter=_is_event,
        serialize=True,
        encoding="utf-8",
        mode="w",
        backtrace=False,
        diagnose=False,
    )

    _CONFIGURED_PATHS = {"pretty": str(pretty_path), "events": str(events_path)}
    return dict(_CONFIGURED_PATHS)


def emit_event(
    bound_logger: Any,
    message: str,
    *,
    level: str = "INFO",
    event: str | None = None,
    stage: str | None = None,
    session_id: str | None = None,
    provider: str | None = None,
    duration_ms: int | float | None = None,
    outcome: str | None = None,
    error_category: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """Log `message` with structured fields attached for the events sink."""
    extras: dict[str, Any] = {}
    if event is not None:
        extras["event"] = event
    if stage is not None:
        extras["stage"] = stage
    if session_id is not None:
        extras["session_id"] = session_id
        extras["session"] = session_id[:6]
    if provider is not None:
        extras["provider"] = provider
    if duration_ms is not None:
        extras["duration_ms"] = duration_ms
    if outcome is not None:
        extras["outcome"] = outcome
    if error_category is not None:
        extras["error_category"] = error_category
    if meta:
        extras["meta"] = meta

    logger_obj = bound_logger.bind(**extras) if extras else bound_logger
    logger_obj.log(_normalize_level(level), message)
