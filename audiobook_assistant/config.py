import os
import tempfile
from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [entry.strip().rstrip("/") for entry in raw.split(",") if entry.strip().rstrip("/")]


def _upload_max_bytes(default_mb: float = 200) -> int:
    """AUDIOBOOK_UPLOAD_MAX_BYTES wins over AUDIOBOOK_UPLOAD_MAX_MB; non-positive values are ignored."""
    exact = _env_int("AUDIOBOOK_UPLOAD_MAX_BYTES", 0)
    if exact > 0:
        return exact
    megabytes = _env_float("AUDIOBOOK_UPLOAD_MAX_MB", 0.0)
    if megabytes <= 0:
        megabytes = default_mb
    return int(megabytes * 1024 * 1024)


class Config:
    # API Keys
    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
    GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")  # For Gemini chat models
    OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")

    # Chat completion
    CHAT_MODEL = os.getenv("AUDIOBOOK_CHAT_MODEL", "gpt-4")
    CHAT_TEMPERATURE = _env_float("AUDIOBOOK_CHAT_TEMPERATURE", 0.7)
    CHAT_MAX_TOKENS = _env_int("AUDIOBOOK_CHAT_MAX_TOKENS", 150)

    # Speech-to-text
    TRANSCRIBE_MODEL = os.getenv("AUDIOBOOK_TRANSCRIBE_MODEL", "whisper-1")

    # Storage
    UPLOAD_DIR = os.getenv("AUDIOBOOK_UPLOAD_DIR", os.path.join("public", "uploads"))
    TEMP_DIR = os.getenv("AUDIOBOOK_TEMP_DIR", tempfile.gettempdir())
    UPLOAD_MAX_BYTES = _upload_max_bytes()

    # Context extraction. The window is centered on the playback position
    # (half before, half after) and doubles as the tick period and debounce.
    CONTEXT_WINDOW_SEC = _env_float("AUDIOBOOK_CONTEXT_WINDOW_SEC", 30.0)
    FINAL_CHECK_SEC = _env_float("AUDIOBOOK_FINAL_CHECK_SEC", 1.0)

    # Upstream timeouts
    TIMEOUT_TRANSCRIBE_SEC = _env_float("AUDIOBOOK_TIMEOUT_TRANSCRIBE_SEC", 120.0)
    TIMEOUT_CHAT_SEC = _env_float("AUDIOBOOK_TIMEOUT_CHAT_SEC", 60.0)

    # HTTP server. An empty origin list means localhost only.
    WEB_HOST = os.getenv("AUDIOBOOK_WEB_HOST", "127.0.0.1")
    WEB_PORT = _env_int("AUDIOBOOK_WEB_PORT", 8765)
    ALLOWED_ORIGINS = _env_list("AUDIOBOOK_ALLOWED_ORIGINS")
