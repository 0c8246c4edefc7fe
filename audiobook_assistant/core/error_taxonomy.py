from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    TRANSIENT_NETWORK = "transient_network"
    TRANSIENT_PROVIDER = "transient_provider"
    AUTH_INVALID = "auth_invalid"
    PROVIDER_LIMIT = "provider_limit"
    CONFIG_INVALID = "config_invalid"
    INVALID_INPUT = "invalid_input"
    INTERNAL_BUG = "internal_bug"


_CATEGORY_TO_USER_MESSAGE: dict[ErrorCategory, str] = {
    ErrorCategory.TRANSIENT_NETWORK: "Could not reach the AI service. Please check your internet connection and try again.",
    ErrorCategory.TRANSIENT_PROVIDER: "The AI service is temporarily unavailable. Please try again shortly.",
    ErrorCategory.AUTH_INVALID: "Invalid API key. Please check your credentials.",
    ErrorCategory.PROVIDER_LIMIT: "Provider rate limit or quota reached. Please wait a moment.",
    ErrorCategory.CONFIG_INVALID: "Invalid configuration detected. Please verify your settings.",
    ErrorCategory.INVALID_INPUT: "The request could not be processed. Please check the audio file.",
    ErrorCategory.INTERNAL_BUG: "Something went wrong. Please try again.",
}


class AssistantError(RuntimeError):
    """Base for failures of the upload, extraction and chat paths."""

    default_category = ErrorCategory.INTERNAL_BUG

    def __init__(self, message: str, *, category: ErrorCategory | None = None):
        super().__init__(message)
        self.category = category or classify_error_message(message, default=self.default_category)


class UploadError(AssistantError):
    default_category = ErrorCategory.INVALID_INPUT


class ExtractionError(AssistantError):
    pass


class ChatError(AssistantError):
    pass


class CleanupError(AssistantError):
    pass


def classify_error_message(message: str, *, default: ErrorCategory = ErrorCategory.INTERNAL_BUG) -> ErrorCategory:
    text = (message or "").lower().strip()
    if not text:
        return default

    if any(token in text for token in ("quota exceeded", "insufficient_quota", "insufficient balance", "402")):
        return ErrorCategory.PROVIDER_LIMIT
    if any(token in text for token in ("401", "unauthorized", "invalid api key", "incorrect api key", "authentication")):
        return ErrorCategory.AUTH_INVALID
    if any(token in text for token in ("403", "forbidden")):
        return ErrorCategory.AUTH_INVALID
    if any(token in text for token in ("rate limit", "429", "too many requests")):
        return ErrorCategory.PROVIDER_LIMIT
    if any(token in text for token in ("timeout", "timed out", "connection", "cannot connect", "dns")):
        return ErrorCategory.TRANSIENT_NETWORK
    if any(token in text for token in ("missing api key", "not configured", "ffmpeg not found", "configuration")):
        return ErrorCategory.CONFIG_INVALID
    if any(token in text for token in ("service unavailable", "internal server error", "(503)", "(502)", "(500)", "bad gateway")):
        return ErrorCategory.TRANSIENT_PROVIDER
    if any(token in text for token in ("invalid data", "no audio", "unsupported", "invalid time range")):
        return ErrorCategory.INVALID_INPUT
    return default


def classify_exception(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, AssistantError):
        return exc.category
    return classify_error_message(str(exc))


def user_message_for_category(category: ErrorCategory) -> str:
    return _CATEGORY_TO_USER_MESSAGE.get(category, _CATEGORY_TO_USER_MESSAGE[ErrorCategory.INTERNAL_BUG])


def user_message_for_exception(exc: BaseException) -> str:
    return user_message_for_category(classify_exception(exc))
