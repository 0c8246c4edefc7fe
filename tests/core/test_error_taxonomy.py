from audiobook_assistant.core.error_taxonomy import (
    ChatError,
    CleanupError,
    ErrorCategory,
    ExtractionError,
    UploadError,
    classify_error_message,
    classify_exception,
    user_message_for_category,
    user_message_for_exception,
)


def test_classify_auth_invalid():
    assert classify_error_message("401 unauthorized: incorrect api key") is ErrorCategory.AUTH_INVALID


def test_classify_provider_limit():
    assert classify_error_message("429 rate limit exceeded") is ErrorCategory.PROVIDER_LIMIT


def test_classify_network_timeout():
    assert classify_error_message("Transcription request timed out") is ErrorCategory.TRANSIENT_NETWORK


def test_classify_missing_ffmpeg_as_config():
    assert classify_error_message("ffmpeg not found on PATH.") is ErrorCategory.CONFIG_INVALID


def test_classify_upstream_failure():
    assert classify_error_message("OpenAI transcription failed (503): down") is ErrorCategory.TRANSIENT_PROVIDER


def test_classify_empty_message_uses_default():
    assert classify_error_message("") is ErrorCategory.INTERNAL_BUG
    assert classify_error_message("", default=ErrorCategory.INVALID_INPUT) is ErrorCategory.INVALID_INPUT


def test_error_classes_carry_categories():
    assert UploadError("No file uploaded").category is ErrorCategory.INVALID_INPUT
    assert ExtractionError("ffmpeg timed out after 60s").category is ErrorCategory.TRANSIENT_NETWORK
    assert ChatError("OpenAI API key not configured.").category is ErrorCategory.CONFIG_INVALID
    assert CleanupError("x", category=ErrorCategory.INTERNAL_BUG).category is ErrorCategory.INTERNAL_BUG


def test_classify_exception_prefers_explicit_category():
    exc = ChatError("boom", category=ErrorCategory.PROVIDER_LIMIT)
    assert classify_exception(exc) is ErrorCategory.PROVIDER_LIMIT
    assert classify_exception(RuntimeError("connection reset")) is ErrorCategory.TRANSIENT_NETWORK


def test_user_message_exists_for_all_categories():
    for category in ErrorCategory:
        message = user_message_for_category(category)
        assert isinstance(message, str)
        assert message
    assert user_message_for_exception(RuntimeError("weird")) == user_message_for_category(ErrorCategory.INTERNAL_BUG)
