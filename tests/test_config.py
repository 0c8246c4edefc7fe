from audiobook_assistant.config import Config, _env_float, _env_int, _env_list, _upload_max_bytes


def test_default_values():
    assert Config.CHAT_MODEL
    assert Config.TRANSCRIBE_MODEL
    assert Config.CONTEXT_WINDOW_SEC > 0
    assert isinstance(Config.ALLOWED_ORIGINS, list)


def test_env_number_helpers(monkeypatch):
    monkeypatch.setenv("AUDIOBOOK_TEST_NUMBER", "2.5")
    assert _env_float("AUDIOBOOK_TEST_NUMBER", 1.0) == 2.5
    monkeypatch.setenv("AUDIOBOOK_TEST_NUMBER", "not-a-number")
    assert _env_float("AUDIOBOOK_TEST_NUMBER", 1.0) == 1.0
    assert _env_int("AUDIOBOOK_TEST_NUMBER", 7) == 7
    monkeypatch.delenv("AUDIOBOOK_TEST_NUMBER")
    assert _env_int("AUDIOBOOK_TEST_NUMBER", 7) == 7


def test_allowed_origins_list(monkeypatch):
    monkeypatch.setenv("AUDIOBOOK_ALLOWED_ORIGINS", " https://listen.example/ , ,http://localhost:3000")
    assert _env_list("AUDIOBOOK_ALLOWED_ORIGINS") == ["https://listen.example", "http://localhost:3000"]
    monkeypatch.delenv("AUDIOBOOK_ALLOWED_ORIGINS")
    assert _env_list("AUDIOBOOK_ALLOWED_ORIGINS") == []


def test_upload_limit_prefers_exact_bytes(monkeypatch):
    monkeypatch.setenv("AUDIOBOOK_UPLOAD_MAX_BYTES", "123")
    monkeypatch.setenv("AUDIOBOOK_UPLOAD_MAX_MB", "1")
    assert _upload_max_bytes() == 123


def test_upload_limit_in_megabytes(monkeypatch):
    monkeypatch.delenv("AUDIOBOOK_UPLOAD_MAX_BYTES", raising=False)
    monkeypatch.setenv("AUDIOBOOK_UPLOAD_MAX_MB", "512")
    assert _upload_max_bytes() == 512 * 1024 * 1024


def test_upload_limit_ignores_non_positive_values(monkeypatch):
    monkeypatch.setenv("AUDIOBOOK_UPLOAD_MAX_BYTES", "-5")
    monkeypatch.setenv("AUDIOBOOK_UPLOAD_MAX_MB", "0")
    assert _upload_max_bytes() == 200 * 1024 * 1024
