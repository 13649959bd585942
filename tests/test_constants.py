import gsheets_mcp.constants as constants
from gsheets_mcp.config import load_runtime_settings


def test_resolve_default_confirmation_level_from_env(monkeypatch):
    monkeypatch.setenv("SHEETS_CONFIRMATION_LEVEL", "always")
    assert constants.resolve_default_confirmation_level() == "always"


def test_resolve_default_confirmation_level_normalizes_case(monkeypatch):
    monkeypatch.setenv("SHEETS_CONFIRMATION_LEVEL", "  Never ")
    assert constants.resolve_default_confirmation_level() == "never"


def test_resolve_default_confirmation_level_fallback_when_invalid(monkeypatch):
    monkeypatch.setenv("SHEETS_CONFIRMATION_LEVEL", "sometimes")
    assert constants.resolve_default_confirmation_level() == "destructive"


def test_runtime_settings_defaults(monkeypatch):
    for name in (
        "SHEETS_RETRY_MAX_ATTEMPTS",
        "SHEETS_RETRY_BACKOFF_SECONDS",
        "SHEETS_CIRCUIT_FAILURE_THRESHOLD",
        "SHEETS_CIRCUIT_RESET_SECONDS",
        "SHEETS_SESSION_IDLE_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)
    settings = load_runtime_settings()
    assert settings.retry_max_attempts == 3
    assert settings.retry_backoff_seconds == 1.0
    assert settings.circuit_failure_threshold == 5
    assert settings.circuit_reset_seconds == 30.0
    assert settings.session_idle_seconds == 1800.0
    assert settings.default_confirmation_level == "destructive"


def test_runtime_settings_from_env(monkeypatch):
    monkeypatch.setenv("SHEETS_RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("SHEETS_CIRCUIT_FAILURE_THRESHOLD", "2")
    monkeypatch.setenv("SHEETS_CONFIRMATION_LEVEL", "never")
    settings = load_runtime_settings()
    assert settings.retry_max_attempts == 5
    assert settings.circuit_failure_threshold == 2
    assert settings.default_confirmation_level == "never"


def test_runtime_settings_fall_back_on_invalid_values(monkeypatch, caplog):
    monkeypatch.setenv("SHEETS_RETRY_MAX_ATTEMPTS", "three")
    monkeypatch.setenv("SHEETS_SESSION_IDLE_SECONDS", "-5")
    monkeypatch.setenv("SHEETS_CIRCUIT_FAILURE_THRESHOLD", "2")
    monkeypatch.setenv("SHEETS_CIRCUIT_RESET_SECONDS", "45")
    settings = load_runtime_settings()
    assert settings.retry_max_attempts == 3
    assert settings.session_idle_seconds == 1800.0
    assert settings.circuit_failure_threshold == 2
    assert settings.circuit_reset_seconds == 45.0
    assert "SHEETS_RETRY_MAX_ATTEMPTS" in caplog.text
    assert "SHEETS_SESSION_IDLE_SECONDS" in caplog.text
