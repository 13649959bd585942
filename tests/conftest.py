import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


@pytest.fixture(autouse=True)
def _default_env(monkeypatch, request):
    if request.node.get_closest_marker("live_smoke"):
        return
    monkeypatch.setenv("GOOGLE_SHEETS_ACCESS_TOKEN", "sheets-test-token")
    monkeypatch.delenv("GOOGLE_SHEETS_REFRESH_TOKEN", raising=False)
    monkeypatch.delenv("GOOGLE_OAUTH_CLIENT_ID", raising=False)
    monkeypatch.delenv("GOOGLE_OAUTH_CLIENT_SECRET", raising=False)
    monkeypatch.delenv("SHEETS_CONFIRMATION_LEVEL", raising=False)
    monkeypatch.setenv("SHEETS_RETRY_BACKOFF_SECONDS", "0")
    monkeypatch.setenv("SHEETS_RETRY_MAX_WAIT_SECONDS", "0")


@pytest.fixture(autouse=True)
def _fresh_state():
    from gsheets_mcp import google_api, session_context

    session_context.reset_sessions()
    google_api.reset_circuit_breakers()
    google_api.invalidate_cached_access_token()
    yield
    session_context.reset_sessions()
    google_api.reset_circuit_breakers()
    google_api.invalidate_cached_access_token()
