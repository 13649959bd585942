import logging
import os

from dotenv import load_dotenv
from pydantic import ValidationError

from gsheets_mcp.constants import resolve_default_confirmation_level
from gsheets_mcp.models import RuntimeSettings

# logging_utils builds its handlers from these settings, so this one stays plain.
logger = logging.getLogger("SheetsMCP.Config")

SETTINGS_ENV = {
    "log_file": "SHEETS_MCP_LOG_FILE",
    "log_level": "SHEETS_MCP_LOG_LEVEL",
    "retry_max_attempts": "SHEETS_RETRY_MAX_ATTEMPTS",
    "retry_backoff_seconds": "SHEETS_RETRY_BACKOFF_SECONDS",
    "retry_max_wait_seconds": "SHEETS_RETRY_MAX_WAIT_SECONDS",
    "circuit_failure_threshold": "SHEETS_CIRCUIT_FAILURE_THRESHOLD",
    "circuit_reset_seconds": "SHEETS_CIRCUIT_RESET_SECONDS",
    "session_idle_seconds": "SHEETS_SESSION_IDLE_SECONDS",
}


def load_runtime_settings() -> RuntimeSettings:
    """Reads settings from the environment. Invalid values fall back to defaults."""
    load_dotenv()
    raw = {field: os.getenv(env_name) for field, env_name in SETTINGS_ENV.items()}
    raw = {field: value for field, value in raw.items() if value is not None}
    raw["default_confirmation_level"] = resolve_default_confirmation_level()

    try:
        return RuntimeSettings.model_validate(raw)
    except ValidationError as exc:
        invalid = {str(error["loc"][0]) for error in exc.errors() if error.get("loc")}
        for field in sorted(invalid):
            logger.warning(
                "Ignoring invalid %s=%r, using default",
                SETTINGS_ENV.get(field, field),
                raw.get(field),
            )
        return RuntimeSettings.model_validate(
            {field: value for field, value in raw.items() if field not in invalid}
        )
