import os

from dotenv import load_dotenv

load_dotenv()

SHEETS_API_BASE = "https://sheets.googleapis.com/v4"
DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
GOOGLE_OAUTH_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
SPREADSHEET_MIME = "application/vnd.google-apps.spreadsheet"

SHEETS_API_NAME = "Google Sheets API"
DRIVE_API_NAME = "Drive API"

CONFIRMATION_LEVELS = ["always", "destructive", "never"]

_FALLBACK_CONFIRMATION_LEVEL = "destructive"


def resolve_default_confirmation_level() -> str:
    level_from_env = (os.getenv("SHEETS_CONFIRMATION_LEVEL") or "").strip().lower()
    if level_from_env and level_from_env in CONFIRMATION_LEVELS:
        return level_from_env
    return _FALLBACK_CONFIRMATION_LEVEL


SERVER_INSTRUCTIONS = (
    "You can read and change Google Sheets spreadsheets using the available tools. "
    "Read-only tools never need confirmation. "
    "Mutating tools may answer with 'Confirmation required'; when that happens, show the reason "
    "to the user and call the tool again with confirmed=true only after the user approves. "
    "For plans with three or more steps call request_plan_confirmation first. "
    "If the user says 'just do it' or asks you to stop confirming, call record_user_signal "
    "with their message so the preference is remembered for the session."
)
