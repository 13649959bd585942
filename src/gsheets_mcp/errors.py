import time
from typing import Callable

import httpx

from gsheets_mcp.models import ErrorDetail

RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}

_CODE_HINTS = {
    "INVALID_REQUEST": "Check the request parameters.",
    "INVALID_RANGE": "Use A1 notation such as Sheet1!A1:C10 and make sure the sheet exists.",
    "UNAUTHENTICATED": (
        "Access token expired/invalid. Configure refresh flow with "
        "GOOGLE_SHEETS_REFRESH_TOKEN, GOOGLE_OAUTH_CLIENT_ID, GOOGLE_OAUTH_CLIENT_SECRET."
    ),
    "PERMISSION_DENIED": (
        "Ensure the Google Sheets API is enabled, the token has the spreadsheets scope "
        "and your account can edit this spreadsheet."
    ),
    "NOT_FOUND": "Verify the spreadsheet ID and that it is shared with your account.",
    "CONFLICT": "The spreadsheet changed concurrently. Read it again and retry.",
    "RATE_LIMIT_EXCEEDED": "Wait before retrying and prefer batch operations to reduce API calls.",
    "INTERNAL_ERROR": "Google returned a server error. Retry later.",
    "BACKEND_ERROR": "Google backend is temporarily failing. Retry later.",
    "SERVICE_UNAVAILABLE": "Google Sheets is temporarily unavailable. Retry later.",
}


class SheetsApiError(Exception):
    def __init__(self, detail: ErrorDetail, api_name: str = "Google Sheets API"):
        super().__init__(detail.message)
        self.detail = detail
        self.api_name = api_name

    @property
    def status(self) -> int | None:
        return self.detail.status

    @property
    def code(self) -> str:
        return self.detail.code

    @property
    def retryable(self) -> bool:
        return self.detail.retryable

    def format(self) -> str:
        detail = self.detail
        status_part = f"{detail.status} " if detail.status is not None else ""
        reason_part = f" ({detail.reason})" if detail.reason else ""
        message_part = f" - {detail.message}" if detail.message else ""
        hint_part = f" Hint: {detail.hint}" if detail.hint else ""
        return (
            f"Error: {self.api_name} request failed: {status_part}{detail.code}"
            f"{reason_part}{message_part}.{hint_part}"
        ).strip()

    def __str__(self) -> str:
        return self.format()


def map_google_error(
    status: int | None,
    reason: str = "",
    message: str = "",
    retry_after_seconds: float | None = None,
) -> ErrorDetail:
    """Maps a Google API HTTP failure to a friendly error code."""
    lowered = message.lower()
    retryable = False
    if status == 400:
        if "unable to parse range" in lowered or "invalid range" in lowered:
            code = "INVALID_RANGE"
        else:
            code = "INVALID_REQUEST"
    elif status == 401:
        code = "UNAUTHENTICATED"
    elif status == 403:
        if reason in RATE_LIMIT_REASONS:
            code = "RATE_LIMIT_EXCEEDED"
            retryable = True
        else:
            code = "PERMISSION_DENIED"
    elif status == 404:
        code = "NOT_FOUND"
    elif status == 409:
        code = "CONFLICT"
    elif status == 429:
        code = "RATE_LIMIT_EXCEEDED"
        retryable = True
    elif status in (502, 504):
        code = "BACKEND_ERROR"
        retryable = True
    elif status == 503:
        code = "SERVICE_UNAVAILABLE"
        retryable = True
    elif status is not None and status >= 500:
        code = "INTERNAL_ERROR"
        retryable = True
    else:
        code = "UNKNOWN_ERROR"

    return ErrorDetail(
        status=status,
        code=code,
        message=message,
        reason=reason,
        retryable=retryable,
        retry_after_seconds=retry_after_seconds if retryable else None,
        hint=_CODE_HINTS.get(code, ""),
    )


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def error_from_response(response: httpx.Response, api_name: str = "Google Sheets API") -> SheetsApiError:
    detail = ""
    reason = ""
    try:
        payload = response.json()
        error_obj = payload.get("error", {}) if isinstance(payload, dict) else {}
        if isinstance(error_obj, dict):
            detail = str(error_obj.get("message", "")).strip()
            errors = error_obj.get("errors", [])
            if isinstance(errors, list) and errors and isinstance(errors[0], dict):
                reason = str(errors[0].get("reason", "")).strip()
        elif isinstance(error_obj, str):
            # OAuth endpoints answer {"error": "invalid_grant", ...}
            reason = error_obj
            detail = str(payload.get("error_description", "")).strip()
    except ValueError:
        detail = response.text.strip()[:300]

    mapped = map_google_error(
        response.status_code,
        reason=reason,
        message=detail,
        retry_after_seconds=_parse_retry_after(response.headers.get("Retry-After")),
    )
    return SheetsApiError(mapped, api_name=api_name)


class CircuitBreakerOpenError(Exception):
    def __init__(self, name: str, retry_in_seconds: float):
        super().__init__(
            f"Circuit breaker [{name}] is OPEN after repeated failures. "
            f"Retry in {retry_in_seconds:.0f} seconds."
        )
        self.name = name
        self.retry_in_seconds = retry_in_seconds


class CircuitBreaker:
    """Blocks calls to a failing API until it has had time to recover.

    closed -> open after ``failure_threshold`` consecutive failures.
    open -> half_open once ``reset_timeout_seconds`` have passed.
    half_open -> closed after ``success_threshold`` successes, or back to open
    on the first failure.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        success_threshold: int = 1,
        reset_timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        on_transition: Callable[[str, str, str], None] | None = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self._clock = clock
        self._on_transition = on_transition
        self._state = "closed"
        self._failure_count = 0
        self._success_count = 0
        self._total_requests = 0
        self._opened_at: float | None = None

    @property
    def state(self) -> str:
        return self._state

    def _transition(self, new_state: str) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        if new_state == "open":
            self._opened_at = self._clock()
            self._success_count = 0
        elif new_state == "half_open":
            self._success_count = 0
        elif new_state == "closed":
            self._failure_count = 0
            self._success_count = 0
            self._opened_at = None
        if self._on_transition:
            self._on_transition(self.name, old_state, new_state)

    def before_request(self) -> None:
        self._total_requests += 1
        if self._state != "open":
            return
        elapsed = self._clock() - (self._opened_at or 0.0)
        if elapsed < self.reset_timeout_seconds:
            raise CircuitBreakerOpenError(self.name, self.reset_timeout_seconds - elapsed)
        self._transition("half_open")

    def record_success(self) -> None:
        if self._state == "half_open":
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._transition("closed")
            return
        self._failure_count = 0

    def record_failure(self) -> None:
        if self._state == "half_open":
            self._transition("open")
            return
        self._failure_count += 1
        if self._failure_count >= self.failure_threshold:
            self._transition("open")

    def reset(self) -> None:
        self._transition("closed")
        self._failure_count = 0
        self._total_requests = 0

    def stats(self) -> dict:
        return {
            "name": self.name,
            "state": self._state,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "total_requests": self._total_requests,
        }
