import logging
import os
from datetime import datetime, timedelta, timezone

import httpx
from dotenv import load_dotenv
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from gsheets_mcp.config import load_runtime_settings
from gsheets_mcp.constants import GOOGLE_OAUTH_TOKEN_ENDPOINT
from gsheets_mcp.errors import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    SheetsApiError,
    error_from_response,
)
from gsheets_mcp.logging_utils import build_logger

logger = build_logger("SheetsMCP.GoogleApi")

HTTP_TIMEOUT = httpx.Timeout(timeout=20.0, connect=5.0)
TOKEN_EXPIRY_SAFETY_MARGIN_SECONDS = 60

_BREAKERS: dict[str, CircuitBreaker] = {}


class AccessTokenCache:
    """Keeps a refreshed token until shortly before Google expires it."""

    def __init__(self, margin_seconds: int = TOKEN_EXPIRY_SAFETY_MARGIN_SECONDS):
        self.margin_seconds = margin_seconds
        self.token: str | None = None
        self.expires_at: datetime | None = None

    def get(self, now: datetime | None = None) -> str | None:
        if not self.token or not self.expires_at:
            return None
        if (now or datetime.now(timezone.utc)) >= self.expires_at:
            self.clear()
            return None
        return self.token

    def store(self, token: str, expires_in_seconds: int, now: datetime | None = None) -> None:
        ttl = max(0, int(expires_in_seconds) - self.margin_seconds)
        self.token = token
        self.expires_at = (now or datetime.now(timezone.utc)) + timedelta(seconds=ttl)

    def clear(self) -> None:
        self.token = None
        self.expires_at = None


_TOKEN_CACHE = AccessTokenCache()


def _client_kwargs() -> dict:
    return {"follow_redirects": True, "timeout": HTTP_TIMEOUT}


def _auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def invalidate_cached_access_token() -> None:
    _TOKEN_CACHE.clear()


def _refresh_access_token(refresh_token: str, client_id: str, client_secret: str) -> tuple[str, int]:
    payload = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": client_id,
        "client_secret": client_secret,
    }
    with httpx.Client(**_client_kwargs()) as client:
        response = client.post(GOOGLE_OAUTH_TOKEN_ENDPOINT, data=payload)

    if response.status_code != 200:
        raise ValueError(
            "Sheets OAuth refresh failed: " + error_from_response(response, "OAuth token endpoint").format()
        )

    try:
        data = response.json()
    except ValueError as exc:
        raise ValueError(f"Sheets OAuth refresh response parse error: {exc}") from exc

    token = str(data.get("access_token", "")).strip()
    if not token:
        raise ValueError("Sheets OAuth refresh response missing access_token")

    try:
        expires_in = int(data.get("expires_in", 3600))
    except (TypeError, ValueError):
        expires_in = 3600
    return token, expires_in


def get_access_token() -> str:
    # Reload .env so token rotation can update a running server without restart.
    load_dotenv(override=True)

    cached = _TOKEN_CACHE.get()
    if cached:
        return cached

    static_token = (os.getenv("GOOGLE_SHEETS_ACCESS_TOKEN") or "").strip()
    refresh_token = (os.getenv("GOOGLE_SHEETS_REFRESH_TOKEN") or "").strip()
    client_id = (os.getenv("GOOGLE_OAUTH_CLIENT_ID") or "").strip()
    client_secret = (os.getenv("GOOGLE_OAUTH_CLIENT_SECRET") or "").strip()

    refresh_inputs = {
        "GOOGLE_SHEETS_REFRESH_TOKEN": refresh_token,
        "GOOGLE_OAUTH_CLIENT_ID": client_id,
        "GOOGLE_OAUTH_CLIENT_SECRET": client_secret,
    }
    missing = [name for name, value in refresh_inputs.items() if not value]

    if not missing:
        try:
            refreshed_token, expires_in = _refresh_access_token(
                refresh_token=refresh_token,
                client_id=client_id,
                client_secret=client_secret,
            )
        except ValueError as exc:
            if static_token:
                logger.warning("Token refresh failed, using static token: %s", exc)
                return static_token
            raise ValueError(f"Failed to refresh Sheets access token: {exc}") from exc
        _TOKEN_CACHE.store(refreshed_token, expires_in)
        os.environ["GOOGLE_SHEETS_ACCESS_TOKEN"] = refreshed_token
        logger.info("Refreshed Sheets access token (expires in %s s)", expires_in)
        return refreshed_token

    if static_token:
        return static_token

    if len(missing) < len(refresh_inputs):
        raise ValueError("Incomplete Sheets OAuth refresh configuration. Missing: " + ", ".join(missing))

    raise ValueError(
        "Set GOOGLE_SHEETS_ACCESS_TOKEN or configure refresh flow with "
        "GOOGLE_SHEETS_REFRESH_TOKEN, GOOGLE_OAUTH_CLIENT_ID, and GOOGLE_OAUTH_CLIENT_SECRET in .env"
    )


def _log_transition(name: str, old_state: str, new_state: str) -> None:
    logger.warning("Circuit breaker %s: %s -> %s", name, old_state, new_state)


def get_circuit_breaker(api_name: str) -> CircuitBreaker:
    breaker = _BREAKERS.get(api_name)
    if breaker is None:
        settings = load_runtime_settings()
        breaker = CircuitBreaker(
            name=api_name,
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout_seconds=settings.circuit_reset_seconds,
            on_transition=_log_transition,
        )
        _BREAKERS[api_name] = breaker
    return breaker


def reset_circuit_breakers() -> None:
    _BREAKERS.clear()


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, SheetsApiError):
        return exc.retryable
    return isinstance(exc, httpx.TransportError)


def _retry_wait(backoff, max_wait_seconds: float):
    """Backoff that waits at least as long as a Retry-After header asks, up to max_wait_seconds."""

    def wait(retry_state) -> float:
        delay = backoff(retry_state)
        outcome = retry_state.outcome
        if outcome is None or not outcome.failed:
            return delay
        exc = outcome.exception()
        if isinstance(exc, SheetsApiError) and exc.detail.retry_after_seconds:
            delay = max(delay, min(exc.detail.retry_after_seconds, max_wait_seconds))
        return delay

    return wait


async def _send_once(
    method: str,
    url: str,
    params: dict | None = None,
    json_body: dict | None = None,
) -> httpx.Response:
    token = get_access_token()
    async with httpx.AsyncClient(**_client_kwargs()) as client:
        response = await client.request(
            method, url, headers=_auth_headers(token), params=params, json=json_body
        )
        if response.status_code == 401:
            invalidate_cached_access_token()
            retry_token = get_access_token()
            if retry_token:
                response = await client.request(
                    method, url, headers=_auth_headers(retry_token), params=params, json=json_body
                )
    return response


async def request(
    method: str,
    url: str,
    *,
    api_name: str,
    params: dict | None = None,
    json_body: dict | None = None,
) -> httpx.Response:
    """Sends a request with retry/backoff behind the API's circuit breaker.

    Raises SheetsApiError for non-2xx responses and CircuitBreakerOpenError when
    the API has been failing.
    """
    settings = load_runtime_settings()
    breaker = get_circuit_breaker(api_name)
    breaker.before_request()

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(settings.retry_max_attempts),
            wait=_retry_wait(
                wait_exponential(
                    multiplier=settings.retry_backoff_seconds,
                    max=settings.retry_max_wait_seconds,
                ),
                settings.retry_max_wait_seconds,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                response = await _send_once(method, url, params=params, json_body=json_body)
                if response.status_code >= 400:
                    error = error_from_response(response, api_name)
                    if error.retryable:
                        raise error
    except (SheetsApiError, httpx.TransportError) as exc:
        breaker.record_failure()
        logger.error("%s %s failed: %s", method, url, exc)
        raise

    # Client errors mean the API is healthy.
    breaker.record_success()
    if response.status_code >= 400:
        error = error_from_response(response, api_name)
        logger.info("%s %s rejected: %s", method, url, error.code)
        raise error
    return response


async def request_json(
    method: str,
    url: str,
    *,
    api_name: str,
    params: dict | None = None,
    json_body: dict | None = None,
) -> tuple[dict | None, str | None]:
    try:
        response = await request(method, url, api_name=api_name, params=params, json_body=json_body)
    except SheetsApiError as exc:
        return None, exc.format()
    except CircuitBreakerOpenError as exc:
        return None, f"Error: {exc}"
    except httpx.HTTPError as exc:
        return None, f"Error: {api_name} network error: {exc}"

    if not response.content:
        return {}, None
    try:
        return response.json(), None
    except ValueError as exc:
        return None, f"{api_name} response parse error: {str(exc)}"
