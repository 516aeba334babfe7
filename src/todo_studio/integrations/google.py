"""Google OAuth and Calendar REST clients over ``httpx.AsyncClient``.

Only the response fields the application consumes are modelled (ids,
summaries, token fields).  They are validated at the boundary so provider
API drift fails with :class:`ProviderApiError` / :class:`ProviderAuthError`
instead of leaking missing keys deeper into the sync engine.

OAuth calls are never retried here; retry policy belongs to the caller.
Calendar REST calls retry on 429/503 with exponential backoff (honouring
``Retry-After`` on 429).
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar
from urllib.parse import quote, urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from todo_studio.config import GoogleConfig
from todo_studio.errors import ConfigurationError, ProviderApiError, ProviderAuthError

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_OAUTH_SCOPES = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/userinfo.email",
)
GOOGLE_CALLBACK_PATH = "/api/integrations/google/callback"

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

_DEFAULT_EXPIRES_IN_SECONDS = 3600

Sleep = Callable[[float], Awaitable[None]]


# ---------------------------------------------------------------------------
# Narrow response schemas
# ---------------------------------------------------------------------------


class _GoogleResponse(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class GoogleTokenResponse(_GoogleResponse):
    access_token: str = Field(min_length=1)
    expires_in: int = _DEFAULT_EXPIRES_IN_SECONDS
    refresh_token: str | None = None
    scope: str | None = None
    token_type: str | None = None

    @field_validator("expires_in", mode="before")
    @classmethod
    def _coerce_expires_in(cls, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int | float | str):
            return _DEFAULT_EXPIRES_IN_SECONDS
        try:
            seconds = int(value)
        except ValueError:
            return _DEFAULT_EXPIRES_IN_SECONDS
        return seconds if seconds > 0 else _DEFAULT_EXPIRES_IN_SECONDS

    @field_validator("refresh_token", mode="before")
    @classmethod
    def _blank_refresh_token(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def __repr__(self) -> str:
        return f"GoogleTokenResponse(expires_in={self.expires_in!r}, scope={self.scope!r})"


class GoogleUserInfo(_GoogleResponse):
    email: str | None = None


class CalendarListEntry(_GoogleResponse):
    id: str = Field(min_length=1)
    summary: str | None = None


class CalendarListPage(_GoogleResponse):
    items: list[CalendarListEntry] = Field(default_factory=list)
    next_page_token: str | None = Field(default=None, alias="nextPageToken")


class CalendarResource(_GoogleResponse):
    id: str = Field(min_length=1)
    summary: str | None = None


class EventResource(_GoogleResponse):
    id: str = Field(min_length=1)
    summary: str | None = None


# ---------------------------------------------------------------------------
# Error helpers
# ---------------------------------------------------------------------------


def _safe_google_error_message(response: httpx.Response) -> str:
    """Provider error text, whitespace-normalized and truncated to 200 chars."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return " ".join(description.split())[:200]
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def _redact_credential_values(message: str) -> str:
    """Redact token-looking values from an error message."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token|code)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    return re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)


def provider_detail(response: httpx.Response) -> str:
    return _redact_credential_values(_safe_google_error_message(response))


ModelT = TypeVar("ModelT", bound=BaseModel)


def _parse(
    model: type[ModelT],
    response: httpx.Response,
    error_cls: type[ProviderAuthError] | type[ProviderApiError],
    what: str,
) -> ModelT:
    try:
        payload = response.json()
    except ValueError as exc:
        raise error_cls(
            f"{what} returned invalid JSON", provider_status=response.status_code
        ) from exc
    if not isinstance(payload, dict):
        raise error_cls(
            f"{what} returned an unexpected JSON payload shape",
            provider_status=response.status_code,
        )
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise error_cls(
            f"{what} returned an unexpected payload",
            detail=" ".join(str(exc).split())[:200],
            provider_status=response.status_code,
        ) from exc


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class GoogleOAuthClient:
    """Authorize-URL builder and token endpoint client."""

    def __init__(
        self,
        config: GoogleConfig,
        http_client: httpx.AsyncClient | None = None,
        *,
        base_url: str | None = None,
    ) -> None:
        self._config = config
        self._base_url = base_url
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)

    @property
    def redirect_uri(self) -> str:
        if self._config.redirect_uri:
            return self._config.redirect_uri
        base = (self._base_url or "http://localhost:3000").rstrip("/")
        return f"{base}{GOOGLE_CALLBACK_PATH}"

    def _client_credentials(self) -> tuple[str, str]:
        client_id = (self._config.client_id or "").strip()
        client_secret = (self._config.client_secret or "").strip()
        if not client_id or not client_secret:
            raise ConfigurationError("Missing GOOGLE_CLIENT_ID or GOOGLE_CLIENT_SECRET.")
        return client_id, client_secret

    def build_auth_url(self, state: str) -> str:
        client_id, _ = self._client_credentials()
        params = {
            "client_id": client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "access_type": "offline",
            "include_granted_scopes": "true",
            "prompt": "consent",
            "scope": " ".join(GOOGLE_OAUTH_SCOPES),
            "state": state,
        }
        return f"{GOOGLE_OAUTH_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> GoogleTokenResponse:
        client_id, client_secret = self._client_credentials()
        return await self._token_request(
            {
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            },
            action="token exchange",
        )

    async def refresh_access_token(self, refresh_token: str) -> GoogleTokenResponse:
        client_id, client_secret = self._client_credentials()
        return await self._token_request(
            {
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            action="token refresh",
        )

    async def _token_request(self, data: dict[str, str], *, action: str) -> GoogleTokenResponse:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise ProviderAuthError(
                f"Google {action} request failed",
                detail=_redact_credential_values(str(exc))[:200],
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            detail = provider_detail(response)
            logger.warning(
                "Google OAuth %s failed (status=%d): %s", action, response.status_code, detail
            )
            raise ProviderAuthError(
                f"Google {action} failed: {detail}",
                detail=detail,
                provider_status=response.status_code,
            )

        return _parse(GoogleTokenResponse, response, ProviderAuthError, f"Google {action}")

    async def get_account_email(self, access_token: str) -> str | None:
        try:
            response = await self._http_client.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise ProviderAuthError(
                "Google user info request failed",
                detail=_redact_credential_values(str(exc))[:200],
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            detail = provider_detail(response)
            raise ProviderAuthError(
                f"Google user info request failed: {detail}",
                detail=detail,
                provider_status=response.status_code,
            )
        return _parse(GoogleUserInfo, response, ProviderAuthError, "Google user info").email

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


# ---------------------------------------------------------------------------
# Calendar REST
# ---------------------------------------------------------------------------


class GoogleCalendarClient:
    """Bearer-authenticated Calendar v3 calls used by the sync engine."""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._sleep = sleep

    async def list_calendars(self, access_token: str) -> list[CalendarListEntry]:
        entries: list[CalendarListEntry] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"minAccessRole": "owner", "maxResults": 250}
            if page_token:
                params["pageToken"] = page_token
            response = await self._request(
                "GET", "/users/me/calendarList", access_token, params=params
            )
            page = _parse(CalendarListPage, response, ProviderApiError, "Google calendar list")
            entries.extend(page.items)
            if not page.next_page_token:
                return entries
            page_token = page.next_page_token

    async def create_calendar(
        self,
        access_token: str,
        *,
        summary: str,
        description: str | None = None,
    ) -> CalendarResource:
        body: dict[str, Any] = {"summary": summary}
        if description:
            body["description"] = description
        response = await self._request("POST", "/calendars", access_token, json_body=body)
        return _parse(CalendarResource, response, ProviderApiError, "Google calendar create")

    async def create_event(
        self,
        access_token: str,
        calendar_id: str,
        payload: dict[str, Any],
    ) -> EventResource:
        response = await self._request(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            access_token,
            json_body=payload,
        )
        return _parse(EventResource, response, ProviderApiError, "Google event create")

    async def update_event(
        self,
        access_token: str,
        calendar_id: str,
        event_id: str,
        payload: dict[str, Any],
    ) -> EventResource:
        response = await self._request(
            "PATCH",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            access_token,
            json_body=payload,
        )
        return _parse(EventResource, response, ProviderApiError, "Google event update")

    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> None:
        await self._request(
            "DELETE",
            f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}",
            access_token,
        )

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send one Calendar API call, retrying on 429/503.

        Raises
        ------
        ProviderApiError
            On transport failure or any non-2xx final response.
        """
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"
        response = await self._request_once(method, url, access_token, params, json_body)

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        logger.debug("Ignoring non-numeric Retry-After: %r", retry_after_header)
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await self._sleep(backoff)
            response = await self._request_once(method, url, access_token, params, json_body)
            retry += 1

        if response.status_code < 200 or response.status_code >= 300:
            detail = provider_detail(response)
            raise ProviderApiError(
                f"Google Calendar API request failed ({response.status_code}): {detail}",
                detail=detail,
                provider_status=response.status_code,
            )
        return response

    async def _request_once(
        self,
        method: str,
        url: str,
        access_token: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise ProviderApiError(
                "Google Calendar request failed",
                detail=_redact_credential_values(str(exc))[:200],
            ) from exc

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
