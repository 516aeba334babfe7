"""Integration settings: Google Calendar connection, sync trigger and feed tokens."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Any

from todo_studio.errors import FeatureUnavailableError, ValidationError
from todo_studio.integrations.feed_tokens import FeedTokenService
from todo_studio.integrations.google import GoogleOAuthClient
from todo_studio.integrations.sync import CalendarSyncEngine, SyncResult
from todo_studio.integrations.tokens import TokenManager
from todo_studio.models import IntegrationProvider
from todo_studio.rate_limit import RateLimiter
from todo_studio.storage.base import Store

logger = logging.getLogger(__name__)

OAUTH_STATE_COOKIE = "google_oauth_state"
OAUTH_STATE_NONCE_BYTES = 24
ICS_FEED_PATH = "/api/feeds/ics/{token}"
WEBHOOK_INGEST_PATH = "/api/integrations/webhook/{token}/tasks"


def _isoformat(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class SyncLimits:
    max_requests: int = 6
    window_seconds: int = 60


class IntegrationService:
    def __init__(
        self,
        store: Store,
        *,
        tokens: TokenManager,
        oauth: GoogleOAuthClient,
        sync_engine: CalendarSyncEngine,
        feed_tokens: FeedTokenService,
        rate_limiter: RateLimiter,
        base_url: str,
        sync_limits: SyncLimits | None = None,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._oauth = oauth
        self._sync_engine = sync_engine
        self._feed_tokens = feed_tokens
        self._rate_limiter = rate_limiter
        self._base_url = base_url.rstrip("/")
        self._sync_limits = sync_limits or SyncLimits()

    def feed_url(self, ics_token: str) -> str:
        return self._base_url + ICS_FEED_PATH.format(token=ics_token)

    def ingest_url(self, webhook_token: str) -> str:
        return self._base_url + WEBHOOK_INGEST_PATH.format(token=webhook_token)

    async def ics_feed(self, token: str) -> str:
        """Resolve an ICS feed token to its owner.

        Raises
        ------
        NotFoundOrForbidden
            The token is unknown or has been rotated away.
        FeatureUnavailableError
            The token is valid; calendar rendering is not served here.
        """
        user_id = await self._feed_tokens.resolve_ics_token(token)
        logger.info("ICS feed requested: user_id=%s", user_id)
        raise FeatureUnavailableError("ICS feed rendering is not available")

    async def status(self, user_id: str) -> dict[str, Any]:
        """Read-only projection of the user's integration state.

        Never exposes stored access or refresh tokens.
        """
        connection = await self._store.get_connection(user_id, IntegrationProvider.GOOGLE_CALENDAR)
        feed_tokens = await self._feed_tokens.ensure(user_id)
        google: dict[str, Any] = {
            "connected": False,
            "external_account_email": None,
            "access_token_expires_at": None,
            "calendar_id": None,
            "last_updated_at": None,
        }
        if connection is not None:
            google.update(
                connected=True,
                external_account_email=connection.external_account_email,
                access_token_expires_at=_isoformat(connection.access_token_expires_at),
                calendar_id=connection.calendar_id,
                last_updated_at=_isoformat(connection.updated_at),
            )
        return {
            "google": google,
            "ics": {"feed_url": self.feed_url(feed_tokens.ics_token)},
            "webhook": {"ingest_url": self.ingest_url(feed_tokens.webhook_token)},
        }

    # -- Google OAuth ----------------------------------------------------

    def begin_google_connect(self, user_id: str) -> tuple[str, str]:
        """Return ``(authorize_url, state)``.

        The caller stores *state* in a short-lived cookie and hands it back
        to :meth:`complete_google_connect`.
        """
        state = f"{user_id}:{secrets.token_hex(OAUTH_STATE_NONCE_BYTES)}"
        return self._oauth.build_auth_url(state), state

    async def complete_google_connect(
        self,
        user_id: str,
        *,
        code: str | None,
        state: str | None,
        cookie_state: str | None,
        error: str | None = None,
    ) -> None:
        """Finish the OAuth round trip and persist the sealed tokens.

        Raises
        ------
        ValidationError
            Google reported an error, the code is missing, or the state does
            not match the cookie issued for this user.
        ProviderAuthError
            The code exchange or the account lookup failed.
        """
        if error:
            raise ValidationError(f"Google authorization failed: {error}")
        if not code or not state or not cookie_state:
            raise ValidationError("Missing OAuth code or state")
        state_matches = secrets.compare_digest(state.encode(), cookie_state.encode())
        if not state_matches or not state.startswith(f"{user_id}:"):
            raise ValidationError("OAuth state mismatch")

        tokens = await self._oauth.exchange_code(code)
        email = await self._oauth.get_account_email(tokens.access_token)
        await self._tokens.store_oauth_tokens(user_id, tokens, external_account_email=email)
        logger.info("Google Calendar connected: user_id=%s", user_id)

    async def disconnect_google(self, user_id: str) -> bool:
        return await self._tokens.disconnect(user_id)

    async def sync_google(self, user_id: str) -> SyncResult:
        await self._rate_limiter.enforce(
            f"sync:{user_id}",
            self._sync_limits.max_requests,
            self._sync_limits.window_seconds,
        )
        return await self._sync_engine.sync(user_id)

    # -- feed tokens -----------------------------------------------------

    async def rotate_ics_token(self, user_id: str) -> str:
        """Rotate the calendar feed token and return the new feed URL."""
        tokens = await self._feed_tokens.rotate_ics_token(user_id)
        return self.feed_url(tokens.ics_token)

    async def rotate_webhook_token(self, user_id: str) -> str:
        """Rotate the webhook token and return the new ingest URL."""
        tokens = await self._feed_tokens.rotate_webhook_token(user_id)
        return self.ingest_url(tokens.webhook_token)
