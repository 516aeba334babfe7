"""Access-token lifecycle for the Google Calendar connection.

Tokens are stored sealed (see :mod:`todo_studio.sealing`).  A stored access
token is reused while it has more than :data:`EXPIRY_MARGIN` left;
otherwise it is refreshed through the provider exactly once per
:meth:`TokenManager.ensure_access_token` call and the rotated values are
resealed and persisted.  Concurrent refreshes for the same user are
tolerated: the last write wins and each refreshed token stays valid until
its own expiry.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from todo_studio.errors import MissingRefreshTokenError, NotConnectedError
from todo_studio.integrations.google import GoogleOAuthClient, GoogleTokenResponse
from todo_studio.models import (
    IntegrationConnection,
    IntegrationProvider,
    new_id,
    utc_now,
)
from todo_studio.sealing import SecretSealer
from todo_studio.storage.base import Store

logger = logging.getLogger(__name__)

EXPIRY_MARGIN = timedelta(seconds=60)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class AccessGrant:
    """A usable (unsealed) access token and the connection it belongs to."""

    access_token: str
    connection: IntegrationConnection

    def __repr__(self) -> str:
        return f"AccessGrant(access_token=<REDACTED>, connection={self.connection!r})"


def token_is_fresh(connection: IntegrationConnection, now: datetime) -> bool:
    if not connection.access_token or connection.access_token_expires_at is None:
        return False
    return connection.access_token_expires_at > now + EXPIRY_MARGIN


class TokenManager:
    """Owns reading, refreshing and persisting Google OAuth tokens."""

    def __init__(
        self,
        store: Store,
        sealer: SecretSealer,
        oauth: GoogleOAuthClient,
        *,
        clock: Clock = utc_now,
        provider: IntegrationProvider = IntegrationProvider.GOOGLE_CALENDAR,
    ) -> None:
        self._store = store
        self._sealer = sealer
        self._oauth = oauth
        self._clock = clock
        self._provider = provider

    async def ensure_access_token(self, user_id: str) -> AccessGrant:
        """Return a non-expired access token for *user_id*.

        Raises
        ------
        NotConnectedError
            No connection row exists for the user.
        MissingRefreshTokenError
            The stored token is stale and no refresh token is stored.
        ProviderAuthError
            The provider rejected the refresh.  Not retried here.
        ConfigurationError
            Sealed tokens cannot be opened with the configured key.
        """
        connection = await self._store.get_connection(user_id, self._provider)
        if connection is None:
            raise NotConnectedError()

        now = self._clock()
        if token_is_fresh(connection, now):
            assert connection.access_token is not None
            return AccessGrant(self._sealer.open(connection.access_token), connection)

        if not connection.refresh_token:
            raise MissingRefreshTokenError()

        refreshed = await self._oauth.refresh_access_token(
            self._sealer.open(connection.refresh_token)
        )
        updated = await self._store.update_connection_tokens(
            connection.id,
            access_token=self._sealer.seal(refreshed.access_token),
            access_token_expires_at=now + timedelta(seconds=refreshed.expires_in),
            # None keeps the stored refresh token when the provider did not rotate it.
            refresh_token=(
                self._sealer.seal(refreshed.refresh_token) if refreshed.refresh_token else None
            ),
        )
        logger.info(
            "Refreshed Google access token: user_id=%s rotated_refresh_token=%s",
            user_id,
            refreshed.refresh_token is not None,
        )
        return AccessGrant(refreshed.access_token, updated)

    async def store_oauth_tokens(
        self,
        user_id: str,
        tokens: GoogleTokenResponse,
        *,
        external_account_email: str | None,
    ) -> IntegrationConnection:
        """Upsert the connection after an OAuth code exchange.

        A missing refresh token in *tokens* keeps the previously stored one.
        The stored calendar id is preserved across reconnects.
        """
        existing = await self._store.get_connection(user_id, self._provider)
        refresh_token = (
            self._sealer.seal(tokens.refresh_token)
            if tokens.refresh_token
            else (existing.refresh_token if existing else None)
        )
        connection = IntegrationConnection(
            id=existing.id if existing else new_id(),
            user_id=user_id,
            provider=self._provider,
            access_token=self._sealer.seal(tokens.access_token),
            refresh_token=refresh_token,
            access_token_expires_at=self._clock() + timedelta(seconds=tokens.expires_in),
            calendar_id=existing.calendar_id if existing else None,
            external_account_email=external_account_email,
        )
        saved = await self._store.save_connection(connection)
        logger.info(
            "Stored Google connection: user_id=%s has_refresh_token=%s",
            user_id,
            saved.refresh_token is not None,
        )
        return saved

    async def disconnect(self, user_id: str) -> bool:
        """Delete the connection; its event mappings go with it."""
        deleted = await self._store.delete_connection(user_id, self._provider)
        if deleted:
            logger.info("Disconnected Google Calendar: user_id=%s", user_id)
        return deleted
