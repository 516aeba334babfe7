"""Per-user bearer capabilities for the calendar feed and the inbound webhook.

The two tokens are independent: rotating one never touches the other, and a
rotated token stops resolving immediately.
"""

from __future__ import annotations

import logging
import secrets

from todo_studio.errors import NotFoundOrForbidden
from todo_studio.models import FeedTokens
from todo_studio.storage.base import Store

logger = logging.getLogger(__name__)

TOKEN_BYTES = 24


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


class FeedTokenService:
    def __init__(self, store: Store) -> None:
        self._store = store

    async def ensure(self, user_id: str) -> FeedTokens:
        """Return the user's tokens, creating both on first use."""
        tokens = await self._store.get_feed_tokens(user_id)
        if tokens is not None:
            return tokens
        return await self._store.save_feed_tokens(
            FeedTokens(user_id=user_id, ics_token=generate_token(), webhook_token=generate_token())
        )

    async def rotate_ics_token(self, user_id: str) -> FeedTokens:
        current = await self._store.get_feed_tokens(user_id)
        rotated = FeedTokens(
            user_id=user_id,
            ics_token=generate_token(),
            webhook_token=current.webhook_token if current else generate_token(),
        )
        saved = await self._store.save_feed_tokens(rotated)
        logger.info("Rotated calendar feed token: user_id=%s", user_id)
        return saved

    async def rotate_webhook_token(self, user_id: str) -> FeedTokens:
        current = await self._store.get_feed_tokens(user_id)
        rotated = FeedTokens(
            user_id=user_id,
            ics_token=current.ics_token if current else generate_token(),
            webhook_token=generate_token(),
        )
        saved = await self._store.save_feed_tokens(rotated)
        logger.info("Rotated webhook token: user_id=%s", user_id)
        return saved

    async def resolve_ics_token(self, token: str) -> str:
        """Return the user id owning *token*.

        Raises
        ------
        NotFoundOrForbidden
            The token is unknown or has been rotated away.
        """
        tokens = await self._store.find_feed_tokens_by_ics_token(token) if token else None
        if tokens is None:
            raise NotFoundOrForbidden("Invalid feed token")
        return tokens.user_id

    async def resolve_webhook_token(self, token: str) -> str:
        tokens = await self._store.find_feed_tokens_by_webhook_token(token) if token else None
        if tokens is None:
            raise NotFoundOrForbidden("Invalid webhook token")
        return tokens.user_id
