"""Service wiring and FastAPI dependency functions.

:func:`build_services` assembles every service over one :class:`Store`.  The
container lives on ``app.state.services``; route handlers receive it through
:func:`get_services` and the acting user through :func:`get_current_user`.

Authentication proper (sessions, passwords) lives in front of this API; the
upstream gateway forwards the authenticated user id in ``X-User-Id``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx
from fastapi import Depends, Header, Request

from todo_studio.activity import ActivityRecorder
from todo_studio.config import AppConfig
from todo_studio.core.logging import set_principal_context
from todo_studio.errors import AuthenticationRequired
from todo_studio.integrations.feed_tokens import FeedTokenService
from todo_studio.integrations.google import GoogleCalendarClient, GoogleOAuthClient
from todo_studio.integrations.sync import CalendarSyncEngine
from todo_studio.integrations.tokens import TokenManager
from todo_studio.models import User
from todo_studio.rate_limit import InMemoryRateLimiter, RateLimiter
from todo_studio.sealing import SecretSealer
from todo_studio.services.integrations import IntegrationService, SyncLimits
from todo_studio.services.lists import ListService
from todo_studio.services.tags import TagService
from todo_studio.services.tasks import TaskService
from todo_studio.services.webhook import WebhookService
from todo_studio.storage.base import Store

logger = logging.getLogger(__name__)

PRINCIPAL_HEADER = "X-User-Id"


@dataclass
class Services:
    config: AppConfig
    store: Store
    rate_limiter: RateLimiter
    tasks: TaskService
    lists: ListService
    tags: TagService
    webhook: WebhookService
    integrations: IntegrationService
    oauth: GoogleOAuthClient
    calendar: GoogleCalendarClient
    sync_engine: CalendarSyncEngine

    async def aclose(self) -> None:
        await self.oauth.aclose()
        await self.calendar.aclose()
        await self.store.close()


def build_services(
    config: AppConfig,
    store: Store,
    *,
    http_client: httpx.AsyncClient | None = None,
    rate_limiter: RateLimiter | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Services:
    """Assemble the service graph for one application instance.

    Raises
    ------
    ConfigurationError
        The configured encryption key is malformed.
    """
    sealer = SecretSealer.from_raw_key(config.encryption_key)
    if not sealer.encrypts:
        logger.warning(
            "No integration encryption key configured; OAuth tokens are stored tagged plain"
        )

    activity = ActivityRecorder(store)
    feed_tokens = FeedTokenService(store)
    limiter = rate_limiter or InMemoryRateLimiter()
    oauth = GoogleOAuthClient(config.google, http_client, base_url=config.base_url)
    calendar = GoogleCalendarClient(http_client, sleep=sleep)
    tokens = TokenManager(store, sealer, oauth)
    sync_engine = CalendarSyncEngine(store, tokens, calendar, base_url=config.base_url)

    return Services(
        config=config,
        store=store,
        rate_limiter=limiter,
        tasks=TaskService(store, activity),
        lists=ListService(store),
        tags=TagService(store),
        webhook=WebhookService(store, feed_tokens, activity),
        integrations=IntegrationService(
            store,
            tokens=tokens,
            oauth=oauth,
            sync_engine=sync_engine,
            feed_tokens=feed_tokens,
            rate_limiter=limiter,
            base_url=config.base_url,
            sync_limits=SyncLimits(
                max_requests=config.rate_limits.sync_max_requests,
                window_seconds=config.rate_limits.sync_window_seconds,
            ),
        ),
        oauth=oauth,
        calendar=calendar,
        sync_engine=sync_engine,
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency: the service container of the running app."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services not initialized; the app lifespan has not run")
    return services


async def get_current_user(
    x_user_id: str | None = Header(default=None, alias=PRINCIPAL_HEADER),
    services: Services = Depends(get_services),
) -> User:
    """FastAPI dependency: the authenticated principal.

    Also binds the principal id to the logging context for the request.
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise AuthenticationRequired()
    user = await services.store.get_user(user_id)
    if user is None:
        raise AuthenticationRequired()
    set_principal_context(user.id)
    return user
