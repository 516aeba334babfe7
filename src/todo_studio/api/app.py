"""Todo Studio API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- Lifespan handler that opens the PostgreSQL pool, applies the schema and
  wires the services (skipped when a store is injected, e.g. in tests)
- Error envelope handlers (see :mod:`todo_studio.api.middleware`)
- Health endpoint at GET /api/health
- Task, list, tag, integration, webhook and feed routers
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from todo_studio import __version__
from todo_studio.api.deps import build_services
from todo_studio.api.middleware import register_error_handlers
from todo_studio.api.routers.feeds import router as feeds_router
from todo_studio.api.routers.integrations import router as integrations_router
from todo_studio.api.routers.lists import router as lists_router
from todo_studio.api.routers.tags import router as tags_router
from todo_studio.api.routers.tasks import router as tasks_router
from todo_studio.api.routers.webhook import router as webhook_router
from todo_studio.config import AppConfig
from todo_studio.db import Database
from todo_studio.rate_limit import RateLimiter
from todo_studio.storage.base import Store
from todo_studio.storage.postgres import PostgresStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle for the DB pool and outbound HTTP clients.

    When services were injected through :func:`create_app`, startup only
    reuses them; otherwise the database is provisioned, the schema applied
    and the services wired over a :class:`PostgresStore`.
    """
    config: AppConfig = app.state.config
    db: Database | None = None

    if getattr(app.state, "services", None) is None:
        db = Database.from_env(config.db.name)
        await db.provision()
        pool = await db.connect()
        store = PostgresStore(pool)
        await store.ensure_schema()
        app.state.services = build_services(config, store)
        logger.info("Todo Studio API started against database %s", db.db_name)

    yield

    await app.state.services.aclose()
    if db is not None:
        await db.close()
        app.state.services = None


def create_app(
    config: AppConfig | None = None,
    *,
    store: Store | None = None,
    http_client: httpx.AsyncClient | None = None,
    rate_limiter: RateLimiter | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Application configuration.  Defaults to :meth:`AppConfig.from_env`.
    store:
        Inject a ready store (for example ``InMemoryStore``) instead of
        connecting to PostgreSQL at startup.
    http_client:
        Shared ``httpx.AsyncClient`` for Google calls; only used together
        with *store*.
    rate_limiter:
        Replacement for the process-local rate limiter.
    sleep:
        Back-off sleep used by the calendar client between retries.
    cors_origins:
        Allowed CORS origins.  Defaults to the configured base URL.
    """
    config = config or AppConfig.from_env()

    app = FastAPI(
        title="Todo Studio API",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.config = config
    app.state.services = None
    if store is not None:
        app.state.services = build_services(
            config,
            store,
            http_client=http_client,
            rate_limiter=rate_limiter,
            sleep=sleep,
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or [config.base_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(tasks_router)
    app.include_router(lists_router)
    app.include_router(tags_router)
    app.include_router(integrations_router)
    app.include_router(webhook_router)
    app.include_router(feeds_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
