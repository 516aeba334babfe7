"""CLI for Todo Studio: serve the API and run maintenance tasks."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import click

from todo_studio import __version__
from todo_studio.config import CONFIG_FILENAME, AppConfig, load_config
from todo_studio.core.logging import configure_logging, set_principal_context
from todo_studio.db import Database
from todo_studio.errors import TodoStudioError
from todo_studio.models import User, new_id
from todo_studio.storage.postgres import PostgresStore

logger = logging.getLogger(__name__)


def _load(config_path: Path | None) -> AppConfig:
    if config_path is not None:
        return load_config(config_path)
    default_path = Path.cwd() / CONFIG_FILENAME
    if default_path.exists():
        return load_config(default_path)
    return AppConfig.from_env()


def _run(coro_fn: Callable[[], Awaitable[Any]]) -> Any:
    """Run *coro_fn* and turn domain errors into a clean exit status."""
    try:
        return asyncio.run(coro_fn())
    except TodoStudioError as exc:
        click.echo(f"Error ({exc.code}): {exc.message}", err=True)
        sys.exit(1)


@asynccontextmanager
async def _open_store(config: AppConfig):
    db = Database.from_env(config.db.name)
    pool = await db.connect()
    try:
        yield PostgresStore(pool)
    finally:
        await db.close()


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help=f"Path to {CONFIG_FILENAME} (or its directory). Defaults to ./{CONFIG_FILENAME}, "
    "then environment variables.",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """Todo Studio: shared task lists with Google Calendar sync."""
    try:
        config = _load(config_path)
    except TodoStudioError as exc:
        click.echo(f"Error ({exc.code}): {exc.message}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
    )
    ctx.obj = config


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to app.host)")
@click.option("--port", type=int, default=None, help="Bind port (defaults to app.port)")
@click.pass_obj
def serve(config: AppConfig, host: str | None, port: int | None) -> None:
    """Start the HTTP API."""
    import uvicorn

    from todo_studio.api.app import create_app

    bind_host = host or config.host
    bind_port = port or config.port
    click.echo(f"Starting Todo Studio API on {bind_host}:{bind_port}")
    # log_config=None keeps the structlog handlers installed by the group.
    uvicorn.run(create_app(config), host=bind_host, port=bind_port, log_config=None)


@cli.command("init-db")
@click.pass_obj
def init_db(config: AppConfig) -> None:
    """Create the database if needed and apply the schema."""

    async def _init() -> None:
        db = Database.from_env(config.db.name)
        await db.provision()
        pool = await db.connect()
        try:
            await PostgresStore(pool).ensure_schema()
        finally:
            await db.close()

    _run(_init)
    click.echo(f"Schema applied to database {config.db.name}")


@cli.command("create-user")
@click.option("--email", required=True)
@click.option("--username", required=True)
@click.option("--display-name", default=None)
@click.pass_obj
def create_user(config: AppConfig, email: str, username: str, display_name: str | None) -> None:
    """Register a user record (identity is managed upstream)."""

    async def _create() -> User:
        async with _open_store(config) as store:
            return await store.create_user(
                User(
                    id=new_id(),
                    email=email.strip().lower(),
                    username=username.strip().lower(),
                    display_name=display_name,
                )
            )

    user = _run(_create)
    click.echo(user.id)


@cli.command()
@click.option("--user-id", required=True, help="User whose tasks are reconciled")
@click.pass_obj
def sync(config: AppConfig, user_id: str) -> None:
    """Run one Google Calendar reconciliation pass and print the counts."""
    from todo_studio.api.deps import build_services

    async def _sync() -> dict[str, int]:
        set_principal_context(user_id)
        async with _open_store(config) as store:
            services = build_services(config, store)
            try:
                # The CLI bypasses the per-user HTTP rate limit.
                result = await services.sync_engine.sync(user_id)
            finally:
                await services.aclose()
            return result.as_dict()

    click.echo(json.dumps(_run(_sync)))


@cli.command("rotate-token")
@click.option("--user-id", required=True)
@click.option(
    "--kind",
    type=click.Choice(["ics", "webhook"]),
    required=True,
    help="Which token to replace; the other one is left untouched",
)
@click.pass_obj
def rotate_token(config: AppConfig, user_id: str, kind: str) -> None:
    """Replace a user's calendar feed or webhook token and print the new URL."""
    from todo_studio.api.deps import build_services

    async def _rotate() -> str:
        set_principal_context(user_id)
        async with _open_store(config) as store:
            services = build_services(config, store)
            try:
                if kind == "ics":
                    return await services.integrations.rotate_ics_token(user_id)
                return await services.integrations.rotate_webhook_token(user_id)
            finally:
                await services.aclose()

    click.echo(_run(_rotate))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
