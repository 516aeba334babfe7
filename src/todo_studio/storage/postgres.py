"""asyncpg-backed :class:`Store`.

Raw SQL against a handful of tables created by :func:`ensure_schema`.  Every
method is a single statement (or a short sequence of independent
statements), so rows commit one at a time.  Unique composite keys back the
upserts:

- ``task_lists (owner_id, name)``
- ``tags (owner_id, name)``
- ``list_collaborators (list_id, user_id)``
- ``integration_connections (user_id, provider)``
- ``external_calendar_events (connection_id, task_id)``
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

import asyncpg

from todo_studio.errors import ConflictError, NotFoundOrForbidden
from todo_studio.models import (
    ActivityType,
    CollaboratorGrant,
    CollaboratorRole,
    ExternalEventMapping,
    FeedTokens,
    IntegrationConnection,
    IntegrationProvider,
    Tag,
    Task,
    TaskActivity,
    TaskComment,
    TaskList,
    TaskPriority,
    TaskStatus,
    User,
    ensure_utc,
)
from todo_studio.storage.base import Store, TaskFilter

if TYPE_CHECKING:
    from todo_studio.access import ListVisibility, TaskVisibility

logger = logging.getLogger(__name__)

SCHEMA_DDL: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id           TEXT PRIMARY KEY,
        email        TEXT NOT NULL UNIQUE,
        username     TEXT NOT NULL UNIQUE,
        display_name TEXT,
        created_at   TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_lists (
        id         TEXT PRIMARY KEY,
        owner_id   TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        name       TEXT NOT NULL,
        color      TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (owner_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS list_collaborators (
        id            TEXT PRIMARY KEY,
        list_id       TEXT NOT NULL REFERENCES task_lists(id) ON DELETE CASCADE,
        user_id       TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        role          TEXT NOT NULL,
        invited_by_id TEXT REFERENCES users(id) ON DELETE SET NULL,
        created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (list_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id           TEXT PRIMARY KEY,
        owner_id     TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        list_id      TEXT REFERENCES task_lists(id) ON DELETE CASCADE,
        title        TEXT NOT NULL,
        description  TEXT NOT NULL DEFAULT '',
        due_date     TIMESTAMPTZ,
        priority     TEXT NOT NULL DEFAULT 'MEDIUM',
        status       TEXT NOT NULL DEFAULT 'TODO',
        is_completed BOOLEAN NOT NULL DEFAULT false,
        created_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at   TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_tasks_owner_id ON tasks (owner_id)",
    "CREATE INDEX IF NOT EXISTS ix_tasks_list_id ON tasks (list_id)",
    """
    CREATE TABLE IF NOT EXISTS tags (
        id         TEXT PRIMARY KEY,
        owner_id   TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        name       TEXT NOT NULL,
        color      TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (owner_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_tags (
        task_id  TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        tag_id   TEXT NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
        position INTEGER NOT NULL,
        PRIMARY KEY (task_id, tag_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_task_tags_tag_id ON task_tags (tag_id)",
    """
    CREATE TABLE IF NOT EXISTS task_comments (
        id         TEXT PRIMARY KEY,
        task_id    TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        author_id  TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        body       TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_activity (
        id         TEXT PRIMARY KEY,
        task_id    TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
        actor_id   TEXT REFERENCES users(id) ON DELETE SET NULL,
        type       TEXT NOT NULL,
        message    TEXT NOT NULL,
        metadata   JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_task_activity_task_created "
    "ON task_activity (task_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS integration_connections (
        id                      TEXT PRIMARY KEY,
        user_id                 TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        provider                TEXT NOT NULL,
        access_token            TEXT,
        refresh_token           TEXT,
        access_token_expires_at TIMESTAMPTZ,
        calendar_id             TEXT,
        external_account_email  TEXT,
        updated_at              TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (user_id, provider)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS external_calendar_events (
        id                TEXT PRIMARY KEY,
        connection_id     TEXT NOT NULL
            REFERENCES integration_connections(id) ON DELETE CASCADE,
        task_id           TEXT NOT NULL,
        external_event_id TEXT NOT NULL,
        created_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (connection_id, task_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_feed_tokens (
        user_id       TEXT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
        ics_token     TEXT NOT NULL UNIQUE,
        webhook_token TEXT NOT NULL UNIQUE
    )
    """,
)

_TASK_COLUMNS = (
    "t.id, t.owner_id, t.list_id, t.title, t.description, t.due_date, t.priority, "
    "t.status, t.is_completed, t.created_at, t.updated_at, "
    "COALESCE((SELECT array_agg(tt.tag_id ORDER BY tt.position) FROM task_tags tt "
    "WHERE tt.task_id = t.id), '{}'::text[]) AS tag_ids"
)
_CONNECTION_COLUMNS = (
    "id, user_id, provider, access_token, refresh_token, access_token_expires_at, "
    "calendar_id, external_account_email, updated_at"
)


async def ensure_schema(pool: Any) -> None:
    """Create all tables and indexes if they do not exist."""
    for statement in SCHEMA_DDL:
        await pool.execute(statement)
    logger.info("Todo Studio schema ensured (%d statements)", len(SCHEMA_DDL))


def _affected(result: str | None) -> bool:
    # asyncpg returns a status string like "DELETE 1".
    return bool(result) and result.split()[-1] != "0"


def _utc(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if value is not None else None


def _user(row: Any) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        username=row["username"],
        display_name=row["display_name"],
    )


def _task_list(row: Any) -> TaskList:
    return TaskList(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        color=row["color"],
        created_at=ensure_utc(row["created_at"]),
    )


def _grant(row: Any) -> CollaboratorGrant:
    return CollaboratorGrant(
        id=row["id"],
        list_id=row["list_id"],
        user_id=row["user_id"],
        role=CollaboratorRole(row["role"]),
        invited_by_id=row["invited_by_id"],
        created_at=ensure_utc(row["created_at"]),
    )


def _task(row: Any) -> Task:
    return Task(
        id=row["id"],
        owner_id=row["owner_id"],
        list_id=row["list_id"],
        title=row["title"],
        description=row["description"] or "",
        due_date=_utc(row["due_date"]),
        priority=TaskPriority(row["priority"]),
        status=TaskStatus(row["status"]),
        is_completed=bool(row["is_completed"]),
        tag_ids=list(row["tag_ids"] or []),
        created_at=ensure_utc(row["created_at"]),
        updated_at=ensure_utc(row["updated_at"]),
    )


def _tag(row: Any) -> Tag:
    return Tag(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        color=row["color"],
        created_at=ensure_utc(row["created_at"]),
    )


def _comment(row: Any) -> TaskComment:
    return TaskComment(
        id=row["id"],
        task_id=row["task_id"],
        author_id=row["author_id"],
        body=row["body"],
        created_at=ensure_utc(row["created_at"]),
    )


def _activity(row: Any) -> TaskActivity:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return TaskActivity(
        id=row["id"],
        task_id=row["task_id"],
        actor_id=row["actor_id"],
        type=ActivityType(row["type"]),
        message=row["message"],
        metadata=metadata,
        created_at=ensure_utc(row["created_at"]),
    )


def _connection(row: Any) -> IntegrationConnection:
    return IntegrationConnection(
        id=row["id"],
        user_id=row["user_id"],
        provider=IntegrationProvider(row["provider"]),
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        access_token_expires_at=_utc(row["access_token_expires_at"]),
        calendar_id=row["calendar_id"],
        external_account_email=row["external_account_email"],
        updated_at=ensure_utc(row["updated_at"]),
    )


def _mapping(row: Any) -> ExternalEventMapping:
    return ExternalEventMapping(
        id=row["id"],
        connection_id=row["connection_id"],
        task_id=row["task_id"],
        external_event_id=row["external_event_id"],
        created_at=ensure_utc(row["created_at"]),
    )


def _feed_tokens(row: Any) -> FeedTokens:
    return FeedTokens(
        user_id=row["user_id"],
        ics_token=row["ics_token"],
        webhook_token=row["webhook_token"],
    )


def _task_filter_sql(task_filter: TaskFilter, args: list[Any]) -> list[str]:
    """Translate *task_filter* into WHERE clauses, appending bind values to *args*."""
    clauses: list[str] = []

    def bind(value: Any) -> str:
        args.append(value)
        return f"${len(args)}"

    if task_filter.list_id is not None:
        clauses.append(f"t.list_id = {bind(task_filter.list_id)}")
    if task_filter.priority is not None:
        clauses.append(f"t.priority = {bind(task_filter.priority.value)}")
    if task_filter.status is not None:
        clauses.append(f"t.status = {bind(task_filter.status.value)}")
    if task_filter.is_completed is not None:
        clauses.append(f"t.is_completed = {bind(task_filter.is_completed)}")
    if task_filter.has_due_date is True:
        clauses.append("t.due_date IS NOT NULL")
    elif task_filter.has_due_date is False:
        clauses.append("t.due_date IS NULL")
    if task_filter.due_from is not None:
        clauses.append(f"t.due_date >= {bind(task_filter.due_from)}")
    if task_filter.due_to is not None:
        clauses.append(f"t.due_date <= {bind(task_filter.due_to)}")
    return clauses


class PostgresStore(Store):
    """Store over an asyncpg pool (or anything exposing fetch/fetchrow/execute)."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def ensure_schema(self) -> None:
        await ensure_schema(self.pool)

    # -- users -----------------------------------------------------------

    async def get_user(self, user_id: str) -> User | None:
        row = await self.pool.fetchrow(
            "SELECT id, email, username, display_name FROM users WHERE id = $1", user_id
        )
        return _user(row) if row else None

    async def find_user_by_identifier(self, identifier: str) -> User | None:
        row = await self.pool.fetchrow(
            """
            SELECT id, email, username, display_name FROM users
            WHERE lower(email) = $1 OR lower(username) = $1
            LIMIT 1
            """,
            identifier.strip().lower(),
        )
        return _user(row) if row else None

    async def create_user(self, user: User) -> User:
        await self.pool.execute(
            "INSERT INTO users (id, email, username, display_name) VALUES ($1, $2, $3, $4)",
            user.id,
            user.email,
            user.username,
            user.display_name,
        )
        return user

    # -- lists -----------------------------------------------------------

    async def get_list(self, list_id: str) -> TaskList | None:
        row = await self.pool.fetchrow(
            "SELECT id, owner_id, name, color, created_at FROM task_lists WHERE id = $1",
            list_id,
        )
        return _task_list(row) if row else None

    async def find_list_by_name(self, owner_id: str, name: str) -> TaskList | None:
        row = await self.pool.fetchrow(
            """
            SELECT id, owner_id, name, color, created_at FROM task_lists
            WHERE owner_id = $1 AND name = $2
            """,
            owner_id,
            name,
        )
        return _task_list(row) if row else None

    async def create_list(self, task_list: TaskList) -> TaskList:
        try:
            await self.pool.execute(
                """
                INSERT INTO task_lists (id, owner_id, name, color, created_at)
                VALUES ($1, $2, $3, $4, $5)
                """,
                task_list.id,
                task_list.owner_id,
                task_list.name,
                task_list.color,
                task_list.created_at,
            )
        except asyncpg.UniqueViolationError as exc:
            raise ConflictError("A list with this name already exists") from exc
        return task_list

    async def upsert_list_by_name(self, task_list: TaskList) -> TaskList:
        # The no-op DO UPDATE makes RETURNING yield the existing row.
        row = await self.pool.fetchrow(
            """
            INSERT INTO task_lists (id, owner_id, name, color, created_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (owner_id, name) DO UPDATE SET name = EXCLUDED.name
            RETURNING id, owner_id, name, color, created_at
            """,
            task_list.id,
            task_list.owner_id,
            task_list.name,
            task_list.color,
            task_list.created_at,
        )
        return _task_list(row)

    async def update_list(self, task_list: TaskList) -> TaskList:
        try:
            result = await self.pool.execute(
                "UPDATE task_lists SET name = $2, color = $3 WHERE id = $1",
                task_list.id,
                task_list.name,
                task_list.color,
            )
        except asyncpg.UniqueViolationError as exc:
            raise ConflictError("A list with this name already exists") from exc
        if not _affected(result):
            raise NotFoundOrForbidden("List not found")
        return task_list

    async def delete_list(self, list_id: str) -> bool:
        # Grants and tasks go with the list via ON DELETE CASCADE.
        result = await self.pool.execute("DELETE FROM task_lists WHERE id = $1", list_id)
        return _affected(result)

    async def list_lists(self, visibility: ListVisibility) -> list[TaskList]:
        rows = await self.pool.fetch(
            f"""
            SELECT l.id, l.owner_id, l.name, l.color, l.created_at
            FROM task_lists l
            WHERE {visibility.sql(list_alias="l", param=1)}
            ORDER BY l.created_at ASC
            """,
            visibility.principal_id,
        )
        return [_task_list(row) for row in rows]

    # -- collaborator grants ---------------------------------------------

    async def get_grant(self, list_id: str, user_id: str) -> CollaboratorGrant | None:
        row = await self.pool.fetchrow(
            """
            SELECT id, list_id, user_id, role, invited_by_id, created_at
            FROM list_collaborators WHERE list_id = $1 AND user_id = $2
            """,
            list_id,
            user_id,
        )
        return _grant(row) if row else None

    async def get_grant_by_id(self, grant_id: str) -> CollaboratorGrant | None:
        row = await self.pool.fetchrow(
            """
            SELECT id, list_id, user_id, role, invited_by_id, created_at
            FROM list_collaborators WHERE id = $1
            """,
            grant_id,
        )
        return _grant(row) if row else None

    async def upsert_grant(self, grant: CollaboratorGrant) -> CollaboratorGrant:
        row = await self.pool.fetchrow(
            """
            INSERT INTO list_collaborators (id, list_id, user_id, role, invited_by_id, created_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (list_id, user_id) DO UPDATE SET
                role          = EXCLUDED.role,
                invited_by_id = EXCLUDED.invited_by_id
            RETURNING id, list_id, user_id, role, invited_by_id, created_at
            """,
            grant.id,
            grant.list_id,
            grant.user_id,
            grant.role.value,
            grant.invited_by_id,
            grant.created_at,
        )
        return _grant(row)

    async def delete_grant(self, grant_id: str) -> bool:
        result = await self.pool.execute("DELETE FROM list_collaborators WHERE id = $1", grant_id)
        return _affected(result)

    async def list_grants(self, list_id: str) -> list[CollaboratorGrant]:
        rows = await self.pool.fetch(
            """
            SELECT id, list_id, user_id, role, invited_by_id, created_at
            FROM list_collaborators WHERE list_id = $1
            ORDER BY created_at ASC
            """,
            list_id,
        )
        return [_grant(row) for row in rows]

    # -- tasks -----------------------------------------------------------

    async def get_task(self, task_id: str) -> Task | None:
        row = await self.pool.fetchrow(
            f"SELECT {_TASK_COLUMNS} FROM tasks t WHERE t.id = $1", task_id
        )
        return _task(row) if row else None

    async def create_task(self, task: Task) -> Task:
        await self.pool.execute(
            """
            INSERT INTO tasks (id, owner_id, list_id, title, description, due_date,
                               priority, status, is_completed, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            """,
            task.id,
            task.owner_id,
            task.list_id,
            task.title,
            task.description,
            task.due_date,
            task.priority.value,
            task.status.value,
            task.is_completed,
            task.created_at,
            task.updated_at,
        )
        if task.tag_ids:
            await self._insert_task_tags(task.id, task.tag_ids)
        return task

    async def update_task(self, task: Task) -> Task:
        row = await self.pool.fetchrow(
            f"""
            UPDATE tasks t SET
                list_id      = $2,
                title        = $3,
                description  = $4,
                due_date     = $5,
                priority     = $6,
                status       = $7,
                is_completed = $8,
                updated_at   = now()
            WHERE t.id = $1
            RETURNING {_TASK_COLUMNS}
            """,
            task.id,
            task.list_id,
            task.title,
            task.description,
            task.due_date,
            task.priority.value,
            task.status.value,
            task.is_completed,
        )
        if row is None:
            raise NotFoundOrForbidden("Task not found")
        # RETURNING sees the links as they were before this call.
        if list(row["tag_ids"] or []) != task.tag_ids:
            await self.pool.execute("DELETE FROM task_tags WHERE task_id = $1", task.id)
            if task.tag_ids:
                await self._insert_task_tags(task.id, task.tag_ids)
        return replace(_task(row), tag_ids=list(task.tag_ids))

    async def _insert_task_tags(self, task_id: str, tag_ids: list[str]) -> None:
        await self.pool.execute(
            """
            INSERT INTO task_tags (task_id, tag_id, position)
            SELECT $1, link.tag_id, link.position
            FROM unnest($2::text[]) WITH ORDINALITY AS link(tag_id, position)
            """,
            task_id,
            tag_ids,
        )

    async def delete_task(self, task_id: str) -> bool:
        result = await self.pool.execute("DELETE FROM tasks WHERE id = $1", task_id)
        return _affected(result)

    async def list_tasks(
        self,
        visibility: TaskVisibility,
        task_filter: TaskFilter | None = None,
    ) -> list[Task]:
        args: list[Any] = [visibility.principal_id]
        clauses = [visibility.sql(task_alias="t", param=1)]
        if task_filter is not None:
            clauses.extend(_task_filter_sql(task_filter, args))
        rows = await self.pool.fetch(
            f"""
            SELECT {_TASK_COLUMNS} FROM tasks t
            WHERE {" AND ".join(clauses)}
            ORDER BY t.is_completed ASC, t.due_date ASC NULLS LAST, t.created_at DESC
            """,
            *args,
        )
        return [_task(row) for row in rows]

    # -- tags ------------------------------------------------------------

    async def create_tag(self, tag: Tag) -> Tag:
        try:
            await self.pool.execute(
                """
                INSERT INTO tags (id, owner_id, name, color, created_at)
                VALUES ($1, $2, $3, $4, $5)
                """,
                tag.id,
                tag.owner_id,
                tag.name,
                tag.color,
                tag.created_at,
            )
        except asyncpg.UniqueViolationError as exc:
            raise ConflictError("A tag with this name already exists") from exc
        return tag

    async def find_tag_by_name(self, owner_id: str, name: str) -> Tag | None:
        row = await self.pool.fetchrow(
            """
            SELECT id, owner_id, name, color, created_at FROM tags
            WHERE owner_id = $1 AND name = $2
            """,
            owner_id,
            name,
        )
        return _tag(row) if row else None

    async def list_tags(self, owner_id: str) -> list[Tag]:
        rows = await self.pool.fetch(
            """
            SELECT id, owner_id, name, color, created_at FROM tags
            WHERE owner_id = $1 ORDER BY created_at ASC
            """,
            owner_id,
        )
        return [_tag(row) for row in rows]

    async def count_owned_tags(self, owner_id: str, tag_ids: list[str]) -> int:
        count = await self.pool.fetchval(
            "SELECT count(*) FROM tags WHERE owner_id = $1 AND id = ANY($2::text[])",
            owner_id,
            list(dict.fromkeys(tag_ids)),
        )
        return int(count or 0)

    async def count_tasks_by_tag(self, owner_id: str) -> dict[str, int]:
        rows = await self.pool.fetch(
            """
            SELECT g.id, count(tt.task_id) AS task_count
            FROM tags g LEFT JOIN task_tags tt ON tt.tag_id = g.id
            WHERE g.owner_id = $1
            GROUP BY g.id
            """,
            owner_id,
        )
        return {row["id"]: int(row["task_count"]) for row in rows}

    # -- comments & activity ---------------------------------------------

    async def create_comment(self, comment: TaskComment) -> TaskComment:
        await self.pool.execute(
            """
            INSERT INTO task_comments (id, task_id, author_id, body, created_at)
            VALUES ($1, $2, $3, $4, $5)
            """,
            comment.id,
            comment.task_id,
            comment.author_id,
            comment.body,
            comment.created_at,
        )
        return comment

    async def list_comments(self, task_id: str) -> list[TaskComment]:
        rows = await self.pool.fetch(
            """
            SELECT id, task_id, author_id, body, created_at FROM task_comments
            WHERE task_id = $1 ORDER BY created_at ASC
            """,
            task_id,
        )
        return [_comment(row) for row in rows]

    async def append_activity(self, activity: TaskActivity) -> None:
        await self.pool.execute(
            """
            INSERT INTO task_activity (id, task_id, actor_id, type, message, metadata, created_at)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
            """,
            activity.id,
            activity.task_id,
            activity.actor_id,
            activity.type.value,
            activity.message,
            json.dumps(activity.metadata) if activity.metadata is not None else None,
            activity.created_at,
        )

    async def list_activity(self, task_id: str, *, limit: int = 50) -> list[TaskActivity]:
        rows = await self.pool.fetch(
            """
            SELECT id, task_id, actor_id, type, message, metadata, created_at
            FROM task_activity WHERE task_id = $1
            ORDER BY created_at DESC
            LIMIT $2
            """,
            task_id,
            limit,
        )
        return [_activity(row) for row in rows]

    # -- integration connections -----------------------------------------

    async def get_connection(
        self,
        user_id: str,
        provider: IntegrationProvider = IntegrationProvider.GOOGLE_CALENDAR,
    ) -> IntegrationConnection | None:
        row = await self.pool.fetchrow(
            f"""
            SELECT {_CONNECTION_COLUMNS} FROM integration_connections
            WHERE user_id = $1 AND provider = $2
            """,
            user_id,
            provider.value,
        )
        return _connection(row) if row else None

    async def save_connection(self, connection: IntegrationConnection) -> IntegrationConnection:
        row = await self.pool.fetchrow(
            f"""
            INSERT INTO integration_connections
                (id, user_id, provider, access_token, refresh_token,
                 access_token_expires_at, calendar_id, external_account_email)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (user_id, provider) DO UPDATE SET
                access_token            = EXCLUDED.access_token,
                refresh_token           = EXCLUDED.refresh_token,
                access_token_expires_at = EXCLUDED.access_token_expires_at,
                calendar_id             = EXCLUDED.calendar_id,
                external_account_email  = EXCLUDED.external_account_email,
                updated_at              = now()
            RETURNING {_CONNECTION_COLUMNS}
            """,
            connection.id,
            connection.user_id,
            connection.provider.value,
            connection.access_token,
            connection.refresh_token,
            connection.access_token_expires_at,
            connection.calendar_id,
            connection.external_account_email,
        )
        return _connection(row)

    async def update_connection_tokens(
        self,
        connection_id: str,
        *,
        access_token: str,
        access_token_expires_at: datetime,
        refresh_token: str | None,
    ) -> IntegrationConnection:
        row = await self.pool.fetchrow(
            f"""
            UPDATE integration_connections SET
                access_token            = $2,
                access_token_expires_at = $3,
                refresh_token           = COALESCE($4, refresh_token),
                updated_at              = now()
            WHERE id = $1
            RETURNING {_CONNECTION_COLUMNS}
            """,
            connection_id,
            access_token,
            access_token_expires_at,
            refresh_token,
        )
        if row is None:
            raise NotFoundOrForbidden("Integration connection not found")
        return _connection(row)

    async def set_connection_calendar_id(self, connection_id: str, calendar_id: str) -> None:
        result = await self.pool.execute(
            """
            UPDATE integration_connections SET calendar_id = $2, updated_at = now()
            WHERE id = $1
            """,
            connection_id,
            calendar_id,
        )
        if not _affected(result):
            raise NotFoundOrForbidden("Integration connection not found")

    async def delete_connection(
        self,
        user_id: str,
        provider: IntegrationProvider = IntegrationProvider.GOOGLE_CALENDAR,
    ) -> bool:
        # Mappings go with the connection via ON DELETE CASCADE.
        result = await self.pool.execute(
            "DELETE FROM integration_connections WHERE user_id = $1 AND provider = $2",
            user_id,
            provider.value,
        )
        return _affected(result)

    # -- event mappings --------------------------------------------------

    async def list_mappings(self, connection_id: str) -> list[ExternalEventMapping]:
        rows = await self.pool.fetch(
            """
            SELECT id, connection_id, task_id, external_event_id, created_at
            FROM external_calendar_events WHERE connection_id = $1
            """,
            connection_id,
        )
        return [_mapping(row) for row in rows]

    async def create_mapping(self, mapping: ExternalEventMapping) -> ExternalEventMapping:
        row = await self.pool.fetchrow(
            """
            INSERT INTO external_calendar_events
                (id, connection_id, task_id, external_event_id, created_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (connection_id, task_id) DO UPDATE SET
                external_event_id = EXCLUDED.external_event_id
            RETURNING id, connection_id, task_id, external_event_id, created_at
            """,
            mapping.id,
            mapping.connection_id,
            mapping.task_id,
            mapping.external_event_id,
            mapping.created_at,
        )
        return _mapping(row)

    async def delete_mapping(self, mapping_id: str) -> bool:
        result = await self.pool.execute(
            "DELETE FROM external_calendar_events WHERE id = $1", mapping_id
        )
        return _affected(result)

    # -- feed tokens -----------------------------------------------------

    async def get_feed_tokens(self, user_id: str) -> FeedTokens | None:
        row = await self.pool.fetchrow(
            "SELECT user_id, ics_token, webhook_token FROM user_feed_tokens WHERE user_id = $1",
            user_id,
        )
        return _feed_tokens(row) if row else None

    async def save_feed_tokens(self, tokens: FeedTokens) -> FeedTokens:
        await self.pool.execute(
            """
            INSERT INTO user_feed_tokens (user_id, ics_token, webhook_token)
            VALUES ($1, $2, $3)
            ON CONFLICT (user_id) DO UPDATE SET
                ics_token     = EXCLUDED.ics_token,
                webhook_token = EXCLUDED.webhook_token
            """,
            tokens.user_id,
            tokens.ics_token,
            tokens.webhook_token,
        )
        return tokens

    async def find_feed_tokens_by_ics_token(self, token: str) -> FeedTokens | None:
        row = await self.pool.fetchrow(
            "SELECT user_id, ics_token, webhook_token FROM user_feed_tokens WHERE ics_token = $1",
            token,
        )
        return _feed_tokens(row) if row else None

    async def find_feed_tokens_by_webhook_token(self, token: str) -> FeedTokens | None:
        row = await self.pool.fetchrow(
            """
            SELECT user_id, ics_token, webhook_token FROM user_feed_tokens
            WHERE webhook_token = $1
            """,
            token,
        )
        return _feed_tokens(row) if row else None

    def __repr__(self) -> str:
        return f"PostgresStore(pool={self.pool!r})"
