"""Unit tests for PostgresStore SQL wiring over a mocked asyncpg pool."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import asyncpg
import pytest

from todo_studio.access import list_access_where, task_access_where
from todo_studio.errors import ConflictError, NotFoundOrForbidden
from todo_studio.models import ActivityType, Tag, Task, TaskActivity, TaskList, TaskPriority
from todo_studio.storage.base import SYNC_ELIGIBLE, TaskFilter
from todo_studio.storage.postgres import SCHEMA_DDL, PostgresStore

pytestmark = pytest.mark.unit

NOW = datetime(2031, 1, 1, tzinfo=UTC)


@pytest.fixture
def pool() -> AsyncMock:
    pool = AsyncMock()
    pool.fetch = AsyncMock(return_value=[])
    pool.fetchrow = AsyncMock(return_value=None)
    pool.execute = AsyncMock(return_value="INSERT 0 1")
    return pool


@pytest.fixture
def pg_store(pool) -> PostgresStore:
    return PostgresStore(pool)


async def test_ensure_schema_runs_every_statement(pg_store, pool):
    await pg_store.ensure_schema()
    assert pool.execute.await_count == len(SCHEMA_DDL)


async def test_duplicate_list_name_is_conflict(pg_store, pool):
    pool.execute.side_effect = asyncpg.UniqueViolationError("duplicate key value")
    with pytest.raises(ConflictError):
        await pg_store.create_list(TaskList(id="l", owner_id="u", name="Home"))


async def test_update_missing_list(pg_store, pool):
    pool.execute.return_value = "UPDATE 0"
    with pytest.raises(NotFoundOrForbidden):
        await pg_store.update_list(TaskList(id="l", owner_id="u", name="Home"))


async def test_delete_reports_affected_rows(pg_store, pool):
    pool.execute.return_value = "DELETE 1"
    assert await pg_store.delete_task("t") is True
    pool.execute.return_value = "DELETE 0"
    assert await pg_store.delete_task("t") is False


async def test_update_missing_task(pg_store):
    with pytest.raises(NotFoundOrForbidden):
        await pg_store.update_task(Task(id="t", owner_id="u", title="T"))


async def test_list_tasks_binds_principal_and_filters(pg_store, pool):
    await pg_store.list_tasks(
        task_access_where("user-alice"),
        TaskFilter(priority=TaskPriority.HIGH, is_completed=False, has_due_date=True),
    )
    sql, *args = pool.fetch.await_args.args
    assert args == ["user-alice", "HIGH", False]
    assert "t.owner_id = $1" in sql
    assert "t.priority = $2" in sql
    assert "t.is_completed = $3" in sql
    assert "t.due_date IS NOT NULL" in sql
    assert "ORDER BY t.is_completed ASC, t.due_date ASC NULLS LAST" in sql


async def test_sync_eligible_filter(pg_store, pool):
    await pg_store.list_tasks(task_access_where("u"), SYNC_ELIGIBLE)
    sql, *args = pool.fetch.await_args.args
    assert "t.due_date IS NOT NULL" in sql
    assert args == ["u", False]


async def test_list_lists_uses_visibility_sql(pg_store, pool):
    await pg_store.list_lists(list_access_where("user-bob"))
    sql, principal = pool.fetch.await_args.args
    assert principal == "user-bob"
    assert "l.owner_id = $1" in sql


async def test_identifier_lookup_is_case_insensitive(pg_store, pool):
    await pg_store.find_user_by_identifier("  Bob@Example.COM ")
    assert pool.fetchrow.await_args.args[1] == "bob@example.com"


async def test_activity_metadata_round_trip(pg_store, pool):
    entry = TaskActivity(
        id="a",
        task_id="t",
        actor_id=None,
        type=ActivityType.STATUS_CHANGED,
        message="System changed the task status.",
        metadata={"from": "TODO", "to": "DONE"},
        created_at=NOW,
    )
    await pg_store.append_activity(entry)
    assert json.loads(pool.execute.await_args.args[6]) == {"from": "TODO", "to": "DONE"}

    pool.fetch.return_value = [
        {
            "id": "a",
            "task_id": "t",
            "actor_id": None,
            "type": "STATUS_CHANGED",
            "message": entry.message,
            "metadata": '{"from": "TODO", "to": "DONE"}',
            "created_at": NOW.replace(tzinfo=None),
        }
    ]
    [loaded] = await pg_store.list_activity("t", limit=5)
    assert loaded == entry
    assert pool.fetch.await_args.args[2] == 5


def _task_row(**overrides):
    row = {
        "id": "t",
        "owner_id": "u",
        "list_id": None,
        "title": "T",
        "description": "",
        "due_date": None,
        "priority": "MEDIUM",
        "status": "TODO",
        "is_completed": False,
        "tag_ids": None,
        "created_at": NOW.replace(tzinfo=None),
        "updated_at": NOW.replace(tzinfo=None),
    }
    row.update(overrides)
    return row


async def test_duplicate_tag_name_is_conflict(pg_store, pool):
    pool.execute.side_effect = asyncpg.UniqueViolationError("duplicate key value")
    with pytest.raises(ConflictError, match="tag"):
        await pg_store.create_tag(Tag(id="g", owner_id="u", name="urgent"))


async def test_create_task_links_tags_in_order(pg_store, pool):
    await pg_store.create_task(Task(id="t", owner_id="u", title="T", tag_ids=["b", "a"]))
    sql, *args = pool.execute.await_args.args
    assert "INSERT INTO task_tags" in sql
    assert "WITH ORDINALITY" in sql
    assert args == ["t", ["b", "a"]]


async def test_create_task_without_tags_skips_links(pg_store, pool):
    await pg_store.create_task(Task(id="t", owner_id="u", title="T"))
    assert pool.execute.await_count == 1


async def test_update_task_rewrites_links_only_when_changed(pg_store, pool):
    pool.fetchrow.return_value = _task_row(tag_ids=["a"])

    same = await pg_store.update_task(Task(id="t", owner_id="u", title="T", tag_ids=["a"]))
    assert same.tag_ids == ["a"]
    assert pool.execute.await_count == 0

    cleared = await pg_store.update_task(Task(id="t", owner_id="u", title="T"))
    assert cleared.tag_ids == []
    [(delete_sql, task_id)] = [call.args for call in pool.execute.await_args_list]
    assert delete_sql.startswith("DELETE FROM task_tags")
    assert task_id == "t"


async def test_task_columns_aggregate_tag_ids(pg_store, pool):
    pool.fetchrow.return_value = _task_row(tag_ids=["x", "y"])
    task = await pg_store.get_task("t")
    assert task.tag_ids == ["x", "y"]
    assert "array_agg(tt.tag_id ORDER BY tt.position)" in pool.fetchrow.await_args.args[0]


async def test_count_owned_tags_binds_unique_ids(pg_store, pool):
    pool.fetchval = AsyncMock(return_value=2)
    assert await pg_store.count_owned_tags("u", ["a", "b", "a"]) == 2
    sql, *args = pool.fetchval.await_args.args
    assert "id = ANY($2::text[])" in sql
    assert args == ["u", ["a", "b"]]
