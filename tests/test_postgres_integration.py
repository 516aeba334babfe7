"""PostgresStore against a real PostgreSQL (testcontainers).

Exercises the SQL that the in-memory store only mirrors: visibility
predicates, upsert conflict targets and cascades.
"""

from __future__ import annotations

import shutil
import uuid
from datetime import UTC, datetime

import pytest

from todo_studio.access import AccessRole, resolve_task_access, task_access_where
from todo_studio.db import Database
from todo_studio.errors import ConflictError
from todo_studio.models import (
    CollaboratorGrant,
    CollaboratorRole,
    ExternalEventMapping,
    IntegrationConnection,
    Tag,
    Task,
    TaskList,
    User,
)
from todo_studio.storage.base import SYNC_ELIGIBLE
from todo_studio.storage.postgres import PostgresStore

docker_available = shutil.which("docker") is not None
pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not docker_available, reason="Docker not available"),
]


@pytest.fixture(scope="module")
def postgres_container():
    """Start a PostgreSQL container for the test module."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as postgres:
        yield postgres


@pytest.fixture
async def pg_store(postgres_container):
    db = Database(
        db_name=f"test_{uuid.uuid4().hex[:12]}",
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        user=postgres_container.username,
        password=postgres_container.password,
        min_pool_size=1,
        max_pool_size=3,
    )
    await db.provision()
    pool = await db.connect()
    store = PostgresStore(pool)
    await store.ensure_schema()
    for user_id in ("alice", "bob", "carol"):
        await store.create_user(User(id=user_id, email=f"{user_id}@example.com", username=user_id))
    yield store
    await db.close()


async def test_shared_visibility_and_roles(pg_store):
    await pg_store.create_list(TaskList(id="home", owner_id="alice", name="Home"))
    await pg_store.upsert_grant(
        CollaboratorGrant(id="g1", list_id="home", user_id="bob", role=CollaboratorRole.VIEWER)
    )
    await pg_store.create_task(Task(id="t1", owner_id="alice", title="Milk", list_id="home"))
    await pg_store.create_task(Task(id="t2", owner_id="alice", title="Private"))

    bob_tasks = await pg_store.list_tasks(task_access_where("bob"))
    assert [t.id for t in bob_tasks] == ["t1"]
    assert await pg_store.list_tasks(task_access_where("carol")) == []
    assert (await resolve_task_access(pg_store, "t1", "bob")).role is AccessRole.VIEWER

    # Re-inviting updates the role in place.
    updated = await pg_store.upsert_grant(
        CollaboratorGrant(id="g2", list_id="home", user_id="bob", role=CollaboratorRole.EDITOR)
    )
    assert updated.id == "g1"
    assert updated.role is CollaboratorRole.EDITOR


async def test_list_name_unique_and_upsert(pg_store):
    first = await pg_store.create_list(TaskList(id="l1", owner_id="alice", name="Inbox"))
    with pytest.raises(ConflictError):
        await pg_store.create_list(TaskList(id="l2", owner_id="alice", name="Inbox"))
    again = await pg_store.upsert_list_by_name(TaskList(id="l3", owner_id="alice", name="Inbox"))
    assert again.id == first.id


async def test_delete_list_cascades(pg_store):
    await pg_store.create_list(TaskList(id="l1", owner_id="alice", name="Work"))
    await pg_store.upsert_grant(
        CollaboratorGrant(id="g1", list_id="l1", user_id="bob", role=CollaboratorRole.EDITOR)
    )
    await pg_store.create_task(Task(id="t1", owner_id="alice", title="Ship", list_id="l1"))

    assert await pg_store.delete_list("l1") is True
    assert await pg_store.get_grant_by_id("g1") is None
    assert await pg_store.get_task("t1") is None


async def test_connection_tokens_and_mappings(pg_store):
    due = datetime(2031, 1, 1, 9, tzinfo=UTC)
    await pg_store.create_task(Task(id="t1", owner_id="alice", title="Dentist", due_date=due))
    saved = await pg_store.save_connection(
        IntegrationConnection(id="c1", user_id="alice", access_token="enc:a", refresh_token="enc:r")
    )
    updated = await pg_store.update_connection_tokens(
        saved.id, access_token="enc:a2", access_token_expires_at=due, refresh_token=None
    )
    assert updated.refresh_token == "enc:r"
    assert updated.access_token_expires_at == due

    await pg_store.create_mapping(
        ExternalEventMapping(id="m1", connection_id=saved.id, task_id="t1", external_event_id="e1")
    )
    eligible = await pg_store.list_tasks(task_access_where("alice"), SYNC_ELIGIBLE)
    assert [t.id for t in eligible] == ["t1"]

    assert await pg_store.delete_connection("alice") is True
    assert await pg_store.list_mappings(saved.id) == []


async def test_task_tags_follow_the_task(pg_store):
    await pg_store.create_tag(Tag(id="g1", owner_id="alice", name="urgent"))
    await pg_store.create_tag(Tag(id="g2", owner_id="alice", name="home"))
    with pytest.raises(ConflictError):
        await pg_store.create_tag(Tag(id="g3", owner_id="alice", name="urgent"))
    assert await pg_store.count_owned_tags("alice", ["g1", "g2", "nope"]) == 2
    assert await pg_store.count_owned_tags("bob", ["g1"]) == 0

    await pg_store.create_task(Task(id="t1", owner_id="alice", title="A", tag_ids=["g2", "g1"]))
    assert (await pg_store.get_task("t1")).tag_ids == ["g2", "g1"]

    stored = await pg_store.get_task("t1")
    stored.tag_ids = ["g1"]
    assert (await pg_store.update_task(stored)).tag_ids == ["g1"]
    assert await pg_store.count_tasks_by_tag("alice") == {"g1": 1, "g2": 0}

    assert await pg_store.delete_task("t1") is True
    assert await pg_store.count_tasks_by_tag("alice") == {"g1": 0, "g2": 0}
    assert [tag.name for tag in await pg_store.list_tags("alice")] == ["urgent", "home"]
