"""Dict-backed :class:`Store` implementation.

Used by the test-suite and for local runs without PostgreSQL.  Records are
copied on the way in and out so callers can never mutate stored state
without going through the store.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from todo_studio.access import ListVisibility, TaskVisibility
from todo_studio.errors import ConflictError, NotFoundOrForbidden
from todo_studio.models import (
    CollaboratorGrant,
    ExternalEventMapping,
    FeedTokens,
    IntegrationConnection,
    IntegrationProvider,
    Tag,
    Task,
    TaskActivity,
    TaskComment,
    TaskList,
    User,
    utc_now,
)
from todo_studio.storage.base import Store, TaskFilter

_FAR_FUTURE = datetime.max.replace(tzinfo=None)


def _copy_task(task: Task, **changes) -> Task:
    return replace(task, tag_ids=list(task.tag_ids), **changes)


def _task_sort_key(task: Task) -> tuple:
    due = task.due_date.replace(tzinfo=None) if task.due_date is not None else _FAR_FUTURE
    return (task.is_completed, task.due_date is None, due, -task.created_at.timestamp())


class InMemoryStore(Store):
    def __init__(self) -> None:
        self.users: dict[str, User] = {}
        self.lists: dict[str, TaskList] = {}
        self.grants: dict[str, CollaboratorGrant] = {}
        self.tags: dict[str, Tag] = {}
        self.tasks: dict[str, Task] = {}
        self.comments: dict[str, TaskComment] = {}
        self.activity: list[TaskActivity] = []
        self.connections: dict[str, IntegrationConnection] = {}
        self.mappings: dict[str, ExternalEventMapping] = {}
        self.feed_tokens: dict[str, FeedTokens] = {}

    # -- users -----------------------------------------------------------

    async def get_user(self, user_id: str) -> User | None:
        user = self.users.get(user_id)
        return replace(user) if user else None

    async def find_user_by_identifier(self, identifier: str) -> User | None:
        needle = identifier.strip().lower()
        for user in self.users.values():
            if user.email.lower() == needle or user.username.lower() == needle:
                return replace(user)
        return None

    async def create_user(self, user: User) -> User:
        self.users[user.id] = replace(user)
        return replace(user)

    # -- lists -----------------------------------------------------------

    async def get_list(self, list_id: str) -> TaskList | None:
        task_list = self.lists.get(list_id)
        return replace(task_list) if task_list else None

    async def find_list_by_name(self, owner_id: str, name: str) -> TaskList | None:
        for task_list in self.lists.values():
            if task_list.owner_id == owner_id and task_list.name == name:
                return replace(task_list)
        return None

    async def create_list(self, task_list: TaskList) -> TaskList:
        if await self.find_list_by_name(task_list.owner_id, task_list.name) is not None:
            raise ConflictError("A list with this name already exists")
        self.lists[task_list.id] = replace(task_list)
        return replace(task_list)

    async def upsert_list_by_name(self, task_list: TaskList) -> TaskList:
        existing = await self.find_list_by_name(task_list.owner_id, task_list.name)
        if existing is not None:
            return existing
        return await self.create_list(task_list)

    async def update_list(self, task_list: TaskList) -> TaskList:
        if task_list.id not in self.lists:
            raise NotFoundOrForbidden("List not found")
        self.lists[task_list.id] = replace(task_list)
        return replace(task_list)

    async def delete_list(self, list_id: str) -> bool:
        if self.lists.pop(list_id, None) is None:
            return False
        for grant_id in [g.id for g in self.grants.values() if g.list_id == list_id]:
            del self.grants[grant_id]
        for task_id in [t.id for t in self.tasks.values() if t.list_id == list_id]:
            await self.delete_task(task_id)
        return True

    async def list_lists(self, visibility: ListVisibility) -> list[TaskList]:
        visible = [
            replace(task_list)
            for task_list in self.lists.values()
            if visibility.matches(task_list, self._grant_for(task_list.id, visibility.principal_id))
        ]
        return sorted(visible, key=lambda item: item.created_at)

    # -- collaborator grants ---------------------------------------------

    def _grant_for(self, list_id: str, user_id: str) -> CollaboratorGrant | None:
        for grant in self.grants.values():
            if grant.list_id == list_id and grant.user_id == user_id:
                return grant
        return None

    async def get_grant(self, list_id: str, user_id: str) -> CollaboratorGrant | None:
        grant = self._grant_for(list_id, user_id)
        return replace(grant) if grant else None

    async def get_grant_by_id(self, grant_id: str) -> CollaboratorGrant | None:
        grant = self.grants.get(grant_id)
        return replace(grant) if grant else None

    async def upsert_grant(self, grant: CollaboratorGrant) -> CollaboratorGrant:
        existing = self._grant_for(grant.list_id, grant.user_id)
        if existing is not None:
            existing.role = grant.role
            existing.invited_by_id = grant.invited_by_id
            return replace(existing)
        self.grants[grant.id] = replace(grant)
        return replace(grant)

    async def delete_grant(self, grant_id: str) -> bool:
        return self.grants.pop(grant_id, None) is not None

    async def list_grants(self, list_id: str) -> list[CollaboratorGrant]:
        grants = [replace(g) for g in self.grants.values() if g.list_id == list_id]
        return sorted(grants, key=lambda item: item.created_at)

    # -- tasks -----------------------------------------------------------

    async def get_task(self, task_id: str) -> Task | None:
        task = self.tasks.get(task_id)
        return _copy_task(task) if task else None

    async def create_task(self, task: Task) -> Task:
        self.tasks[task.id] = _copy_task(task)
        return _copy_task(task)

    async def update_task(self, task: Task) -> Task:
        if task.id not in self.tasks:
            raise NotFoundOrForbidden("Task not found")
        stored = _copy_task(task, updated_at=utc_now())
        self.tasks[task.id] = stored
        return _copy_task(stored)

    async def delete_task(self, task_id: str) -> bool:
        if self.tasks.pop(task_id, None) is None:
            return False
        for comment_id in [c.id for c in self.comments.values() if c.task_id == task_id]:
            del self.comments[comment_id]
        self.activity = [entry for entry in self.activity if entry.task_id != task_id]
        return True

    async def list_tasks(
        self,
        visibility: TaskVisibility,
        task_filter: TaskFilter | None = None,
    ) -> list[Task]:
        visible: list[Task] = []
        for task in self.tasks.values():
            task_list = self.lists.get(task.list_id) if task.list_id else None
            grant = (
                self._grant_for(task.list_id, visibility.principal_id) if task.list_id else None
            )
            if not visibility.matches(task, task_list, grant):
                continue
            if task_filter is not None and not task_filter.matches(task):
                continue
            visible.append(_copy_task(task))
        return sorted(visible, key=_task_sort_key)

    # -- tags ------------------------------------------------------------

    async def create_tag(self, tag: Tag) -> Tag:
        if await self.find_tag_by_name(tag.owner_id, tag.name) is not None:
            raise ConflictError("A tag with this name already exists")
        self.tags[tag.id] = replace(tag)
        return replace(tag)

    async def find_tag_by_name(self, owner_id: str, name: str) -> Tag | None:
        for tag in self.tags.values():
            if tag.owner_id == owner_id and tag.name == name:
                return replace(tag)
        return None

    async def list_tags(self, owner_id: str) -> list[Tag]:
        tags = [replace(t) for t in self.tags.values() if t.owner_id == owner_id]
        return sorted(tags, key=lambda item: item.created_at)

    async def count_owned_tags(self, owner_id: str, tag_ids: list[str]) -> int:
        return sum(
            1
            for tag_id in set(tag_ids)
            if tag_id in self.tags and self.tags[tag_id].owner_id == owner_id
        )

    async def count_tasks_by_tag(self, owner_id: str) -> dict[str, int]:
        counts = {tag.id: 0 for tag in self.tags.values() if tag.owner_id == owner_id}
        for task in self.tasks.values():
            for tag_id in task.tag_ids:
                if tag_id in counts:
                    counts[tag_id] += 1
        return counts

    # -- comments & activity ---------------------------------------------

    async def create_comment(self, comment: TaskComment) -> TaskComment:
        self.comments[comment.id] = replace(comment)
        return replace(comment)

    async def list_comments(self, task_id: str) -> list[TaskComment]:
        comments = [replace(c) for c in self.comments.values() if c.task_id == task_id]
        return sorted(comments, key=lambda item: item.created_at)

    async def append_activity(self, activity: TaskActivity) -> None:
        self.activity.append(replace(activity))

    async def list_activity(self, task_id: str, *, limit: int = 50) -> list[TaskActivity]:
        entries = [replace(a) for a in self.activity if a.task_id == task_id]
        entries.reverse()
        return entries[:limit]

    # -- integration connections -----------------------------------------

    def _connection_for(
        self, user_id: str, provider: IntegrationProvider
    ) -> IntegrationConnection | None:
        for connection in self.connections.values():
            if connection.user_id == user_id and connection.provider == provider:
                return connection
        return None

    async def get_connection(
        self,
        user_id: str,
        provider: IntegrationProvider = IntegrationProvider.GOOGLE_CALENDAR,
    ) -> IntegrationConnection | None:
        connection = self._connection_for(user_id, provider)
        return replace(connection) if connection else None

    async def save_connection(self, connection: IntegrationConnection) -> IntegrationConnection:
        existing = self._connection_for(connection.user_id, connection.provider)
        stored = replace(connection, updated_at=utc_now())
        if existing is not None:
            stored.id = existing.id
        self.connections[stored.id] = stored
        return replace(stored)

    async def update_connection_tokens(
        self,
        connection_id: str,
        *,
        access_token: str,
        access_token_expires_at: datetime,
        refresh_token: str | None,
    ) -> IntegrationConnection:
        connection = self.connections.get(connection_id)
        if connection is None:
            raise NotFoundOrForbidden("Integration connection not found")
        connection.access_token = access_token
        connection.access_token_expires_at = access_token_expires_at
        if refresh_token is not None:
            connection.refresh_token = refresh_token
        connection.updated_at = utc_now()
        return replace(connection)

    async def set_connection_calendar_id(self, connection_id: str, calendar_id: str) -> None:
        connection = self.connections.get(connection_id)
        if connection is None:
            raise NotFoundOrForbidden("Integration connection not found")
        connection.calendar_id = calendar_id
        connection.updated_at = utc_now()

    async def delete_connection(
        self,
        user_id: str,
        provider: IntegrationProvider = IntegrationProvider.GOOGLE_CALENDAR,
    ) -> bool:
        connection = self._connection_for(user_id, provider)
        if connection is None:
            return False
        del self.connections[connection.id]
        for mapping_id in [
            m.id for m in self.mappings.values() if m.connection_id == connection.id
        ]:
            del self.mappings[mapping_id]
        return True

    # -- event mappings --------------------------------------------------

    async def list_mappings(self, connection_id: str) -> list[ExternalEventMapping]:
        return [replace(m) for m in self.mappings.values() if m.connection_id == connection_id]

    async def create_mapping(self, mapping: ExternalEventMapping) -> ExternalEventMapping:
        for existing_id in [
            m.id
            for m in self.mappings.values()
            if m.connection_id == mapping.connection_id and m.task_id == mapping.task_id
        ]:
            del self.mappings[existing_id]
        self.mappings[mapping.id] = replace(mapping)
        return replace(mapping)

    async def delete_mapping(self, mapping_id: str) -> bool:
        return self.mappings.pop(mapping_id, None) is not None

    # -- feed tokens -----------------------------------------------------

    async def get_feed_tokens(self, user_id: str) -> FeedTokens | None:
        tokens = self.feed_tokens.get(user_id)
        return replace(tokens) if tokens else None

    async def save_feed_tokens(self, tokens: FeedTokens) -> FeedTokens:
        self.feed_tokens[tokens.user_id] = replace(tokens)
        return replace(tokens)

    async def find_feed_tokens_by_ics_token(self, token: str) -> FeedTokens | None:
        for tokens in self.feed_tokens.values():
            if tokens.ics_token == token:
                return replace(tokens)
        return None

    async def find_feed_tokens_by_webhook_token(self, token: str) -> FeedTokens | None:
        for tokens in self.feed_tokens.values():
            if tokens.webhook_token == token:
                return replace(tokens)
        return None
