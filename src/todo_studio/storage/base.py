"""Persistence contract consumed by the access resolver, services and sync.

The store is a set of point lookups and single-row upserts keyed by primary
key or by the unique composite keys of the data model:

- lists: ``(owner_id, name)``
- tags: ``(owner_id, name)``
- collaborator grants: ``(list_id, user_id)``
- integration connections: ``(user_id, provider)``
- event mappings: ``(connection_id, task_id)``
- feed tokens: ``user_id`` (and each token value)

Each call commits independently; nothing in the core relies on multi-row
transactions.  Bulk reads take a visibility predicate from
:mod:`todo_studio.access` so list/task filtering shares one definition with
single-entity checks.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

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
    TaskPriority,
    TaskStatus,
    User,
)

if TYPE_CHECKING:
    from todo_studio.access import ListVisibility, TaskVisibility


@dataclass(frozen=True)
class TaskFilter:
    """Optional narrowing applied on top of a task visibility predicate."""

    list_id: str | None = None
    priority: TaskPriority | None = None
    status: TaskStatus | None = None
    is_completed: bool | None = None
    has_due_date: bool | None = None
    due_from: datetime | None = None
    due_to: datetime | None = None

    def matches(self, task: Task) -> bool:
        if self.list_id is not None and task.list_id != self.list_id:
            return False
        if self.priority is not None and task.priority != self.priority:
            return False
        if self.status is not None and task.status != self.status:
            return False
        if self.is_completed is not None and task.is_completed != self.is_completed:
            return False
        if self.has_due_date is not None and (task.due_date is not None) != self.has_due_date:
            return False
        if self.due_from is not None and (task.due_date is None or task.due_date < self.due_from):
            return False
        if self.due_to is not None and (task.due_date is None or task.due_date > self.due_to):
            return False
        return True


SYNC_ELIGIBLE = TaskFilter(has_due_date=True, is_completed=False)


class Store(abc.ABC):
    """Async persistence interface for all Todo Studio records."""

    # -- users -----------------------------------------------------------

    @abc.abstractmethod
    async def get_user(self, user_id: str) -> User | None: ...

    @abc.abstractmethod
    async def find_user_by_identifier(self, identifier: str) -> User | None:
        """Case-insensitive lookup by email or username."""

    @abc.abstractmethod
    async def create_user(self, user: User) -> User: ...

    # -- lists -----------------------------------------------------------

    @abc.abstractmethod
    async def get_list(self, list_id: str) -> TaskList | None: ...

    @abc.abstractmethod
    async def find_list_by_name(self, owner_id: str, name: str) -> TaskList | None: ...

    @abc.abstractmethod
    async def create_list(self, task_list: TaskList) -> TaskList: ...

    @abc.abstractmethod
    async def upsert_list_by_name(self, task_list: TaskList) -> TaskList:
        """Insert *task_list* unless ``(owner_id, name)`` exists; return the stored row."""

    @abc.abstractmethod
    async def update_list(self, task_list: TaskList) -> TaskList: ...

    @abc.abstractmethod
    async def delete_list(self, list_id: str) -> bool:
        """Delete a list together with its grants and tasks."""

    @abc.abstractmethod
    async def list_lists(self, visibility: ListVisibility) -> list[TaskList]: ...

    # -- collaborator grants ---------------------------------------------

    @abc.abstractmethod
    async def get_grant(self, list_id: str, user_id: str) -> CollaboratorGrant | None: ...

    @abc.abstractmethod
    async def get_grant_by_id(self, grant_id: str) -> CollaboratorGrant | None: ...

    @abc.abstractmethod
    async def upsert_grant(self, grant: CollaboratorGrant) -> CollaboratorGrant:
        """Insert or update the grant for ``(list_id, user_id)``; return the stored row."""

    @abc.abstractmethod
    async def delete_grant(self, grant_id: str) -> bool: ...

    @abc.abstractmethod
    async def list_grants(self, list_id: str) -> list[CollaboratorGrant]: ...

    # -- tasks -----------------------------------------------------------

    @abc.abstractmethod
    async def get_task(self, task_id: str) -> Task | None: ...

    @abc.abstractmethod
    async def create_task(self, task: Task) -> Task: ...

    @abc.abstractmethod
    async def update_task(self, task: Task) -> Task: ...

    @abc.abstractmethod
    async def delete_task(self, task_id: str) -> bool: ...

    @abc.abstractmethod
    async def list_tasks(
        self,
        visibility: TaskVisibility,
        task_filter: TaskFilter | None = None,
    ) -> list[Task]:
        """Visible tasks ordered by completion, due date (nulls last), newest first."""

    # -- tags ------------------------------------------------------------

    @abc.abstractmethod
    async def create_tag(self, tag: Tag) -> Tag:
        """Insert *tag*; a duplicate ``(owner_id, name)`` raises ConflictError."""

    @abc.abstractmethod
    async def find_tag_by_name(self, owner_id: str, name: str) -> Tag | None: ...

    @abc.abstractmethod
    async def list_tags(self, owner_id: str) -> list[Tag]:
        """Tags of *owner_id*, oldest first."""

    @abc.abstractmethod
    async def count_owned_tags(self, owner_id: str, tag_ids: list[str]) -> int:
        """How many of *tag_ids* exist and belong to *owner_id*."""

    @abc.abstractmethod
    async def count_tasks_by_tag(self, owner_id: str) -> dict[str, int]:
        """Number of tasks linked to each of *owner_id*'s tags."""

    # -- comments & activity ---------------------------------------------

    @abc.abstractmethod
    async def create_comment(self, comment: TaskComment) -> TaskComment: ...

    @abc.abstractmethod
    async def list_comments(self, task_id: str) -> list[TaskComment]: ...

    @abc.abstractmethod
    async def append_activity(self, activity: TaskActivity) -> None: ...

    @abc.abstractmethod
    async def list_activity(self, task_id: str, *, limit: int = 50) -> list[TaskActivity]:
        """Newest first."""

    # -- integration connections -----------------------------------------

    @abc.abstractmethod
    async def get_connection(
        self,
        user_id: str,
        provider: IntegrationProvider = IntegrationProvider.GOOGLE_CALENDAR,
    ) -> IntegrationConnection | None: ...

    @abc.abstractmethod
    async def save_connection(self, connection: IntegrationConnection) -> IntegrationConnection:
        """Upsert by ``(user_id, provider)``; return the stored row."""

    @abc.abstractmethod
    async def update_connection_tokens(
        self,
        connection_id: str,
        *,
        access_token: str,
        access_token_expires_at: datetime,
        refresh_token: str | None,
    ) -> IntegrationConnection:
        """Persist rotated (sealed) tokens; a ``None`` refresh token keeps the stored one."""

    @abc.abstractmethod
    async def set_connection_calendar_id(self, connection_id: str, calendar_id: str) -> None: ...

    @abc.abstractmethod
    async def delete_connection(
        self,
        user_id: str,
        provider: IntegrationProvider = IntegrationProvider.GOOGLE_CALENDAR,
    ) -> bool:
        """Delete the connection and its event mappings."""

    # -- event mappings --------------------------------------------------

    @abc.abstractmethod
    async def list_mappings(self, connection_id: str) -> list[ExternalEventMapping]: ...

    @abc.abstractmethod
    async def create_mapping(self, mapping: ExternalEventMapping) -> ExternalEventMapping:
        """Insert or replace the mapping for ``(connection_id, task_id)``."""

    @abc.abstractmethod
    async def delete_mapping(self, mapping_id: str) -> bool: ...

    # -- feed tokens -----------------------------------------------------

    @abc.abstractmethod
    async def get_feed_tokens(self, user_id: str) -> FeedTokens | None: ...

    @abc.abstractmethod
    async def save_feed_tokens(self, tokens: FeedTokens) -> FeedTokens: ...

    @abc.abstractmethod
    async def find_feed_tokens_by_ics_token(self, token: str) -> FeedTokens | None: ...

    @abc.abstractmethod
    async def find_feed_tokens_by_webhook_token(self, token: str) -> FeedTokens | None: ...

    async def close(self) -> None:
        """Release store resources."""
        return None
