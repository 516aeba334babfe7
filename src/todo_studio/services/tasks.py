"""Task lifecycle: create, read, update, delete, comments and activity.

Every operation resolves the caller's effective role first and treats "no
role" exactly like "not found".  Writes need EDITOR or better; comments and
reads need any role.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from todo_studio.access import (
    AccessRole,
    can_edit,
    check_task_relocation,
    effective_task_role,
    require_task_access,
    resolve_list_access,
    task_access_where,
)
from todo_studio.activity import ActivityRecorder
from todo_studio.errors import InsufficientRole, NotFoundOrForbidden, ValidationError
from todo_studio.models import (
    CommentCreate,
    Task,
    TaskActivity,
    TaskComment,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskUpdate,
    User,
    new_id,
    utc_now,
)
from todo_studio.services.tags import assert_owned_tags
from todo_studio.storage.base import Store, TaskFilter

logger = logging.getLogger(__name__)

ACTIVITY_FEED_LIMIT = 50

_UPDATABLE_FIELDS = (
    "title",
    "description",
    "due_date",
    "priority",
    "status",
    "is_completed",
    "list_id",
    "tag_ids",
)


def normalize_task_state(
    status: TaskStatus | None,
    is_completed: bool | None,
) -> tuple[TaskStatus | None, bool | None]:
    """Keep ``status`` and ``is_completed`` in lockstep.

    A given status decides completion; a lone ``is_completed`` maps to
    DONE/TODO.  When neither is given both stay ``None`` (unchanged).
    """
    if status is not None:
        return status, status is TaskStatus.DONE
    if is_completed is not None:
        return (TaskStatus.DONE if is_completed else TaskStatus.TODO), is_completed
    return None, None


@dataclass(frozen=True)
class TaskView:
    """A task as seen by one principal.

    ``role`` is ``None`` when the principal's own write removed its access,
    e.g. a list owner taking someone else's task out of the list.
    """

    task: Task
    role: AccessRole | None
    principal_id: str

    @property
    def can_edit(self) -> bool:
        return can_edit(self.role)

    @property
    def is_shared(self) -> bool:
        return self.task.owner_id != self.principal_id


class TaskService:
    def __init__(self, store: Store, activity: ActivityRecorder) -> None:
        self._store = store
        self._activity = activity

    async def _view(self, task: Task, principal_id: str) -> TaskView:
        task_list = await self._store.get_list(task.list_id) if task.list_id else None
        grant = (
            await self._store.get_grant(task.list_id, principal_id)
            if task.list_id and task_list is not None and task_list.owner_id != principal_id
            else None
        )
        role = effective_task_role(task, task_list, grant, principal_id)
        return TaskView(task=task, role=role, principal_id=principal_id)

    async def _require_editable_list(self, list_id: str, principal_id: str) -> str:
        """Return the owner of *list_id* if *principal_id* can add tasks to it."""
        access = await resolve_list_access(self._store, list_id, principal_id)
        if access is None:
            raise ValidationError("Invalid list_id. List not found for this user.")
        if not can_edit(access.role):
            raise InsufficientRole("You do not have edit permissions for the target list")
        return access.owner_id

    # -- tasks -----------------------------------------------------------

    async def create_task(self, actor: User, payload: TaskCreate) -> TaskView:
        """Create a task.

        Inside a list, the caller needs edit rights on the list and the task
        is owned by the list owner; otherwise the caller owns it.
        Any ``tag_ids`` must name tags of that owner.
        """
        owner_id = actor.id
        if payload.list_id is not None:
            owner_id = await self._require_editable_list(payload.list_id, actor.id)
        tag_ids = payload.tag_ids or []
        await assert_owned_tags(self._store, owner_id, tag_ids)

        status, is_completed = normalize_task_state(payload.status, payload.is_completed)
        now = utc_now()
        task = Task(
            id=new_id(),
            owner_id=owner_id,
            list_id=payload.list_id,
            title=payload.title,
            description=payload.description or "",
            due_date=payload.due_date,
            priority=payload.priority or TaskPriority.MEDIUM,
            status=status or TaskStatus.TODO,
            is_completed=bool(is_completed),
            tag_ids=tag_ids,
            created_at=now,
            updated_at=now,
        )
        task = await self._store.create_task(task)
        logger.info(
            "Task created: task_id=%s owner_id=%s list_id=%s", task.id, owner_id, task.list_id
        )
        await self._activity.task_created(task, actor)
        return await self._view(task, actor.id)

    async def get_task(self, principal_id: str, task_id: str) -> TaskView:
        await require_task_access(self._store, task_id, principal_id)
        task = await self._store.get_task(task_id)
        if task is None:
            raise NotFoundOrForbidden("Task not found")
        return await self._view(task, principal_id)

    async def list_tasks(
        self,
        principal_id: str,
        task_filter: TaskFilter | None = None,
    ) -> list[TaskView]:
        tasks = await self._store.list_tasks(task_access_where(principal_id), task_filter)
        return [await self._view(task, principal_id) for task in tasks]

    async def update_task(self, actor: User, task_id: str, payload: TaskUpdate) -> TaskView:
        provided = {name for name in _UPDATABLE_FIELDS if payload.provided(name)}
        if not provided:
            raise ValidationError("At least one field is required.")

        access = await require_task_access(
            self._store, task_id, actor.id, minimum=AccessRole.EDITOR
        )

        if "list_id" in provided:
            check_task_relocation(access, payload.list_id)
            if payload.list_id is not None:
                await self._require_editable_list(payload.list_id, actor.id)

        if "tag_ids" in provided:
            await assert_owned_tags(self._store, access.owner_id, payload.tag_ids or [])

        before = await self._store.get_task(task_id)
        if before is None:
            raise NotFoundOrForbidden("Task not found")

        changes: dict[str, object] = {}
        if "title" in provided:
            changes["title"] = payload.title
        if "description" in provided:
            changes["description"] = payload.description or ""
        if "due_date" in provided:
            changes["due_date"] = payload.due_date
        if "priority" in provided:
            changes["priority"] = payload.priority
        if "list_id" in provided:
            changes["list_id"] = payload.list_id
        if "tag_ids" in provided:
            changes["tag_ids"] = list(payload.tag_ids or [])

        status, is_completed = normalize_task_state(
            payload.status if "status" in provided else None,
            payload.is_completed if "is_completed" in provided else None,
        )
        if status is not None:
            changes["status"] = status
            changes["is_completed"] = is_completed

        after = await self._store.update_task(replace(before, **changes))
        logger.info("Task updated: task_id=%s fields=%s", task_id, sorted(provided))
        await self._activity.task_updated(before, after, actor)
        return await self._view(after, actor.id)

    async def delete_task(self, principal_id: str, task_id: str) -> None:
        """Delete a task; any EDITOR or OWNER may delete."""
        await require_task_access(self._store, task_id, principal_id, minimum=AccessRole.EDITOR)
        await self._store.delete_task(task_id)
        logger.info("Task deleted: task_id=%s by=%s", task_id, principal_id)

    # -- comments & activity ---------------------------------------------

    async def add_comment(self, actor: User, task_id: str, payload: CommentCreate) -> TaskComment:
        await require_task_access(self._store, task_id, actor.id)
        comment = await self._store.create_comment(
            TaskComment(
                id=new_id(),
                task_id=task_id,
                author_id=actor.id,
                body=payload.body,
                created_at=utc_now(),
            )
        )
        await self._activity.comment_added(task_id, comment.id, actor)
        return comment

    async def list_comments(self, principal_id: str, task_id: str) -> list[TaskComment]:
        await require_task_access(self._store, task_id, principal_id)
        return await self._store.list_comments(task_id)

    async def list_activity(
        self,
        principal_id: str,
        task_id: str,
        *,
        limit: int = ACTIVITY_FEED_LIMIT,
    ) -> list[TaskActivity]:
        """Newest-first activity feed, capped at :data:`ACTIVITY_FEED_LIMIT` entries."""
        await require_task_access(self._store, task_id, principal_id)
        return await self._store.list_activity(task_id, limit=min(limit, ACTIVITY_FEED_LIMIT))
