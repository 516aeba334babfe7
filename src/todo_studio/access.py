"""Access resolution for lists and tasks.

The effective role of a principal is never stored.  It is derived on every
request from ownership facts and the collaborator grant table:

- ``OWNER``: the principal owns the task, or owns the task's list.
- the grant role (``EDITOR`` / ``VIEWER``): the principal collaborates on
  the task's list.
- ``None``: no relationship; the entity is invisible.

Roles are totally ordered ``OWNER > EDITOR > VIEWER > None``.  Callers must
treat ``None`` exactly like "not found" so that existence is never leaked;
:func:`require_task_access` and :func:`require_list_access` raise
:class:`NotFoundOrForbidden` for both cases.

The same pure role functions back the single-entity resolvers and the bulk
visibility predicates (:class:`ListVisibility`, :class:`TaskVisibility`),
which the stores evaluate either in memory (``matches``) or as SQL (``sql``).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from todo_studio.errors import InsufficientRole, NotFoundOrForbidden
from todo_studio.models import CollaboratorGrant, Task, TaskList

if TYPE_CHECKING:
    from todo_studio.storage.base import Store


class AccessRole(StrEnum):
    OWNER = "OWNER"
    EDITOR = "EDITOR"
    VIEWER = "VIEWER"

    @property
    def rank(self) -> int:
        return _ROLE_RANKS[self]

    def at_least(self, required: AccessRole) -> bool:
        return self.rank >= required.rank


_ROLE_RANKS = {
    AccessRole.OWNER: 3,
    AccessRole.EDITOR: 2,
    AccessRole.VIEWER: 1,
}


@dataclass(frozen=True)
class ListAccess:
    list_id: str
    owner_id: str
    role: AccessRole


@dataclass(frozen=True)
class TaskAccess:
    task_id: str
    owner_id: str
    list_id: str | None
    role: AccessRole


def can_edit(role: AccessRole | None) -> bool:
    return role is AccessRole.OWNER or role is AccessRole.EDITOR


# ---------------------------------------------------------------------------
# Pure role derivation
# ---------------------------------------------------------------------------


def effective_list_role(
    task_list: TaskList,
    grant: CollaboratorGrant | None,
    principal_id: str,
) -> AccessRole | None:
    """Role of *principal_id* on *task_list* given its grant row (if any)."""
    if task_list.owner_id == principal_id:
        return AccessRole.OWNER
    if grant is None or grant.list_id != task_list.id or grant.user_id != principal_id:
        return None
    return AccessRole(grant.role.value)


def effective_task_role(
    task: Task,
    task_list: TaskList | None,
    grant: CollaboratorGrant | None,
    principal_id: str,
) -> AccessRole | None:
    """Role of *principal_id* on *task*.

    Non-owners inherit exactly their role on the task's list.  Unlisted tasks
    are private to their owner.
    """
    if task.owner_id == principal_id:
        return AccessRole.OWNER
    if task.list_id is None or task_list is None or task_list.id != task.list_id:
        return None
    return effective_list_role(task_list, grant, principal_id)


# ---------------------------------------------------------------------------
# Visibility predicates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ListVisibility:
    """visible ⇔ owned by the principal OR the principal collaborates on it."""

    principal_id: str

    def matches(self, task_list: TaskList, grant: CollaboratorGrant | None) -> bool:
        return effective_list_role(task_list, grant, self.principal_id) is not None

    def sql(self, *, list_alias: str = "l", param: int = 1) -> str:
        return (
            f"({list_alias}.owner_id = ${param} OR EXISTS ("
            f"SELECT 1 FROM list_collaborators c "
            f"WHERE c.list_id = {list_alias}.id AND c.user_id = ${param}))"
        )


@dataclass(frozen=True)
class TaskVisibility:
    """visible ⇔ the principal owns the task, owns its list, or collaborates on its list."""

    principal_id: str

    def matches(
        self,
        task: Task,
        task_list: TaskList | None,
        grant: CollaboratorGrant | None,
    ) -> bool:
        return effective_task_role(task, task_list, grant, self.principal_id) is not None

    def sql(self, *, task_alias: str = "t", param: int = 1) -> str:
        return (
            f"({task_alias}.owner_id = ${param} OR EXISTS ("
            f"SELECT 1 FROM task_lists l "
            f"WHERE l.id = {task_alias}.list_id AND l.owner_id = ${param}) OR EXISTS ("
            f"SELECT 1 FROM list_collaborators c "
            f"WHERE c.list_id = {task_alias}.list_id AND c.user_id = ${param}))"
        )


def list_access_where(principal_id: str) -> ListVisibility:
    return ListVisibility(principal_id)


def task_access_where(principal_id: str) -> TaskVisibility:
    return TaskVisibility(principal_id)


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


async def resolve_list_access(store: Store, list_id: str, principal_id: str) -> ListAccess | None:
    task_list = await store.get_list(list_id)
    if task_list is None:
        return None

    grant = None
    if task_list.owner_id != principal_id:
        grant = await store.get_grant(list_id, principal_id)

    role = effective_list_role(task_list, grant, principal_id)
    if role is None:
        return None
    return ListAccess(list_id=task_list.id, owner_id=task_list.owner_id, role=role)


async def resolve_task_access(store: Store, task_id: str, principal_id: str) -> TaskAccess | None:
    task = await store.get_task(task_id)
    if task is None:
        return None

    task_list = None
    grant = None
    if task.owner_id != principal_id and task.list_id is not None:
        task_list = await store.get_list(task.list_id)
        if task_list is not None and task_list.owner_id != principal_id:
            grant = await store.get_grant(task.list_id, principal_id)

    role = effective_task_role(task, task_list, grant, principal_id)
    if role is None:
        return None
    return TaskAccess(
        task_id=task.id,
        owner_id=task.owner_id,
        list_id=task.list_id,
        role=role,
    )


async def require_list_access(
    store: Store,
    list_id: str,
    principal_id: str,
    *,
    minimum: AccessRole = AccessRole.VIEWER,
) -> ListAccess:
    access = await resolve_list_access(store, list_id, principal_id)
    if access is None:
        raise NotFoundOrForbidden("List not found")
    if not access.role.at_least(minimum):
        raise InsufficientRole(_insufficient_message("list", minimum))
    return access


async def require_task_access(
    store: Store,
    task_id: str,
    principal_id: str,
    *,
    minimum: AccessRole = AccessRole.VIEWER,
) -> TaskAccess:
    access = await resolve_task_access(store, task_id, principal_id)
    if access is None:
        raise NotFoundOrForbidden("Task not found")
    if not access.role.at_least(minimum):
        raise InsufficientRole(_insufficient_message("task", minimum))
    return access


def check_task_relocation(access: TaskAccess, destination_list_id: str | None) -> None:
    """Reject ``list_id`` changes by non-owners.

    An editor may only "move" a task to the list it is already in.  Moving it
    elsewhere, including removing it from its list, would let an editor
    launder the task into a list they control.
    """
    if access.role is AccessRole.OWNER:
        return
    if access.list_id is None or destination_list_id != access.list_id:
        raise InsufficientRole("Editors cannot move a task to another list")


def _insufficient_message(entity: str, minimum: AccessRole) -> str:
    if minimum is AccessRole.OWNER:
        return f"Only the {entity} owner can perform this action"
    return f"You do not have edit permissions for this {entity}"
