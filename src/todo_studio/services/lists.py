"""Lists and collaborator grants.

Only the list owner manages the list itself and its collaborators.  A
collaborator attempting a management operation gets
:class:`~todo_studio.errors.InsufficientRole`; anyone else gets
:class:`~todo_studio.errors.NotFoundOrForbidden`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from todo_studio.access import (
    AccessRole,
    ListAccess,
    effective_list_role,
    list_access_where,
    require_list_access,
)
from todo_studio.errors import ConflictError, NotFoundOrForbidden
from todo_studio.models import (
    CollaboratorGrant,
    CollaboratorInvite,
    CollaboratorRoleUpdate,
    ListCreate,
    ListUpdate,
    TaskList,
    User,
    new_id,
    utc_now,
)
from todo_studio.storage.base import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ListView:
    task_list: TaskList
    role: AccessRole


@dataclass(frozen=True)
class Member:
    """One row of a list's member roster.

    The owner has no grant; ``grant_id`` is ``None`` for them.
    """

    user: User
    role: AccessRole
    grant_id: str | None = None


class ListService:
    def __init__(self, store: Store) -> None:
        self._store = store

    async def _require_owner(self, list_id: str, principal_id: str) -> ListAccess:
        return await require_list_access(
            self._store, list_id, principal_id, minimum=AccessRole.OWNER
        )

    async def _ensure_unique_name(
        self, owner_id: str, name: str, *, exclude_id: str | None = None
    ) -> None:
        existing = await self._store.find_list_by_name(owner_id, name)
        if existing is not None and existing.id != exclude_id:
            raise ConflictError("A list with this name already exists")

    # -- lists -----------------------------------------------------------

    async def create_list(self, owner_id: str, payload: ListCreate) -> ListView:
        await self._ensure_unique_name(owner_id, payload.name)
        task_list = await self._store.create_list(
            TaskList(
                id=new_id(),
                owner_id=owner_id,
                name=payload.name,
                color=payload.color,
                created_at=utc_now(),
            )
        )
        logger.info("List created: list_id=%s owner_id=%s", task_list.id, owner_id)
        return ListView(task_list=task_list, role=AccessRole.OWNER)

    async def update_list(self, principal_id: str, list_id: str, payload: ListUpdate) -> ListView:
        await self._require_owner(list_id, principal_id)
        task_list = await self._store.get_list(list_id)
        if task_list is None:
            raise NotFoundOrForbidden("List not found")

        changes: dict[str, object] = {}
        if "name" in payload.model_fields_set and payload.name is not None:
            await self._ensure_unique_name(task_list.owner_id, payload.name, exclude_id=list_id)
            changes["name"] = payload.name
        if "color" in payload.model_fields_set:
            changes["color"] = payload.color
        if not changes:
            return ListView(task_list=task_list, role=AccessRole.OWNER)

        updated = await self._store.update_list(replace(task_list, **changes))
        logger.info("List updated: list_id=%s fields=%s", list_id, sorted(changes))
        return ListView(task_list=updated, role=AccessRole.OWNER)

    async def delete_list(self, principal_id: str, list_id: str) -> None:
        """Delete a list together with its grants and tasks."""
        await self._require_owner(list_id, principal_id)
        await self._store.delete_list(list_id)
        logger.info("List deleted: list_id=%s", list_id)

    async def list_lists(self, principal_id: str) -> list[ListView]:
        views = []
        for task_list in await self._store.list_lists(list_access_where(principal_id)):
            grant = None
            if task_list.owner_id != principal_id:
                grant = await self._store.get_grant(task_list.id, principal_id)
            role = effective_list_role(task_list, grant, principal_id)
            if role is not None:
                views.append(ListView(task_list=task_list, role=role))
        return views

    # -- collaborators ---------------------------------------------------

    async def invite_collaborator(
        self,
        principal_id: str,
        list_id: str,
        payload: CollaboratorInvite,
    ) -> CollaboratorGrant:
        """Grant *payload.identifier* (email or username) a role on the list.

        Re-inviting an existing collaborator updates their role and inviter.
        """
        access = await self._require_owner(list_id, principal_id)
        invitee = await self._store.find_user_by_identifier(payload.identifier)
        if invitee is None:
            raise NotFoundOrForbidden("User not found")
        if invitee.id == access.owner_id:
            raise ConflictError("The list owner already has full access")

        grant = await self._store.upsert_grant(
            CollaboratorGrant(
                id=new_id(),
                list_id=list_id,
                user_id=invitee.id,
                role=payload.role,
                invited_by_id=principal_id,
                created_at=utc_now(),
            )
        )
        logger.info(
            "Collaborator granted: list_id=%s user_id=%s role=%s",
            list_id,
            invitee.id,
            grant.role.value,
        )
        return grant

    async def _grant_in_list(self, list_id: str, grant_id: str) -> CollaboratorGrant:
        grant = await self._store.get_grant_by_id(grant_id)
        if grant is None or grant.list_id != list_id:
            raise NotFoundOrForbidden("Collaborator not found")
        return grant

    async def update_collaborator(
        self,
        principal_id: str,
        list_id: str,
        grant_id: str,
        payload: CollaboratorRoleUpdate,
    ) -> CollaboratorGrant:
        await self._require_owner(list_id, principal_id)
        grant = await self._grant_in_list(list_id, grant_id)
        updated = await self._store.upsert_grant(
            replace(grant, role=payload.role, invited_by_id=principal_id)
        )
        logger.info(
            "Collaborator role changed: list_id=%s user_id=%s role=%s",
            list_id,
            grant.user_id,
            updated.role.value,
        )
        return updated

    async def remove_collaborator(self, principal_id: str, list_id: str, grant_id: str) -> None:
        await self._require_owner(list_id, principal_id)
        grant = await self._grant_in_list(list_id, grant_id)
        await self._store.delete_grant(grant.id)
        logger.info("Collaborator removed: list_id=%s user_id=%s", list_id, grant.user_id)

    async def list_members(self, principal_id: str, list_id: str) -> list[Member]:
        """Owner first, then collaborators in the order they were invited."""
        access = await self._require_owner(list_id, principal_id)
        members: list[Member] = []
        owner = await self._store.get_user(access.owner_id)
        if owner is not None:
            members.append(Member(user=owner, role=AccessRole.OWNER))
        for grant in await self._store.list_grants(list_id):
            user = await self._store.get_user(grant.user_id)
            if user is None:
                continue
            members.append(Member(user=user, role=AccessRole(grant.role.value), grant_id=grant.id))
        return members
