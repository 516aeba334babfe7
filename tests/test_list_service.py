"""Tests for ListService: naming, collaborator management and ownership rules."""

from __future__ import annotations

import pytest

from todo_studio.access import AccessRole
from todo_studio.errors import ConflictError, InsufficientRole, NotFoundOrForbidden
from todo_studio.models import (
    CollaboratorInvite,
    CollaboratorRole,
    CollaboratorRoleUpdate,
    ListCreate,
    ListUpdate,
    Task,
)

pytestmark = pytest.mark.unit


@pytest.fixture
async def groceries(list_service, alice):
    view = await list_service.create_list(alice.id, ListCreate(name="Groceries", color="#22c55e"))
    return view.task_list


class TestCreateAndUpdate:
    async def test_create(self, groceries, alice):
        assert groceries.owner_id == alice.id
        assert groceries.name == "Groceries"
        assert groceries.color == "#22c55e"

    async def test_names_unique_per_owner(self, list_service, groceries, alice, bob):
        with pytest.raises(ConflictError):
            await list_service.create_list(alice.id, ListCreate(name="Groceries"))
        other = await list_service.create_list(bob.id, ListCreate(name="Groceries"))
        assert other.task_list.owner_id == bob.id

    async def test_rename(self, list_service, groceries, alice):
        view = await list_service.update_list(alice.id, groceries.id, ListUpdate(name="Food"))
        assert view.task_list.name == "Food"
        assert view.task_list.color == "#22c55e"

    async def test_rename_to_taken_name(self, list_service, groceries, alice):
        await list_service.create_list(alice.id, ListCreate(name="Work"))
        with pytest.raises(ConflictError):
            await list_service.update_list(alice.id, groceries.id, ListUpdate(name="Work"))

    async def test_rename_to_own_name_is_allowed(self, list_service, groceries, alice):
        view = await list_service.update_list(
            alice.id, groceries.id, ListUpdate(name="Groceries")
        )
        assert view.task_list.id == groceries.id

    async def test_clear_color(self, list_service, groceries, alice):
        view = await list_service.update_list(
            alice.id, groceries.id, ListUpdate.model_validate({"color": None})
        )
        assert view.task_list.color is None

    async def test_collaborator_cannot_rename(self, list_service, groceries, alice, bob):
        await list_service.invite_collaborator(
            alice.id,
            groceries.id,
            CollaboratorInvite(identifier="bob", role=CollaboratorRole.EDITOR),
        )
        with pytest.raises(InsufficientRole):
            await list_service.update_list(bob.id, groceries.id, ListUpdate(name="Mine"))

    async def test_stranger_cannot_see_list(self, list_service, groceries, bob):
        with pytest.raises(NotFoundOrForbidden):
            await list_service.update_list(bob.id, groceries.id, ListUpdate(name="Mine"))


class TestCollaborators:
    async def test_invite_by_email_or_username(self, list_service, groceries, alice, bob, carol):
        by_email = await list_service.invite_collaborator(
            alice.id, groceries.id, CollaboratorInvite(identifier=" Bob@Example.com ")
        )
        by_username = await list_service.invite_collaborator(
            alice.id, groceries.id, CollaboratorInvite(identifier="carol")
        )
        assert by_email.user_id == bob.id
        assert by_email.role is CollaboratorRole.VIEWER
        assert by_email.invited_by_id == alice.id
        assert by_username.user_id == carol.id

    async def test_reinvite_updates_role(self, list_service, store, groceries, alice, bob):
        first = await list_service.invite_collaborator(
            alice.id, groceries.id, CollaboratorInvite(identifier="bob")
        )
        second = await list_service.invite_collaborator(
            alice.id,
            groceries.id,
            CollaboratorInvite(identifier="bob", role=CollaboratorRole.EDITOR),
        )
        assert second.id == first.id
        assert second.role is CollaboratorRole.EDITOR
        assert len(await store.list_grants(groceries.id)) == 1

    async def test_owner_cannot_invite_themselves(self, list_service, groceries, alice):
        with pytest.raises(ConflictError):
            await list_service.invite_collaborator(
                alice.id, groceries.id, CollaboratorInvite(identifier="alice@example.com")
            )

    async def test_unknown_invitee(self, list_service, groceries, alice):
        with pytest.raises(NotFoundOrForbidden, match="User not found"):
            await list_service.invite_collaborator(
                alice.id, groceries.id, CollaboratorInvite(identifier="nobody")
            )

    async def test_collaborator_cannot_invite(self, list_service, groceries, alice, bob):
        await list_service.invite_collaborator(
            alice.id,
            groceries.id,
            CollaboratorInvite(identifier="bob", role=CollaboratorRole.EDITOR),
        )
        with pytest.raises(InsufficientRole):
            await list_service.invite_collaborator(
                bob.id, groceries.id, CollaboratorInvite(identifier="carol")
            )

    async def test_update_and_remove(self, list_service, store, groceries, alice, bob):
        grant = await list_service.invite_collaborator(
            alice.id, groceries.id, CollaboratorInvite(identifier="bob")
        )
        updated = await list_service.update_collaborator(
            alice.id, groceries.id, grant.id, CollaboratorRoleUpdate(role=CollaboratorRole.EDITOR)
        )
        assert updated.role is CollaboratorRole.EDITOR

        await list_service.remove_collaborator(alice.id, groceries.id, grant.id)
        assert await store.get_grant(groceries.id, bob.id) is None

    async def test_grant_from_another_list_is_not_found(self, list_service, groceries, alice, bob):
        work = await list_service.create_list(alice.id, ListCreate(name="Work"))
        grant = await list_service.invite_collaborator(
            alice.id, work.task_list.id, CollaboratorInvite(identifier="bob")
        )
        with pytest.raises(NotFoundOrForbidden, match="Collaborator not found"):
            await list_service.remove_collaborator(alice.id, groceries.id, grant.id)

    async def test_members_owner_first(self, list_service, groceries, alice, bob, carol):
        await list_service.invite_collaborator(
            alice.id,
            groceries.id,
            CollaboratorInvite(identifier="bob", role=CollaboratorRole.EDITOR),
        )
        await list_service.invite_collaborator(
            alice.id, groceries.id, CollaboratorInvite(identifier="carol")
        )
        members = await list_service.list_members(alice.id, groceries.id)
        assert [(m.user.id, m.role) for m in members] == [
            (alice.id, AccessRole.OWNER),
            (bob.id, AccessRole.EDITOR),
            (carol.id, AccessRole.VIEWER),
        ]
        assert members[0].grant_id is None


class TestListing:
    async def test_list_lists_reports_roles(self, list_service, groceries, alice, bob):
        await list_service.invite_collaborator(
            alice.id, groceries.id, CollaboratorInvite(identifier="bob")
        )
        await list_service.create_list(bob.id, ListCreate(name="Bob's"))

        views = {v.task_list.name: v.role for v in await list_service.list_lists(bob.id)}
        assert views == {"Groceries": AccessRole.VIEWER, "Bob's": AccessRole.OWNER}

    async def test_stranger_sees_nothing(self, list_service, groceries, carol):
        assert await list_service.list_lists(carol.id) == []


async def test_delete_cascades_grants_and_tasks(list_service, store, groceries, alice, bob):
    grant = await list_service.invite_collaborator(
        alice.id, groceries.id, CollaboratorInvite(identifier="bob")
    )
    await store.create_task(Task(id="t-1", owner_id=alice.id, title="Milk", list_id=groceries.id))

    with pytest.raises(InsufficientRole):
        await list_service.delete_list(bob.id, groceries.id)

    await list_service.delete_list(alice.id, groceries.id)
    assert await store.get_list(groceries.id) is None
    assert await store.get_grant_by_id(grant.id) is None
    assert await store.get_task("t-1") is None
