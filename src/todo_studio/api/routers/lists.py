"""List and collaboration endpoints, mounted at ``/api/lists``."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from todo_studio.api.deps import Services, get_current_user, get_services
from todo_studio.api.models import (
    ApiResponse,
    CollaboratorResponse,
    ListResponse,
    MemberResponse,
)
from todo_studio.models import (
    CollaboratorInvite,
    CollaboratorRoleUpdate,
    ListCreate,
    ListUpdate,
    User,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/lists", tags=["lists"])


@router.get("", response_model=ApiResponse[list[ListResponse]])
async def list_lists(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[list[ListResponse]]:
    """Owned and shared lists, each with the caller's role."""
    views = await services.lists.list_lists(user.id)
    return ApiResponse[list[ListResponse]](data=[ListResponse.from_view(view) for view in views])


@router.post("", response_model=ApiResponse[ListResponse], status_code=201)
async def create_list(
    payload: ListCreate,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[ListResponse]:
    view = await services.lists.create_list(user.id, payload)
    return ApiResponse[ListResponse](data=ListResponse.from_view(view))


@router.patch("/{list_id}", response_model=ApiResponse[ListResponse])
async def update_list(
    list_id: str,
    payload: ListUpdate,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[ListResponse]:
    view = await services.lists.update_list(user.id, list_id, payload)
    return ApiResponse[ListResponse](data=ListResponse.from_view(view))


@router.delete("/{list_id}", response_model=ApiResponse[dict])
async def delete_list(
    list_id: str,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[dict]:
    """Delete the list, its collaborator grants and its tasks."""
    await services.lists.delete_list(user.id, list_id)
    return ApiResponse[dict](data={"id": list_id, "deleted": True})


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@router.get("/{list_id}/collaborators", response_model=ApiResponse[list[MemberResponse]])
async def list_members(
    list_id: str,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[list[MemberResponse]]:
    members = await services.lists.list_members(user.id, list_id)
    return ApiResponse[list[MemberResponse]](
        data=[MemberResponse.from_member(member) for member in members]
    )


@router.post(
    "/{list_id}/collaborators",
    response_model=ApiResponse[CollaboratorResponse],
    status_code=201,
)
async def invite_collaborator(
    list_id: str,
    payload: CollaboratorInvite,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[CollaboratorResponse]:
    grant = await services.lists.invite_collaborator(user.id, list_id, payload)
    return ApiResponse[CollaboratorResponse](data=CollaboratorResponse.from_grant(grant))


@router.patch(
    "/{list_id}/collaborators/{grant_id}",
    response_model=ApiResponse[CollaboratorResponse],
)
async def update_collaborator(
    list_id: str,
    grant_id: str,
    payload: CollaboratorRoleUpdate,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[CollaboratorResponse]:
    grant = await services.lists.update_collaborator(user.id, list_id, grant_id, payload)
    return ApiResponse[CollaboratorResponse](data=CollaboratorResponse.from_grant(grant))


@router.delete("/{list_id}/collaborators/{grant_id}", response_model=ApiResponse[dict])
async def remove_collaborator(
    list_id: str,
    grant_id: str,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[dict]:
    await services.lists.remove_collaborator(user.id, list_id, grant_id)
    return ApiResponse[dict](data={"id": grant_id, "deleted": True})
