"""Tag endpoints, mounted at ``/api/tags``.  Tags are private to the caller."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from todo_studio.api.deps import Services, get_current_user, get_services
from todo_studio.api.models import ApiResponse, TagResponse
from todo_studio.models import TagCreate, User

router = APIRouter(prefix="/api/tags", tags=["tags"])


@router.get("", response_model=ApiResponse[list[TagResponse]])
async def list_tags(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[list[TagResponse]]:
    views = await services.tags.list_tags(user.id)
    return ApiResponse[list[TagResponse]](data=[TagResponse.from_view(view) for view in views])


@router.post("", response_model=ApiResponse[TagResponse], status_code=201)
async def create_tag(
    payload: TagCreate,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[TagResponse]:
    view = await services.tags.create_tag(user.id, payload)
    return ApiResponse[TagResponse](data=TagResponse.from_view(view))
