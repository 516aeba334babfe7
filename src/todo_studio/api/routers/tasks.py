"""Task endpoints: CRUD, comments and the activity feed.

Mounted at ``/api/tasks``.  Every handler resolves the caller's effective
role through the task service; invisible tasks answer 404.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from todo_studio.api.deps import Services, get_current_user, get_services
from todo_studio.api.models import (
    ActivityResponse,
    ApiMeta,
    ApiResponse,
    CommentResponse,
    TaskResponse,
)
from todo_studio.models import (
    CommentCreate,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskUpdate,
    User,
)
from todo_studio.services.tasks import ACTIVITY_FEED_LIMIT
from todo_studio.storage.base import TaskFilter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


@router.get("", response_model=ApiResponse[list[TaskResponse]])
async def list_tasks(
    list_id: str | None = Query(default=None),
    priority: TaskPriority | None = Query(default=None),
    status: TaskStatus | None = Query(default=None),
    is_completed: bool | None = Query(default=None),
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[list[TaskResponse]]:
    """Return every task visible to the caller, incomplete and soonest-due first."""
    task_filter = TaskFilter(
        list_id=list_id,
        priority=priority,
        status=status,
        is_completed=is_completed,
    )
    views = await services.tasks.list_tasks(user.id, task_filter)
    return ApiResponse[list[TaskResponse]](
        data=[TaskResponse.from_view(view) for view in views],
        meta=ApiMeta(total=len(views)),
    )


@router.post("", response_model=ApiResponse[TaskResponse], status_code=201)
async def create_task(
    payload: TaskCreate,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[TaskResponse]:
    view = await services.tasks.create_task(user, payload)
    return ApiResponse[TaskResponse](data=TaskResponse.from_view(view))


@router.get("/{task_id}", response_model=ApiResponse[TaskResponse])
async def get_task(
    task_id: str,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[TaskResponse]:
    view = await services.tasks.get_task(user.id, task_id)
    return ApiResponse[TaskResponse](data=TaskResponse.from_view(view))


@router.patch("/{task_id}", response_model=ApiResponse[TaskResponse])
async def update_task(
    task_id: str,
    payload: TaskUpdate,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[TaskResponse]:
    """Apply a partial update.

    ``status`` and ``is_completed`` are kept in lockstep; only owners may
    change ``list_id`` to a different list.
    """
    view = await services.tasks.update_task(user, task_id, payload)
    return ApiResponse[TaskResponse](data=TaskResponse.from_view(view))


@router.delete("/{task_id}", response_model=ApiResponse[dict])
async def delete_task(
    task_id: str,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[dict]:
    await services.tasks.delete_task(user.id, task_id)
    return ApiResponse[dict](data={"id": task_id, "deleted": True})


# ---------------------------------------------------------------------------
# Comments and activity
# ---------------------------------------------------------------------------


@router.get("/{task_id}/comments", response_model=ApiResponse[list[CommentResponse]])
async def list_comments(
    task_id: str,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[list[CommentResponse]]:
    comments = await services.tasks.list_comments(user.id, task_id)
    return ApiResponse[list[CommentResponse]](
        data=[CommentResponse.from_comment(comment) for comment in comments]
    )


@router.post(
    "/{task_id}/comments",
    response_model=ApiResponse[CommentResponse],
    status_code=201,
)
async def add_comment(
    task_id: str,
    payload: CommentCreate,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[CommentResponse]:
    """Add a comment; viewers may comment too."""
    comment = await services.tasks.add_comment(user, task_id, payload)
    return ApiResponse[CommentResponse](data=CommentResponse.from_comment(comment))


@router.get("/{task_id}/activity", response_model=ApiResponse[list[ActivityResponse]])
async def list_activity(
    task_id: str,
    limit: int = Query(default=ACTIVITY_FEED_LIMIT, ge=1, le=ACTIVITY_FEED_LIMIT),
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> ApiResponse[list[ActivityResponse]]:
    entries = await services.tasks.list_activity(user.id, task_id, limit=limit)
    return ApiResponse[list[ActivityResponse]](
        data=[ActivityResponse.from_activity(entry) for entry in entries]
    )
