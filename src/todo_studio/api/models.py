"""Pydantic response models for the HTTP API.

Successful responses follow ``{"data": T, "meta": {...}}``; failures follow
``{"error": {"code": ..., "message": ...}}``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

from todo_studio.access import AccessRole
from todo_studio.models import (
    ActivityType,
    CollaboratorGrant,
    CollaboratorRole,
    Task,
    TaskActivity,
    TaskComment,
    TaskPriority,
    TaskStatus,
)
from todo_studio.services.lists import ListView, Member
from todo_studio.services.tags import TagView
from todo_studio.services.tasks import TaskView

# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    error: ErrorDetail


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class TaskResponse(BaseModel):
    id: str
    owner_id: str
    list_id: str | None
    title: str
    description: str
    due_date: datetime | None
    priority: TaskPriority
    status: TaskStatus
    is_completed: bool
    tag_ids: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    access_role: AccessRole | None = None
    can_edit: bool | None = None
    is_shared: bool | None = None

    @classmethod
    def from_task(cls, task: Task) -> TaskResponse:
        return cls(
            id=task.id,
            owner_id=task.owner_id,
            list_id=task.list_id,
            title=task.title,
            description=task.description,
            due_date=task.due_date,
            priority=task.priority,
            status=task.status,
            is_completed=task.is_completed,
            tag_ids=list(task.tag_ids),
            created_at=task.created_at,
            updated_at=task.updated_at,
        )

    @classmethod
    def from_view(cls, view: TaskView) -> TaskResponse:
        return cls.from_task(view.task).model_copy(
            update={
                "access_role": view.role,
                "can_edit": view.can_edit,
                "is_shared": view.is_shared,
            }
        )


class CommentResponse(BaseModel):
    id: str
    task_id: str
    author_id: str
    body: str
    created_at: datetime

    @classmethod
    def from_comment(cls, comment: TaskComment) -> CommentResponse:
        return cls(
            id=comment.id,
            task_id=comment.task_id,
            author_id=comment.author_id,
            body=comment.body,
            created_at=comment.created_at,
        )


class ActivityResponse(BaseModel):
    id: str
    task_id: str
    actor_id: str | None
    type: ActivityType
    message: str
    metadata: dict[str, Any] | None
    created_at: datetime

    @classmethod
    def from_activity(cls, entry: TaskActivity) -> ActivityResponse:
        return cls(
            id=entry.id,
            task_id=entry.task_id,
            actor_id=entry.actor_id,
            type=entry.type,
            message=entry.message,
            metadata=entry.metadata,
            created_at=entry.created_at,
        )


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------


class TagResponse(BaseModel):
    id: str
    owner_id: str
    name: str
    color: str | None
    created_at: datetime
    task_count: int

    @classmethod
    def from_view(cls, view: TagView) -> TagResponse:
        tag = view.tag
        return cls(
            id=tag.id,
            owner_id=tag.owner_id,
            name=tag.name,
            color=tag.color,
            created_at=tag.created_at,
            task_count=view.task_count,
        )


# ---------------------------------------------------------------------------
# Lists and collaboration
# ---------------------------------------------------------------------------


class ListResponse(BaseModel):
    id: str
    owner_id: str
    name: str
    color: str | None
    created_at: datetime
    access_role: AccessRole

    @classmethod
    def from_view(cls, view: ListView) -> ListResponse:
        task_list = view.task_list
        return cls(
            id=task_list.id,
            owner_id=task_list.owner_id,
            name=task_list.name,
            color=task_list.color,
            created_at=task_list.created_at,
            access_role=view.role,
        )


class CollaboratorResponse(BaseModel):
    id: str
    list_id: str
    user_id: str
    role: CollaboratorRole
    invited_by_id: str | None
    created_at: datetime

    @classmethod
    def from_grant(cls, grant: CollaboratorGrant) -> CollaboratorResponse:
        return cls(
            id=grant.id,
            list_id=grant.list_id,
            user_id=grant.user_id,
            role=grant.role,
            invited_by_id=grant.invited_by_id,
            created_at=grant.created_at,
        )


class MemberResponse(BaseModel):
    user_id: str
    email: str
    username: str
    display_name: str | None
    role: AccessRole
    grant_id: str | None

    @classmethod
    def from_member(cls, member: Member) -> MemberResponse:
        return cls(
            user_id=member.user.id,
            email=member.user.email,
            username=member.user.username,
            display_name=member.user.display_name,
            role=member.role,
            grant_id=member.grant_id,
        )


# ---------------------------------------------------------------------------
# Integrations
# ---------------------------------------------------------------------------


class GoogleStatus(BaseModel):
    connected: bool
    external_account_email: str | None
    access_token_expires_at: str | None
    calendar_id: str | None
    last_updated_at: str | None


class FeedStatus(BaseModel):
    feed_url: str


class WebhookStatus(BaseModel):
    ingest_url: str


class IntegrationStatusResponse(BaseModel):
    google: GoogleStatus
    ics: FeedStatus
    webhook: WebhookStatus


class ConnectResponse(BaseModel):
    authorization_url: str


class SyncResponse(BaseModel):
    created: int
    updated: int
    deleted: int
    total_active: int
    failed: int = 0
