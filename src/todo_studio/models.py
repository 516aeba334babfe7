"""Domain records and boundary payloads.

Records (``TaskList``, ``Task``, ``CollaboratorGrant`` ...) are plain
dataclasses joined by string ids.  No record carries a derived role: the
effective access role is always computed by :mod:`todo_studio.access` from
ownership facts and the grant table.

Inbound payloads are pydantic models validated at the boundary; services
convert pydantic failures into :class:`todo_studio.errors.ValidationError`.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic import ValidationError as PydanticValidationError

from todo_studio.errors import ValidationError

_HEX_COLOR_PATTERN = re.compile(r"^#(?:[0-9a-fA-F]{3}){1,2}$")

MAX_TASK_TAGS = 30

INBOX_LIST_NAME = "Inbox"
INBOX_LIST_COLOR = "#0ea5e9"
WEBHOOK_LIST_COLOR = "#2563eb"


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TaskPriority(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class TaskStatus(StrEnum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class CollaboratorRole(StrEnum):
    """Role stored on a collaborator grant.  Ownership is never a grant."""

    EDITOR = "EDITOR"
    VIEWER = "VIEWER"


class ActivityType(StrEnum):
    TASK_CREATED = "TASK_CREATED"
    TASK_UPDATED = "TASK_UPDATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    COMMENT_ADDED = "COMMENT_ADDED"


class IntegrationProvider(StrEnum):
    GOOGLE_CALENDAR = "GOOGLE_CALENDAR"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class User:
    id: str
    email: str
    username: str
    display_name: str | None = None


@dataclass
class TaskList:
    id: str
    owner_id: str
    name: str
    color: str | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class CollaboratorGrant:
    id: str
    list_id: str
    user_id: str
    role: CollaboratorRole
    invited_by_id: str | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class Task:
    id: str
    owner_id: str
    title: str
    list_id: str | None = None
    description: str = ""
    due_date: datetime | None = None
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.TODO
    is_completed: bool = False
    tag_ids: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_sync_eligible(self) -> bool:
        """Whether this task should currently exist as a remote calendar event."""
        return self.due_date is not None and not self.is_completed


@dataclass
class Tag:
    """A label owned by one user; tasks reference tags of their own owner."""

    id: str
    owner_id: str
    name: str
    color: str | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class TaskComment:
    id: str
    task_id: str
    author_id: str
    body: str
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class TaskActivity:
    id: str
    task_id: str
    actor_id: str | None
    type: ActivityType
    message: str
    metadata: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class IntegrationConnection:
    """Calendar connection for one (user, provider) pair.

    ``access_token`` and ``refresh_token`` only ever hold sealed values
    (see :mod:`todo_studio.sealing`).
    """

    id: str
    user_id: str
    provider: IntegrationProvider = IntegrationProvider.GOOGLE_CALENDAR
    access_token: str | None = None
    refresh_token: str | None = None
    access_token_expires_at: datetime | None = None
    calendar_id: str | None = None
    external_account_email: str | None = None
    updated_at: datetime = field(default_factory=utc_now)

    def __repr__(self) -> str:
        return (
            f"IntegrationConnection(id={self.id!r}, user_id={self.user_id!r}, "
            f"provider={self.provider.value!r}, access_token=<REDACTED>, "
            f"refresh_token=<REDACTED>, calendar_id={self.calendar_id!r})"
        )


@dataclass
class ExternalEventMapping:
    id: str
    connection_id: str
    task_id: str
    external_event_id: str
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class FeedTokens:
    user_id: str
    ics_token: str
    webhook_token: str


# ---------------------------------------------------------------------------
# Boundary payloads
# ---------------------------------------------------------------------------


def _strip(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


def _unique_ids(value: list[str] | None) -> list[str] | None:
    if value is None:
        return None
    return list(dict.fromkeys(value))


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    @field_validator("due_date", check_fields=False)
    @classmethod
    def _normalize_due_date(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return ensure_utc(value)


class TaskCreate(_Payload):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    due_date: datetime | None = None
    priority: TaskPriority | None = None
    status: TaskStatus | None = None
    is_completed: bool | None = None
    list_id: str | None = None
    tag_ids: list[Annotated[str, Field(min_length=1)]] | None = Field(
        default=None, max_length=MAX_TASK_TAGS
    )

    @field_validator("title", "description", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("tag_ids")
    @classmethod
    def _dedupe_tag_ids(cls, value: list[str] | None) -> list[str] | None:
        return _unique_ids(value)


class TaskUpdate(_Payload):
    """Partial task update.  Unset fields are left unchanged.

    ``model_fields_set`` distinguishes "not provided" from an explicit
    ``None`` (which clears ``due_date`` or removes the task from its list).
    """

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    due_date: datetime | None = None
    priority: TaskPriority | None = None
    status: TaskStatus | None = None
    is_completed: bool | None = None
    list_id: str | None = None
    tag_ids: list[Annotated[str, Field(min_length=1)]] | None = Field(
        default=None, max_length=MAX_TASK_TAGS
    )

    @field_validator("title", "description", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("tag_ids")
    @classmethod
    def _dedupe_tag_ids(cls, value: list[str] | None) -> list[str] | None:
        return _unique_ids(value)

    @field_validator("title", "priority", "status", "is_completed", "tag_ids")
    @classmethod
    def _not_null(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return value

    def provided(self, name: str) -> bool:
        return name in self.model_fields_set


class WebhookTaskPayload(_Payload):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    due_date: datetime | None = Field(default=None, alias="dueDate")
    priority: TaskPriority | None = None
    status: TaskStatus | None = None
    list_id: str | None = Field(default=None, alias="listId")
    list_name: str | None = Field(default=None, alias="listName", min_length=1, max_length=80)

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @field_validator("title", "description", "list_name", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        return _strip(value)


class ListCreate(_Payload):
    name: str = Field(min_length=1, max_length=80)
    color: str | None = None

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("color", mode="before")
    @classmethod
    def _validate_color(cls, value: Any) -> Any:
        return _normalize_color(value)


class ListUpdate(_Payload):
    name: str | None = Field(default=None, min_length=1, max_length=80)
    color: str | None = None

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("color", mode="before")
    @classmethod
    def _validate_color(cls, value: Any) -> Any:
        return _normalize_color(value)


class TagCreate(_Payload):
    name: str = Field(min_length=1, max_length=40)
    color: str | None = None

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        return _strip(value)

    @field_validator("color", mode="before")
    @classmethod
    def _validate_color(cls, value: Any) -> Any:
        return _normalize_color(value)


class CollaboratorInvite(_Payload):
    identifier: str = Field(min_length=1, max_length=255)
    role: CollaboratorRole = CollaboratorRole.VIEWER

    @field_validator("identifier", mode="before")
    @classmethod
    def _normalize_identifier(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class CollaboratorRoleUpdate(_Payload):
    role: CollaboratorRole


class CommentCreate(_Payload):
    body: str = Field(min_length=1, max_length=1000)

    @field_validator("body", mode="before")
    @classmethod
    def _strip_body(cls, value: Any) -> Any:
        return _strip(value)


def _normalize_color(value: Any) -> Any:
    if value is None:
        return None
    if not isinstance(value, str):
        return value
    normalized = value.strip()
    if not normalized:
        return None
    if _HEX_COLOR_PATTERN.fullmatch(normalized) is None:
        raise ValueError("color must be a HEX value")
    return normalized


def format_validation_errors(errors: Sequence[Mapping[str, Any]]) -> str:
    """Flatten pydantic error dicts into one human-readable line."""
    parts = []
    for error in errors:
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        message = error.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "Invalid payload"


PayloadT = TypeVar("PayloadT", bound=BaseModel)


def parse_payload(model: type[PayloadT], data: Any) -> PayloadT:
    """Validate *data* against *model*, raising the domain :class:`ValidationError`."""
    if not isinstance(data, dict):
        raise ValidationError("Payload must be a JSON object")
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(format_validation_errors(exc.errors())) from exc
