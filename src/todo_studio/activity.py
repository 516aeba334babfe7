"""Task activity recorder.

Append-only audit trail for task state changes.  Fire-and-forget: storage
exceptions are logged and swallowed so that activity logging never breaks
the operation that triggered it.
"""

from __future__ import annotations

import logging
from typing import Any

from todo_studio.models import ActivityType, Task, TaskActivity, User, new_id, utc_now
from todo_studio.storage.base import Store

logger = logging.getLogger(__name__)

SYSTEM_ACTOR_LABEL = "System"
WEBHOOK_ACTOR_LABEL = "Webhook"


def actor_label(user: User | None) -> str:
    """Render an actor for activity messages.

    The trimmed display name wins, then the email.  ``None`` is a
    system/webhook action and renders as ``"System"``.
    """
    if user is None:
        return SYSTEM_ACTOR_LABEL
    name = (user.display_name or "").strip()
    return name or user.email


def status_changed(before: Task, after: Task) -> bool:
    """Whether a write changed ``status`` or ``is_completed`` relative to the pre-image."""
    return before.status != after.status or before.is_completed != after.is_completed


class ActivityRecorder:
    def __init__(self, store: Store) -> None:
        self._store = store

    async def record(
        self,
        task_id: str,
        actor_id: str | None,
        type: ActivityType,  # noqa: A002
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> TaskActivity | None:
        """Append one activity row.

        Returns the written entry, or ``None`` when the write failed.
        """
        entry = TaskActivity(
            id=new_id(),
            task_id=task_id,
            actor_id=actor_id,
            type=type,
            message=message,
            metadata=metadata,
            created_at=utc_now(),
        )
        try:
            await self._store.append_activity(entry)
        except Exception:
            logger.warning(
                "Failed to write task activity: task_id=%s type=%s",
                task_id,
                type.value,
                exc_info=True,
            )
            return None
        return entry

    async def task_created(self, task: Task, actor: User | None) -> TaskActivity | None:
        label = actor_label(actor) if actor is not None else WEBHOOK_ACTOR_LABEL
        return await self.record(
            task.id,
            actor.id if actor is not None else None,
            ActivityType.TASK_CREATED,
            f"{label} created the task.",
            metadata={"list_id": task.list_id},
        )

    async def task_updated(self, before: Task, after: Task, actor: User) -> TaskActivity | None:
        if status_changed(before, after):
            return await self.record(
                after.id,
                actor.id,
                ActivityType.STATUS_CHANGED,
                f"{actor_label(actor)} changed the task status.",
                metadata={"from": before.status.value, "to": after.status.value},
            )
        return await self.record(
            after.id,
            actor.id,
            ActivityType.TASK_UPDATED,
            f"{actor_label(actor)} updated the task.",
        )

    async def comment_added(
        self, task_id: str, comment_id: str, actor: User
    ) -> TaskActivity | None:
        return await self.record(
            task_id,
            actor.id,
            ActivityType.COMMENT_ADDED,
            f"{actor_label(actor)} added a comment.",
            metadata={"comment_id": comment_id},
        )
