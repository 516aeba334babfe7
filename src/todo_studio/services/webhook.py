"""Inbound task webhook.

The URL token is the only credential.  Tasks are owned by the token's user
and their activity entry carries no actor.
"""

from __future__ import annotations

import logging
from typing import Any

from todo_studio.activity import ActivityRecorder
from todo_studio.errors import ValidationError
from todo_studio.integrations.feed_tokens import FeedTokenService
from todo_studio.models import (
    INBOX_LIST_COLOR,
    INBOX_LIST_NAME,
    WEBHOOK_LIST_COLOR,
    Task,
    TaskList,
    TaskPriority,
    TaskStatus,
    WebhookTaskPayload,
    new_id,
    parse_payload,
    utc_now,
)
from todo_studio.services.tasks import normalize_task_state
from todo_studio.storage.base import Store

logger = logging.getLogger(__name__)


class WebhookService:
    def __init__(
        self,
        store: Store,
        feed_tokens: FeedTokenService,
        activity: ActivityRecorder,
    ) -> None:
        self._store = store
        self._feed_tokens = feed_tokens
        self._activity = activity

    async def _resolve_list(self, user_id: str, payload: WebhookTaskPayload) -> TaskList:
        if payload.list_id:
            task_list = await self._store.get_list(payload.list_id)
            if task_list is None or task_list.owner_id != user_id:
                raise ValidationError("Invalid listId for this webhook token.")
            return task_list

        if payload.list_name:
            name, color = payload.list_name, WEBHOOK_LIST_COLOR
        else:
            name, color = INBOX_LIST_NAME, INBOX_LIST_COLOR
        return await self._store.upsert_list_by_name(
            TaskList(id=new_id(), owner_id=user_id, name=name, color=color, created_at=utc_now())
        )

    async def ingest_task(self, token: str, data: Any) -> Task:
        """Create a task from a webhook body.

        Raises
        ------
        NotFoundOrForbidden
            *token* does not match any user's current webhook token.
        ValidationError
            The body is malformed or names a list the user does not own.
        """
        user_id = await self._feed_tokens.resolve_webhook_token(token)
        payload = parse_payload(WebhookTaskPayload, data)
        task_list = await self._resolve_list(user_id, payload)

        status, is_completed = normalize_task_state(payload.status, None)
        now = utc_now()
        task = await self._store.create_task(
            Task(
                id=new_id(),
                owner_id=user_id,
                list_id=task_list.id,
                title=payload.title,
                description=payload.description or "",
                due_date=payload.due_date,
                priority=payload.priority or TaskPriority.MEDIUM,
                status=status or TaskStatus.TODO,
                is_completed=bool(is_completed),
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            "Webhook task created: task_id=%s user_id=%s list_id=%s",
            task.id,
            user_id,
            task_list.id,
        )
        await self._activity.task_created(task, None)
        return task
