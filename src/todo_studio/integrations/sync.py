"""Reconciliation of a user's tasks against their Google Calendar.

The mapping table (``ExternalEventMapping``) records which remote event
belongs to which task.  One sync invocation:

1. obtains a fresh access token (aborts the sync on failure);
2. resolves the reserved calendar, adopting one by name or creating it
   (aborts the sync on failure);
3. deletion pass: every mapping whose task is no longer sync-eligible has
   its remote event deleted.  Remote failures are logged; the mapping row is
   dropped regardless;
4. upsert pass: every sync-eligible task is PATCHed through its mapping, or
   created (with a new mapping) when unmapped.  A failed PATCH drops the
   stale mapping and falls through to creation.

Per-event provider failures never abort the run; they only lower the
reported counts.  The deletion pass completes before the upsert pass
starts, and per-task work runs sequentially.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from opentelemetry import trace

from todo_studio.access import task_access_where
from todo_studio.errors import ProviderError
from todo_studio.integrations.google import GoogleCalendarClient
from todo_studio.integrations.tokens import TokenManager
from todo_studio.models import (
    ExternalEventMapping,
    IntegrationConnection,
    Task,
    ensure_utc,
    new_id,
    utc_now,
)
from todo_studio.storage.base import SYNC_ELIGIBLE, Store

logger = logging.getLogger(__name__)

RESERVED_CALENDAR_NAME = "Todo Studio Tasks"
RESERVED_CALENDAR_DESCRIPTION = "Synced from Todo Studio"
EVENT_DURATION = timedelta(minutes=30)
EMPTY_DESCRIPTION_PLACEHOLDER = "No description"
EVENT_SOURCE_TITLE = "Todo Studio"

_tracer = trace.get_tracer("todo_studio.sync")


@dataclass(frozen=True)
class SyncResult:
    created: int
    updated: int
    deleted: int
    total_active: int
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "total_active": self.total_active,
            "failed": self.failed,
        }


def _rfc3339(value: Any) -> str:
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def build_event_payload(task: Task, base_url: str) -> dict[str, Any]:
    """Remote event body for *task*.

    The event starts at the due date and lasts :data:`EVENT_DURATION`; both
    ends are expressed in UTC.
    """
    if task.due_date is None:
        raise ValueError(f"Task {task.id} has no due date and cannot be synced")
    start = ensure_utc(task.due_date)
    description = task.description.strip() or EMPTY_DESCRIPTION_PLACEHOLDER
    return {
        "summary": task.title,
        "description": (
            f"{description}\nPriority: {task.priority.value}\nStatus: {task.status.value}"
        ),
        "start": {"dateTime": _rfc3339(start), "timeZone": "UTC"},
        "end": {"dateTime": _rfc3339(start + EVENT_DURATION), "timeZone": "UTC"},
        "source": {"title": EVENT_SOURCE_TITLE, "url": f"{base_url.rstrip('/')}/tasks"},
    }


class CalendarSyncEngine:
    def __init__(
        self,
        store: Store,
        tokens: TokenManager,
        calendar: GoogleCalendarClient,
        *,
        base_url: str,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._calendar = calendar
        self._base_url = base_url

    async def ensure_calendar_id(
        self,
        connection: IntegrationConnection,
        access_token: str,
    ) -> str:
        """Return the reserved calendar id, adopting or creating it once.

        Before creating, the connection row is re-read so a concurrent sync
        that already persisted an id wins instead of producing a second
        calendar.
        """
        if connection.calendar_id:
            return connection.calendar_id

        for entry in await self._calendar.list_calendars(access_token):
            if entry.summary == RESERVED_CALENDAR_NAME:
                await self._store.set_connection_calendar_id(connection.id, entry.id)
                logger.info(
                    "Adopted existing Google calendar: connection_id=%s calendar_id=%s",
                    connection.id,
                    entry.id,
                )
                return entry.id

        current = await self._store.get_connection(connection.user_id, connection.provider)
        if current is not None and current.calendar_id:
            return current.calendar_id

        created = await self._calendar.create_calendar(
            access_token,
            summary=RESERVED_CALENDAR_NAME,
            description=RESERVED_CALENDAR_DESCRIPTION,
        )
        await self._store.set_connection_calendar_id(connection.id, created.id)
        logger.info(
            "Created Google calendar: connection_id=%s calendar_id=%s",
            connection.id,
            created.id,
        )
        return created.id

    async def sync(self, user_id: str) -> SyncResult:
        """Run one reconciliation pass for *user_id*.

        Raises
        ------
        NotConnectedError, MissingRefreshTokenError, ProviderAuthError
            Token resolution failed; nothing was attempted.
        ProviderApiError
            The reserved calendar could not be resolved; nothing was attempted.
        """
        with _tracer.start_as_current_span("todo_studio.sync") as span:
            span.set_attribute("todo_studio.user_id", user_id)

            grant = await self._tokens.ensure_access_token(user_id)
            access_token = grant.access_token
            connection = grant.connection
            calendar_id = await self.ensure_calendar_id(connection, access_token)

            tasks = await self._store.list_tasks(task_access_where(user_id), SYNC_ELIGIBLE)
            # Eligibility is re-checked against the records themselves.
            tasks = [task for task in tasks if task.is_sync_eligible]
            mappings = await self._store.list_mappings(connection.id)

            eligible_ids = {task.id for task in tasks}
            deleted = await self._deletion_pass(
                access_token,
                calendar_id,
                [m for m in mappings if m.task_id not in eligible_ids],
            )

            mapping_by_task = {m.task_id: m for m in mappings if m.task_id in eligible_ids}
            created, updated, failed = await self._upsert_pass(
                access_token, calendar_id, connection, tasks, mapping_by_task
            )

            result = SyncResult(
                created=created,
                updated=updated,
                deleted=deleted,
                total_active=len(tasks),
                failed=failed,
            )
            for key, value in result.as_dict().items():
                span.set_attribute(f"todo_studio.sync.{key}", value)

        logger.info(
            "Google Calendar sync finished: user_id=%s created=%d updated=%d deleted=%d "
            "failed=%d total_active=%d",
            user_id,
            result.created,
            result.updated,
            result.deleted,
            result.failed,
            result.total_active,
        )
        return result

    async def _deletion_pass(
        self,
        access_token: str,
        calendar_id: str,
        stale: list[ExternalEventMapping],
    ) -> int:
        deleted = 0
        for mapping in stale:
            try:
                await self._calendar.delete_event(
                    access_token, calendar_id, mapping.external_event_id
                )
            except ProviderError as exc:
                logger.warning(
                    "Unable to delete stale Google event: task_id=%s event_id=%s error=%s",
                    mapping.task_id,
                    mapping.external_event_id,
                    exc.message,
                )
            await self._store.delete_mapping(mapping.id)
            deleted += 1
        return deleted

    async def _upsert_pass(
        self,
        access_token: str,
        calendar_id: str,
        connection: IntegrationConnection,
        tasks: list[Task],
        mapping_by_task: dict[str, ExternalEventMapping],
    ) -> tuple[int, int, int]:
        created = updated = failed = 0
        for task in tasks:
            payload = build_event_payload(task, self._base_url)
            mapping = mapping_by_task.get(task.id)

            if mapping is not None:
                try:
                    await self._calendar.update_event(
                        access_token, calendar_id, mapping.external_event_id, payload
                    )
                    updated += 1
                    continue
                except ProviderError as exc:
                    logger.warning(
                        "Unable to update Google event, recreating: task_id=%s event_id=%s "
                        "error=%s",
                        task.id,
                        mapping.external_event_id,
                        exc.message,
                    )
                    await self._store.delete_mapping(mapping.id)

            try:
                event = await self._calendar.create_event(access_token, calendar_id, payload)
            except ProviderError as exc:
                logger.warning(
                    "Unable to create Google event: task_id=%s error=%s", task.id, exc.message
                )
                failed += 1
                continue

            await self._store.create_mapping(
                ExternalEventMapping(
                    id=new_id(),
                    connection_id=connection.id,
                    task_id=task.id,
                    external_event_id=event.id,
                    created_at=utc_now(),
                )
            )
            created += 1
        return created, updated, failed
