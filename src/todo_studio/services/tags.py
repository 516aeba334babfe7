"""Per-user tags and the ownership rule for task tag links.

Tags are private to their owner.  A task may only carry tags owned by the
task's owner, which for a task inside a shared list is the list owner, not
the collaborator making the change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from todo_studio.errors import ConflictError, ValidationError
from todo_studio.models import Tag, TagCreate, new_id, utc_now
from todo_studio.storage.base import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TagView:
    tag: Tag
    task_count: int = 0


async def assert_owned_tags(store: Store, owner_id: str, tag_ids: list[str]) -> None:
    """Raise :class:`ValidationError` unless every id names a tag of *owner_id*."""
    if not tag_ids:
        return
    owned = await store.count_owned_tags(owner_id, tag_ids)
    if owned != len(set(tag_ids)):
        raise ValidationError("Some tag_ids are invalid for this user.")


class TagService:
    def __init__(self, store: Store) -> None:
        self._store = store

    async def list_tags(self, owner_id: str) -> list[TagView]:
        """The caller's tags, oldest first, with the number of tasks using each."""
        tags = await self._store.list_tags(owner_id)
        counts = await self._store.count_tasks_by_tag(owner_id)
        return [TagView(tag=tag, task_count=counts.get(tag.id, 0)) for tag in tags]

    async def create_tag(self, owner_id: str, payload: TagCreate) -> TagView:
        if await self._store.find_tag_by_name(owner_id, payload.name) is not None:
            raise ConflictError("A tag with this name already exists")
        tag = await self._store.create_tag(
            Tag(
                id=new_id(),
                owner_id=owner_id,
                name=payload.name,
                color=payload.color,
                created_at=utc_now(),
            )
        )
        logger.info("Tag created: tag_id=%s owner_id=%s", tag.id, owner_id)
        return TagView(tag=tag)
