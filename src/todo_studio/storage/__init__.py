"""Persistence backends for Todo Studio records."""

from todo_studio.storage.base import SYNC_ELIGIBLE, Store, TaskFilter
from todo_studio.storage.memory import InMemoryStore

__all__ = ["SYNC_ELIGIBLE", "InMemoryStore", "Store", "TaskFilter"]
