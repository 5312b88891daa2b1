"""Storage backends for tasks, plans, and execution logs."""

from .base import TaskStore
from .memory import InMemoryTaskStore
from .postgres import PostgresTaskStore

__all__ = [
    "InMemoryTaskStore",
    "PostgresTaskStore",
    "TaskStore",
]
