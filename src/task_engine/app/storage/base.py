"""Storage interface for tasks, plans, and execution logs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from ..models import (
    ExecutionLogEntry,
    Plan,
    Task,
    TaskStatus,
)


class TaskStore(Protocol):
    def migrate(self) -> None: ...

    def create_task(self, task: Task, plan: Plan) -> None:
        """Insert a task and its plan as one unit."""
        ...

    def get_task(self, task_id: str, *, owner_id: str) -> Task | None: ...

    def get_task_status(self, task_id: str) -> TaskStatus | None: ...

    def get_plan(self, task_id: str, *, owner_id: str) -> Plan | None: ...

    def update_task(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        retry_count: int | None = None,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        result: dict[str, Any] | None = None,
        error_message: str | None = None,
        plan: Plan | None = None,
        allowed_from: frozenset[str] | None = None,
    ) -> Task | None:
        """Write the given task fields, and the plan when passed, in one transaction.

        With `allowed_from`, nothing is written and None is returned unless the
        current status is in that set.
        """
        ...

    def save_plan(self, plan: Plan) -> Plan: ...

    def set_status(
        self,
        task_id: str,
        *,
        owner_id: str,
        status: TaskStatus,
        allowed_from: frozenset[str],
    ) -> Task | None:
        """Conditionally change status; returns None when the current status is not allowed."""
        ...

    def list_tasks(self, owner_id: str, *, limit: int) -> list[tuple[Task, Plan | None]]: ...

    def append_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry: ...

    def list_logs(self, task_id: str) -> list[ExecutionLogEntry]: ...
