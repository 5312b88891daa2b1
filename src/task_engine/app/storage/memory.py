"""In-memory storage backend for tests and local runs."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any

from ..models import ExecutionLogEntry, Plan, Task, TaskStatus, utc_now


class InMemoryTaskStore:
    """Thread-safe dict-backed store. Records are copied on the way in and out."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, Task] = {}
        self._plans: dict[str, Plan] = {}
        self._logs: list[ExecutionLogEntry] = []

    def migrate(self) -> None:
        return None

    def create_task(self, task: Task, plan: Plan) -> None:
        with self._lock:
            if task.task_id in self._tasks:
                raise KeyError(f"Task {task.task_id} already exists")
            self._tasks[task.task_id] = task.model_copy(deep=True)
            self._plans[task.task_id] = plan.model_copy(deep=True)

    def get_task(self, task_id: str, *, owner_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.owner_id != owner_id:
                return None
            return task.model_copy(deep=True)

    def get_task_status(self, task_id: str) -> TaskStatus | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.status if task else None

    def get_plan(self, task_id: str, *, owner_id: str) -> Plan | None:
        with self._lock:
            plan = self._plans.get(task_id)
            if plan is None or plan.owner_id != owner_id:
                return None
            return plan.model_copy(deep=True)

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
        changes = {
            "status": status,
            "retry_count": retry_count,
            "started_at": started_at,
            "completed_at": completed_at,
            "result": result,
            "error_message": error_message,
        }
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise KeyError(f"Task {task_id} does not exist")
            if allowed_from is not None and current.status not in allowed_from:
                return None
            update = {key: value for key, value in changes.items() if value is not None}
            update["updated_at"] = utc_now()
            updated = current.model_copy(update=update, deep=True)
            self._tasks[task_id] = updated
            if plan is not None:
                self._store_plan(plan)
            return updated.model_copy(deep=True)

    def save_plan(self, plan: Plan) -> Plan:
        with self._lock:
            return self._store_plan(plan).model_copy(deep=True)

    def set_status(
        self,
        task_id: str,
        *,
        owner_id: str,
        status: TaskStatus,
        allowed_from: frozenset[str],
    ) -> Task | None:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None or current.owner_id != owner_id:
                return None
            if current.status not in allowed_from:
                return None
            updated = current.model_copy(update={"status": status, "updated_at": utc_now()})
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    def list_tasks(self, owner_id: str, *, limit: int) -> list[tuple[Task, Plan | None]]:
        with self._lock:
            owned = [task for task in self._tasks.values() if task.owner_id == owner_id]
            # Insertion order breaks ties between identical timestamps.
            ordered = list(reversed(owned))
            ordered.sort(key=lambda task: task.created_at, reverse=True)
            return [
                (
                    task.model_copy(deep=True),
                    plan.model_copy(deep=True)
                    if (plan := self._plans.get(task.task_id)) is not None
                    else None,
                )
                for task in ordered[:limit]
            ]

    def append_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        with self._lock:
            stored = entry.model_copy(deep=True)
            self._logs.append(stored)
            return stored.model_copy(deep=True)

    def list_logs(self, task_id: str) -> list[ExecutionLogEntry]:
        with self._lock:
            return [entry.model_copy(deep=True) for entry in self._logs if entry.task_id == task_id]

    def _store_plan(self, plan: Plan) -> Plan:
        if plan.task_id not in self._tasks:
            raise KeyError(f"Task {plan.task_id} does not exist")
        stored = plan.model_copy(update={"updated_at": utc_now()}, deep=True)
        self._plans[plan.task_id] = stored
        return stored
