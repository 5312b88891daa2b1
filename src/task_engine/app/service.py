"""Public operation surface of the orchestration engine.

Every operation is scoped by owner id. A task owned by someone else is
reported exactly like a missing one, so its existence is never revealed.
"""

from __future__ import annotations

import logging

from .errors import AuthorizationError, TaskNotFoundError, TaskStateError
from .execution_log import ExecutionLogWriter
from .models import (
    Capability,
    Plan,
    PlanSummary,
    RunOutcome,
    Task,
    TaskDetail,
    TaskPriority,
    TaskStatus,
    TaskSummary,
)
from .planner import Planner
from .runner import TaskRunner
from .storage import TaskStore

logger = logging.getLogger(__name__)

# Pause/cancel are advisory: they only take effect at the runner's next checkpoint.
INTERRUPTIBLE_STATUSES: frozenset[str] = frozenset({"pending", "executing", "paused"})


class TaskService:
    def __init__(
        self,
        *,
        store: TaskStore,
        planner: Planner,
        runner: TaskRunner,
        log_writer: ExecutionLogWriter,
        page_size: int = 50,
    ) -> None:
        self.store = store
        self.planner = planner
        self.runner = runner
        self.log_writer = log_writer
        self.page_size = page_size

    def create_task(
        self,
        owner_id: str,
        goal: str,
        *,
        capability: Capability | None = None,
        priority: TaskPriority | None = None,
    ) -> tuple[Task, Plan]:
        _require_owner(owner_id)
        return self.planner.create_task(
            owner_id,
            goal,
            capability_hint=capability,
            priority=priority,
        )

    def run_task(self, owner_id: str, task_id: str) -> RunOutcome:
        _require_owner(owner_id)
        return self.runner.run(owner_id, task_id)

    def resume_task(self, owner_id: str, task_id: str) -> RunOutcome:
        """Continue a paused task from its current phase index."""
        task = self._get_owned_task(owner_id, task_id)
        if task.status != "paused":
            raise TaskStateError(f"Task {task_id} is {task.status}; only paused tasks resume")
        return self.runner.run(owner_id, task_id)

    def pause_task(self, owner_id: str, task_id: str) -> Task:
        return self._request_status(owner_id, task_id, "paused")

    def cancel_task(self, owner_id: str, task_id: str) -> Task:
        return self._request_status(owner_id, task_id, "cancelled")

    def list_tasks(self, owner_id: str, *, limit: int | None = None) -> list[TaskSummary]:
        _require_owner(owner_id)
        page_size = min(limit or self.page_size, self.page_size)
        return [
            TaskSummary(task=task, plan=PlanSummary.from_plan(plan) if plan else None)
            for task, plan in self.store.list_tasks(owner_id, limit=page_size)
        ]

    def get_task_detail(self, owner_id: str, task_id: str) -> TaskDetail:
        task = self._get_owned_task(owner_id, task_id)
        plan = self.store.get_plan(task_id, owner_id=owner_id)
        return TaskDetail(
            task=task,
            plans=[plan] if plan is not None else [],
            logs=self.store.list_logs(task_id),
        )

    def _request_status(self, owner_id: str, task_id: str, status: TaskStatus) -> Task:
        current = self._get_owned_task(owner_id, task_id)
        updated = self.store.set_status(
            task_id,
            owner_id=owner_id,
            status=status,
            allowed_from=INTERRUPTIBLE_STATUSES,
        )
        if updated is None:
            # Lost a race with the runner or the task is already terminal.
            latest = self.store.get_task_status(task_id) or current.status
            raise TaskStateError(f"Task {task_id} is {latest} and cannot be {status}")
        self.log_writer.status_changed(updated, previous=current.status)
        logger.info(
            "task_status event=requested task_id=%s from=%s to=%s",
            task_id,
            current.status,
            status,
        )
        return updated

    def _get_owned_task(self, owner_id: str, task_id: str) -> Task:
        _require_owner(owner_id)
        task = self.store.get_task(task_id, owner_id=owner_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task


def _require_owner(owner_id: str) -> None:
    if not owner_id or not owner_id.strip():
        raise AuthorizationError("Owner id is required")
