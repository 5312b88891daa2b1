"""Append-only audit trail writer."""

from __future__ import annotations

from typing import Any

from .models import ExecutionLogEntry, Phase, Plan, Task
from .storage import TaskStore


class ExecutionLogWriter:
    def __init__(self, store: TaskStore) -> None:
        self.store = store

    def task_created(self, task: Task, plan: Plan) -> ExecutionLogEntry:
        return self._append(
            task,
            plan_id=plan.plan_id,
            phase_index=0,
            action_type="task_created",
            action_name="system",
            input_data={"goal": task.goal},
            output_data={
                "task_id": task.task_id,
                "plan_id": plan.plan_id,
                "total_phases": plan.total_phases,
            },
        )

    def phase_succeeded(
        self,
        task: Task,
        plan: Plan,
        phase: Phase,
        *,
        result: dict[str, Any],
        duration_ms: float,
    ) -> ExecutionLogEntry:
        return self._append(
            task,
            plan_id=plan.plan_id,
            phase_index=phase.index,
            action_type="phase_execution",
            action_name=_primary_action(phase),
            input_data={"phase_name": phase.name},
            output_data=result,
            duration_ms=duration_ms,
        )

    def phase_failed(
        self,
        task: Task,
        plan: Plan,
        phase: Phase,
        *,
        error: str,
        duration_ms: float,
    ) -> ExecutionLogEntry:
        return self._append(
            task,
            plan_id=plan.plan_id,
            phase_index=phase.index,
            action_type="phase_execution",
            action_name=_primary_action(phase),
            input_data={"phase_name": phase.name},
            status="error",
            duration_ms=duration_ms,
            error_message=error,
        )

    def plan_revised(
        self,
        task: Task,
        plan: Plan,
        *,
        failed_index: int,
        error: str,
    ) -> ExecutionLogEntry:
        return self._append(
            task,
            plan_id=plan.plan_id,
            phase_index=failed_index,
            action_type="plan_revision",
            action_name="reviser",
            input_data={"error": error, "retry_count": task.retry_count},
            output_data={
                "revision_count": plan.revision_count,
                "phases": [phase.name for phase in plan.phases[failed_index:]],
            },
        )

    def status_changed(self, task: Task, *, previous: str) -> ExecutionLogEntry:
        return self._append(
            task,
            action_type="status_change",
            action_name="system",
            input_data={"from": previous},
            output_data={"to": task.status},
        )

    def _append(self, task: Task, **fields: Any) -> ExecutionLogEntry:
        entry = ExecutionLogEntry(task_id=task.task_id, owner_id=task.owner_id, **fields)
        return self.store.append_log(entry)


def _primary_action(phase: Phase) -> str:
    return phase.actions[0] if phase.actions else "ai"
