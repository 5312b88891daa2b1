"""Task runner: the phase-by-phase control loop.

Lifecycle of one run:
1) Task -> executing, plan -> active (one store write).
2) For each phase from the plan's current index:
   a) checkpoint: re-read the live task status; paused/cancelled stops the loop,
   b) mark the phase running and persist the plan,
   c) execute the phase,
   d) on success persist the result and advance,
   e) on failure spend one retry: splice in a revision when the reviser has one,
      then attempt the same index again; with no retries left fail the task.
      A pause/cancel already pending stops here instead of spending the retry.
3) All phases done: task and plan completed.

Pause and cancel are only observed at checkpoints, so a phase that has started
always reaches completed or failed. The start, completion and failure writes
are conditional on the live status, so a cancel is never overwritten.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from .errors import PhaseExecutionError, PlanNotFoundError, TaskNotFoundError, TaskStateError
from .execution_log import ExecutionLogWriter
from .executor import PhaseExecutor
from .models import HALTING_TASK_STATUSES, Plan, RunOutcome, Task, TaskStatus, utc_now
from .reviser import Reviser
from .storage import TaskStore

logger = logging.getLogger(__name__)

# Statuses a run may start from, and statuses it may finish from. A concurrent
# cancel leaves neither set, so it is never overwritten.
RUNNABLE_STATUSES: frozenset[str] = frozenset({"pending", "executing", "paused"})
FINISHABLE_STATUSES: frozenset[str] = frozenset({"executing", "paused"})


class TaskRunner:
    def __init__(
        self,
        *,
        store: TaskStore,
        executor: PhaseExecutor,
        reviser: Reviser,
        log_writer: ExecutionLogWriter,
        context_window: int = 3,
    ) -> None:
        self.store = store
        self.executor = executor
        self.reviser = reviser
        self.log_writer = log_writer
        self.context_window = context_window

    def run(self, owner_id: str, task_id: str) -> RunOutcome:
        task = self.store.get_task(task_id, owner_id=owner_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        plan = self.store.get_plan(task_id, owner_id=owner_id)
        if plan is None:
            raise PlanNotFoundError(task_id)
        if task.is_terminal:
            raise TaskStateError(f"Task {task_id} is {task.status} and cannot run")

        if plan.status in {"draft", "revising"}:
            plan.status = "active"
        entered = self.store.update_task(
            task_id,
            status="executing",
            started_at=task.started_at or utc_now(),
            plan=plan,
            allowed_from=RUNNABLE_STATUSES,
        )
        if entered is None:
            # Cancelled between the read above and this write.
            status = self.read_checkpoint_status(task_id)
            raise TaskStateError(f"Task {task_id} is {status} and cannot run")
        task = entered
        logger.info(
            "task_run event=start task_id=%s current_phase_index=%d total_phases=%d retry_count=%d",
            task_id,
            plan.current_phase_index,
            plan.total_phases,
            task.retry_count,
        )

        # Seeded from earlier runs so a resumed task keeps its context window.
        results = plan.completed_results()
        index = plan.current_phase_index
        while index < plan.total_phases:
            status = self.read_checkpoint_status(task_id)
            if status in HALTING_TASK_STATUSES:
                return self._halted(task_id, status, plan, index, results)

            phase = plan.start_phase(index)
            self.store.save_plan(plan)
            started = time.perf_counter()
            try:
                result = self.executor.execute(phase, task.goal, self._recent(results))
            except PhaseExecutionError as exc:
                duration_ms = _duration_ms(started)
                plan.fail_phase(index, exc.message)
                self.store.save_plan(plan)
                self.log_writer.phase_failed(
                    task, plan, phase, error=exc.message, duration_ms=duration_ms
                )
                logger.warning(
                    "task_run event=phase_failed task_id=%s phase_index=%d cause=%s "
                    "retry_count=%d max_retries=%d",
                    task_id,
                    index,
                    exc.cause_kind,
                    task.retry_count,
                    task.max_retries,
                )
                if task.retry_count >= task.max_retries:
                    return self._fail(task, plan, exc.message, results)
                # A pending pause/cancel wins over spending a retry; resume retries this phase.
                status = self.read_checkpoint_status(task_id)
                if status in HALTING_TASK_STATUSES:
                    return self._halted(task_id, status, plan, index, results)
                task = self._prepare_retry(task, plan, index, exc.message)
                continue

            duration_ms = _duration_ms(started)
            plan.complete_phase(index, result)
            self.store.save_plan(plan)
            results.append({"phase": phase.name, "result": result})
            self.log_writer.phase_succeeded(
                task, plan, phase, result=result, duration_ms=duration_ms
            )
            logger.info(
                "task_run event=phase_completed task_id=%s phase_index=%d duration_ms=%.2f",
                task_id,
                index,
                duration_ms,
            )
            index += 1

        return self._complete(task, plan, results)

    def read_checkpoint_status(self, task_id: str) -> TaskStatus:
        """Read the live task status from the store, never from memory.

        Pause/cancel requests from other processes become visible here.
        """
        status = self.store.get_task_status(task_id)
        if status is None:
            raise TaskNotFoundError(task_id)
        return status

    def _prepare_retry(self, task: Task, plan: Plan, index: int, error: str) -> Task:
        """Spend one retry on phase `index`, revising the remaining phases when possible."""
        retry_count = task.retry_count + 1
        revised = self.reviser.revise(plan.phases[index:], index, error, task.goal)
        if revised is not None:
            plan.replace_from(index, revised)
        task = self.store.update_task(task.task_id, retry_count=retry_count, plan=plan)
        if revised is not None:
            self.log_writer.plan_revised(task, plan, failed_index=index, error=error)
        logger.info(
            "task_run event=retry task_id=%s phase_index=%d retry_count=%d revised=%s "
            "revision_count=%d",
            task.task_id,
            index,
            retry_count,
            revised is not None,
            plan.revision_count,
        )
        return task

    def _fail(
        self,
        task: Task,
        plan: Plan,
        error: str,
        results: list[dict[str, Any]],
    ) -> RunOutcome:
        failed_plan = plan.model_copy(update={"status": "failed"}, deep=True)
        failed = self.store.update_task(
            task.task_id,
            status="failed",
            error_message=error,
            plan=failed_plan,
            allowed_from=FINISHABLE_STATUSES,
        )
        if failed is None:
            return self._superseded(task.task_id, plan, results)
        logger.info(
            "task_run event=failed task_id=%s retry_count=%d error=%s",
            failed.task_id,
            failed.retry_count,
            error,
        )
        return RunOutcome(
            success=False,
            task_id=failed.task_id,
            status="failed",
            phases=failed_plan.phases,
            results=results,
            error=error,
        )

    def _complete(self, task: Task, plan: Plan, results: list[dict[str, Any]]) -> RunOutcome:
        completed_plan = plan.model_copy(
            update={"status": "completed", "current_phase_index": plan.total_phases},
            deep=True,
        )
        completed = self.store.update_task(
            task.task_id,
            status="completed",
            completed_at=utc_now(),
            result={"phases": results},
            plan=completed_plan,
            allowed_from=FINISHABLE_STATUSES,
        )
        if completed is None:
            return self._superseded(task.task_id, plan, results)
        logger.info(
            "task_run event=completed task_id=%s total_phases=%d revision_count=%d",
            completed.task_id,
            completed_plan.total_phases,
            completed_plan.revision_count,
        )
        return RunOutcome(
            success=True,
            task_id=completed.task_id,
            status="completed",
            phases=completed_plan.phases,
            results=results,
        )

    def _halted(
        self,
        task_id: str,
        status: TaskStatus,
        plan: Plan,
        index: int,
        results: list[dict[str, Any]],
    ) -> RunOutcome:
        logger.info(
            "task_run event=halted task_id=%s status=%s phase_index=%d",
            task_id,
            status,
            index,
        )
        return RunOutcome(
            success=False,
            task_id=task_id,
            status=status,
            phases=plan.phases,
            results=results,
        )

    def _superseded(
        self,
        task_id: str,
        plan: Plan,
        results: list[dict[str, Any]],
    ) -> RunOutcome:
        """Final write lost to a concurrent status change (cancel); report the live status."""
        status = self.read_checkpoint_status(task_id)
        logger.info("task_run event=superseded task_id=%s status=%s", task_id, status)
        return RunOutcome(
            success=False,
            task_id=task_id,
            status=status,
            phases=plan.phases,
            results=results,
        )

    def _recent(self, results: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if self.context_window <= 0:
            return []
        return results[-self.context_window :]


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
