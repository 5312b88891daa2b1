"""Pydantic models shared across planner, runner, service, API, and storage.

Terms used in this file:
- Task: one user goal being orchestrated end-to-end.
- Plan: the ordered phase list for exactly one task.
- Phase: one executable step of a plan, scoped to a capability and actions.
- Execution log entry: immutable audit record of one orchestration event.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

# Task lifecycle states. Terminal states never transition further.
TaskStatus = Literal["pending", "executing", "paused", "completed", "failed", "cancelled"]
TERMINAL_TASK_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})
# Statuses the runner stops at when it reads them at a checkpoint.
HALTING_TASK_STATUSES: frozenset[str] = frozenset({"paused", "cancelled"})

PlanStatus = Literal["draft", "active", "revising", "completed", "failed"]
PhaseStatus = Literal["pending", "running", "completed", "failed", "skipped"]
TaskPriority = Literal["low", "normal", "high", "urgent"]
LogStatus = Literal["success", "error"]
LogActionType = Literal["task_created", "phase_execution", "plan_revision", "status_change"]

Capability = Literal[
    "general",
    "data_analysis",
    "web_development",
    "tutoring",
    "accessibility",
    "automation",
    "presentation",
    "integration",
    "research",
    "coding",
]
CAPABILITIES: tuple[str, ...] = (
    "general",
    "data_analysis",
    "web_development",
    "tutoring",
    "accessibility",
    "automation",
    "presentation",
    "integration",
    "research",
    "coding",
)

# Action names a phase may declare. Anything else from the model is dropped.
ACTION_CATALOGUE: tuple[str, ...] = (
    "web_search",
    "generate_code",
    "create_file",
    "browse_url",
    "http_request",
    "data_analysis",
    "text_generation",
    "summarize",
    "translate",
)
DEFAULT_ACTION = "text_generation"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def new_id() -> str:
    return str(uuid.uuid4())


class PhaseDraft(BaseModel):
    """Phase shape produced by the planner and the reviser."""

    name: str = Field(min_length=1)
    capability: str = "general"
    description: str = ""
    actions: list[str] = Field(default_factory=list)


class PlanDraft(BaseModel):
    """Structured planner output requested from the reasoning service."""

    title: str = Field(min_length=1)
    capability: Capability = "general"
    phases: list[PhaseDraft] = Field(min_length=2, max_length=8)


class PlanRevision(BaseModel):
    """Structured reviser output: replacement for the failed and remaining phases."""

    phases: list[PhaseDraft] = Field(default_factory=list)


class Phase(BaseModel):
    """One step within a plan."""

    index: int = Field(ge=0)
    name: str
    capability: str = "general"
    description: str = ""
    actions: list[str] = Field(default_factory=list)
    status: PhaseStatus = "pending"
    result: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def from_draft(cls, draft: PhaseDraft, *, index: int) -> Phase:
        return cls(
            index=index,
            name=draft.name,
            capability=draft.capability,
            description=draft.description,
            actions=list(draft.actions),
        )


class Plan(BaseModel):
    """Ordered phase list for one task.

    `current_phase_index` always points at the next phase to run. Phases are
    only ever replaced as a suffix through `replace_from`.
    """

    plan_id: str = Field(default_factory=new_id)
    task_id: str
    owner_id: str
    phases: list[Phase] = Field(default_factory=list)
    current_phase_index: int = Field(default=0, ge=0)
    total_phases: int = Field(default=0, ge=0)
    status: PlanStatus = "draft"
    revision_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def start_phase(self, index: int) -> Phase:
        phase = self.phases[index]
        phase.status = "running"
        phase.error = None
        self.current_phase_index = index
        if self.status in {"draft", "revising"}:
            self.status = "active"
        return phase

    def complete_phase(self, index: int, result: dict[str, Any]) -> None:
        phase = self.phases[index]
        phase.status = "completed"
        phase.result = result
        self.current_phase_index = index + 1

    def fail_phase(self, index: int, error: str) -> None:
        phase = self.phases[index]
        phase.status = "failed"
        phase.error = error

    def replace_from(self, index: int, replacement: list[Phase]) -> None:
        """Splice `replacement` in place of every phase from `index` onwards."""
        if index < self.current_phase_index or index > len(self.phases):
            raise ValueError(
                f"Cannot replace phases from index {index}; "
                f"current phase index is {self.current_phase_index}"
            )
        kept = self.phases[:index]
        renumbered = [
            phase.model_copy(
                update={
                    "index": index + offset,
                    "status": "pending",
                    "result": None,
                    "error": None,
                }
            )
            for offset, phase in enumerate(replacement)
        ]
        self.phases = kept + renumbered
        self.total_phases = len(self.phases)
        self.revision_count += 1
        self.status = "revising"

    def completed_results(self) -> list[dict[str, Any]]:
        """Results of phases already completed before the current index."""
        return [
            {"phase": phase.name, "result": phase.result}
            for phase in self.phases[: self.current_phase_index]
            if phase.status == "completed"
        ]


class Task(BaseModel):
    """Canonical task record shape returned by API/storage."""

    task_id: str = Field(default_factory=new_id)
    owner_id: str
    title: str
    goal: str
    capability: Capability = "general"
    priority: TaskPriority = "normal"
    # Original input plus the planner analysis.
    context: dict[str, Any] = Field(default_factory=dict)
    status: TaskStatus = "pending"
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0, le=10)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: dict[str, Any] | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class ExecutionLogEntry(BaseModel):
    """Append-only audit record."""

    log_id: str = Field(default_factory=new_id)
    task_id: str
    plan_id: str | None = None
    owner_id: str
    phase_index: int | None = None
    action_type: LogActionType
    action_name: str | None = None
    input_data: dict[str, Any] | None = None
    output_data: dict[str, Any] | None = None
    status: LogStatus = "success"
    duration_ms: float | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class PlanSummary(BaseModel):
    plan_id: str
    current_phase_index: int
    total_phases: int
    status: PlanStatus
    revision_count: int
    phase_counts: dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_plan(cls, plan: Plan) -> PlanSummary:
        counts: dict[str, int] = {}
        for phase in plan.phases:
            counts[phase.status] = counts.get(phase.status, 0) + 1
        return cls(
            plan_id=plan.plan_id,
            current_phase_index=plan.current_phase_index,
            total_phases=plan.total_phases,
            status=plan.status,
            revision_count=plan.revision_count,
            phase_counts=counts,
        )


class TaskSummary(BaseModel):
    task: Task
    plan: PlanSummary | None = None


class TaskDetail(BaseModel):
    task: Task
    plans: list[Plan] = Field(default_factory=list)
    logs: list[ExecutionLogEntry] = Field(default_factory=list)


class RunOutcome(BaseModel):
    """Structured result of one run invocation.

    Exhausted retries come back here with `success=False`; they are not raised.
    """

    success: bool
    task_id: str
    status: TaskStatus
    phases: list[Phase] = Field(default_factory=list)
    results: list[dict[str, Any]] = Field(default_factory=list)
    error: str | None = None


class CreateTaskRequest(BaseModel):
    """Request body for POST /tasks.

    Empty goals are rejected by the service so the error shape matches every
    other engine error.
    """

    goal: str
    capability: Capability | None = None
    priority: TaskPriority | None = None


class CreateTaskResponse(BaseModel):
    task: Task
    plan: Plan


class ActionResponse(BaseModel):
    success: bool
    task_id: str
    status: TaskStatus


class TaskListResponse(BaseModel):
    tasks: list[TaskSummary] = Field(default_factory=list)
