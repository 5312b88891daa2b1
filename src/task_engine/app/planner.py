"""Planning layer for the orchestration engine.

The planner asks the reasoning service for a structured plan, then validates
and normalizes it. When the service cannot produce a plan matching the schema,
the fixed Analyze -> Execute -> Review plan is used instead.

Terms:
- Plan draft: the raw, schema-validated planner output (title, capability, phases).
- Normalization: dropping unknown action names and filling missing ones.
- Fallback: switch to the default plan when structured output is unusable.
"""

from __future__ import annotations

import logging

from .errors import StructuredOutputError, TaskValidationError
from .execution_log import ExecutionLogWriter
from .llm import ReasoningService
from .models import (
    ACTION_CATALOGUE,
    DEFAULT_ACTION,
    Capability,
    Phase,
    PhaseDraft,
    Plan,
    PlanDraft,
    Task,
    TaskPriority,
)
from .storage import TaskStore

logger = logging.getLogger(__name__)

FALLBACK_TITLE_CHARS = 60

PLANNER_SYSTEM_PROMPT = (
    "You are a task planning module for an autonomous agent. "
    "Given a user request, create a structured execution plan. "
    "Return JSON only with keys 'title' (short task title), 'capability' "
    "(one of: general, data_analysis, web_development, tutoring, accessibility, "
    "automation, presentation, integration, research, coding) and 'phases'. "
    "Each phase has 'name', 'capability', 'description' (what this phase does) and "
    "'actions' (action names it needs). "
    f"Available actions: {', '.join(ACTION_CATALOGUE)}. "
    "Create 2-8 phases. Be specific and actionable."
)


def build_default_plan(goal: str) -> PlanDraft:
    """Fixed three-phase plan used when structured planning is unavailable."""
    return PlanDraft(
        title=goal.strip()[:FALLBACK_TITLE_CHARS],
        capability="general",
        phases=[
            PhaseDraft(
                name="Analyze",
                capability="general",
                description="Analyze the request",
                actions=["text_generation"],
            ),
            PhaseDraft(
                name="Execute",
                capability="general",
                description="Execute the main task",
                actions=["text_generation"],
            ),
            PhaseDraft(
                name="Review",
                capability="general",
                description="Review and finalize",
                actions=["summarize"],
            ),
        ],
    )


def normalize_phase_drafts(drafts: list[PhaseDraft]) -> list[PhaseDraft]:
    """Keep only catalogued action names; a phase left with none gets the default action.

    Model output is never trusted directly, so unknown actions cannot reach the
    executor prompt.
    """
    allowed = set(ACTION_CATALOGUE)
    normalized: list[PhaseDraft] = []
    for draft in drafts:
        actions: list[str] = []
        for action in draft.actions:
            cleaned = action.strip()
            if cleaned in allowed and cleaned not in actions:
                actions.append(cleaned)
        if not actions:
            actions = [DEFAULT_ACTION]
        normalized.append(
            draft.model_copy(
                update={
                    "name": draft.name.strip() or "Phase",
                    "capability": draft.capability.strip() or "general",
                    "actions": actions,
                }
            )
        )
    return normalized


class Planner:
    """Turn a goal into a persisted task and its draft plan.

    This class is the creation entrypoint used by the task service.
    """

    def __init__(
        self,
        *,
        reasoning: ReasoningService,
        store: TaskStore,
        log_writer: ExecutionLogWriter,
        timeout_s: float = 30.0,
        default_max_retries: int = 3,
    ) -> None:
        self.reasoning = reasoning
        self.store = store
        self.log_writer = log_writer
        self.timeout_s = timeout_s
        self.default_max_retries = default_max_retries

    def build_plan(self, goal: str) -> PlanDraft:
        """Ask the reasoning service for a plan, falling back on schema mismatch.

        Authentication, rate-limit, quota and other service errors propagate.
        """
        messages = [
            {"role": "system", "content": PLANNER_SYSTEM_PROMPT},
            {"role": "user", "content": goal},
        ]
        try:
            draft = self.reasoning.complete(
                messages,
                response_model=PlanDraft,
                timeout_s=self.timeout_s,
            )
        except StructuredOutputError as exc:
            # Never fail creation just because the plan was not parseable.
            logger.warning("Planner structured output unusable; using default plan. reason=%s", exc)
            return build_default_plan(goal)
        return draft.model_copy(update={"phases": normalize_phase_drafts(draft.phases)})

    def create_task(
        self,
        owner_id: str,
        goal: str,
        *,
        capability_hint: Capability | None = None,
        priority: TaskPriority | None = None,
    ) -> tuple[Task, Plan]:
        if not goal or not goal.strip():
            raise TaskValidationError("Goal text must not be empty")

        draft = self.build_plan(goal)
        task = Task(
            owner_id=owner_id,
            title=draft.title,
            goal=goal,
            capability=capability_hint or draft.capability,
            priority=priority or "normal",
            context={"original_input": goal, "analysis": draft.model_dump(mode="json")},
            max_retries=self.default_max_retries,
        )
        phases = [Phase.from_draft(item, index=index) for index, item in enumerate(draft.phases)]
        plan = Plan(
            task_id=task.task_id,
            owner_id=owner_id,
            phases=phases,
            total_phases=len(phases),
        )
        self.store.create_task(task, plan)
        self.log_writer.task_created(task, plan)
        logger.info(
            "task_create event=created task_id=%s plan_id=%s capability=%s total_phases=%d",
            task.task_id,
            plan.plan_id,
            task.capability,
            plan.total_phases,
        )
        return task, plan
