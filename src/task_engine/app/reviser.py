from __future__ import annotations

import logging

from .errors import ReasoningServiceError
from .llm import ReasoningService
from .models import Phase, PlanRevision
from .planner import normalize_phase_drafts

logger = logging.getLogger(__name__)


class Reviser:
    """Best-effort replacement of a failed phase and everything after it.

    Any failure to obtain a usable revision returns None instead of raising.
    """

    def __init__(
        self,
        *,
        reasoning: ReasoningService,
        timeout_s: float = 30.0,
        max_tokens: int = 1000,
    ) -> None:
        self.reasoning = reasoning
        self.timeout_s = timeout_s
        self.max_tokens = max_tokens

    def revise(
        self,
        remaining_phases: list[Phase],
        failed_index: int,
        error_text: str,
        goal: str,
    ) -> list[Phase] | None:
        if not remaining_phases:
            return None
        failed = remaining_phases[0]
        remaining = "\n".join(
            f"- {phase.name}: {phase.description} (actions: {', '.join(phase.actions)})"
            for phase in remaining_phases
        )
        system_prompt = (
            "A task phase failed. Revise the remaining plan to work around the error.\n"
            f"Failed phase: {failed.name}\n"
            f"Error: {error_text}\n"
            f"Original goal: {goal}\n"
            f"Remaining phases:\n{remaining}\n\n"
            "Return JSON only with key 'phases': the revised phases replacing the failed "
            "phase and all remaining ones. Each phase has 'name', 'capability', "
            "'description' and 'actions'."
        )
        try:
            revision = self.reasoning.complete(
                [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": "Revise the plan"},
                ],
                response_model=PlanRevision,
                timeout_s=self.timeout_s,
                max_tokens=self.max_tokens,
            )
        except ReasoningServiceError as exc:
            logger.warning(
                "plan_revision event=unavailable failed_index=%d reason=%s",
                failed_index,
                exc,
            )
            return None

        if not revision.phases:
            logger.warning("plan_revision event=empty failed_index=%d", failed_index)
            return None
        drafts = normalize_phase_drafts(revision.phases)
        return [
            Phase.from_draft(draft, index=failed_index + offset)
            for offset, draft in enumerate(drafts)
        ]
