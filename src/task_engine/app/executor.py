from __future__ import annotations

import json
from typing import Any

from .errors import PhaseExecutionError, ReasoningServiceError
from .llm import ReasoningService
from .models import Phase


class PhaseExecutor:
    """Run one phase as a single reasoning-service call.

    No retries happen here; a failed attempt is reported to the task runner,
    which owns the retry/revise policy.
    """

    def __init__(
        self,
        *,
        reasoning: ReasoningService,
        timeout_s: float = 120.0,
        max_tokens: int = 2000,
    ) -> None:
        self.reasoning = reasoning
        self.timeout_s = timeout_s
        self.max_tokens = max_tokens

    def execute(
        self,
        phase: Phase,
        goal: str,
        recent_results: list[dict[str, Any]],
    ) -> dict[str, Any]:
        messages = [
            {"role": "system", "content": _system_prompt(phase, goal, recent_results)},
            {"role": "user", "content": f"Execute phase: {phase.name} - {phase.description}"},
        ]
        try:
            output = self.reasoning.complete(
                messages,
                timeout_s=self.timeout_s,
                max_tokens=self.max_tokens,
            )
        except ReasoningServiceError as exc:
            raise PhaseExecutionError(
                f"Phase '{phase.name}' failed: {exc.message}",
                cause_kind=exc.kind,
            ) from exc
        return {"output": output, "tools_used": list(phase.actions)}


def _system_prompt(phase: Phase, goal: str, recent_results: list[dict[str, Any]]) -> str:
    previous = json.dumps(recent_results, ensure_ascii=True, default=str)
    return (
        "You are an autonomous AI agent executing a specific phase of a task plan.\n\n"
        f"Phase: {phase.name}\n"
        f"Description: {phase.description}\n"
        f"Actions available: {', '.join(phase.actions)}\n\n"
        f"Original goal: {goal}\n"
        f"Previous results: {previous}\n\n"
        "Execute this phase thoroughly. Return a detailed result of what was accomplished. "
        "Include any outputs, findings, or artifacts."
    )
