"""Error taxonomy for the orchestration engine.

Every error carries a stable `kind` (used in API payloads) and the HTTP status
the API layer answers with.
"""

from __future__ import annotations


class TaskEngineError(Exception):
    """Base class for errors surfaced to callers."""

    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, dict[str, str]]:
        return {"error": {"kind": self.kind, "message": self.message}}


class TaskValidationError(TaskEngineError):
    kind = "validation_error"
    status_code = 422


class AuthorizationError(TaskEngineError):
    kind = "unauthorized"
    status_code = 401


class NotFoundError(TaskEngineError):
    kind = "not_found"
    status_code = 404


class TaskNotFoundError(NotFoundError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class PlanNotFoundError(NotFoundError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Plan for task {task_id} not found")
        self.task_id = task_id


class TaskStateError(TaskEngineError):
    kind = "invalid_state"
    status_code = 409


class StorageError(TaskEngineError):
    kind = "storage_error"
    status_code = 500


class ReasoningServiceError(TaskEngineError):
    """Reasoning service failed; retryable through the normal phase-failure path."""

    kind = "service_error"
    status_code = 502


class ServiceUnavailableError(ReasoningServiceError):
    """Authentication or configuration failure. Not retryable."""

    kind = "service_unavailable"
    status_code = 503


class RateLimitedError(ReasoningServiceError):
    kind = "rate_limited"
    status_code = 429


class QuotaExhaustedError(ReasoningServiceError):
    kind = "quota_exhausted"
    status_code = 402


class StructuredOutputError(ReasoningServiceError):
    """Response did not honour the requested schema."""

    kind = "invalid_response"
    status_code = 502


class PhaseExecutionError(TaskEngineError):
    """One phase attempt failed. Handled by the runner's retry/revise loop."""

    kind = "phase_failed"
    status_code = 500

    def __init__(self, message: str, *, cause_kind: str = "service_error") -> None:
        super().__init__(message)
        self.cause_kind = cause_kind
