"""FastAPI application wiring for the task orchestration engine.

Terms used in this file:
- FastAPI app: the main web application object.
- app.state: shared runtime objects (store, reasoning service, task service).
- Owner id: caller identity taken from the `X-Owner-Id` header; every task
  operation is scoped to it.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse

from .app.errors import TaskEngineError
from .app.execution_log import ExecutionLogWriter
from .app.executor import PhaseExecutor
from .app.llm import ReasoningService, build_reasoning_service
from .app.models import (
    ACTION_CATALOGUE,
    CAPABILITIES,
    ActionResponse,
    CreateTaskRequest,
    CreateTaskResponse,
    RunOutcome,
    TaskDetail,
    TaskListResponse,
)
from .app.planner import Planner
from .app.reviser import Reviser
from .app.runner import TaskRunner
from .app.service import TaskService
from .app.settings import Settings, get_settings
from .app.storage import InMemoryTaskStore, PostgresTaskStore, TaskStore

logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> TaskStore:
    if settings.storage_backend == "memory":
        return InMemoryTaskStore()
    database_url = settings.resolved_database_url()
    if not database_url:
        raise RuntimeError(
            "Missing database URL. Set TASK_ENGINE_DATABASE_URL "
            "or ORCHESTRATOR_DATABASE_URL, or use TASK_ENGINE_STORAGE_BACKEND=memory."
        )
    return PostgresTaskStore(database_url)


def build_task_service(
    *,
    settings: Settings,
    store: TaskStore,
    reasoning: ReasoningService,
) -> TaskService:
    """Compose log writer, planner, executor, reviser, and runner into the service."""
    log_writer = ExecutionLogWriter(store)
    planner = Planner(
        reasoning=reasoning,
        store=store,
        log_writer=log_writer,
        timeout_s=settings.planner_timeout_s,
        default_max_retries=settings.max_retries,
    )
    runner = TaskRunner(
        store=store,
        executor=PhaseExecutor(
            reasoning=reasoning,
            timeout_s=settings.executor_timeout_s,
            max_tokens=settings.phase_max_tokens,
        ),
        reviser=Reviser(
            reasoning=reasoning,
            timeout_s=settings.reviser_timeout_s,
            max_tokens=settings.revision_max_tokens,
        ),
        log_writer=log_writer,
        context_window=settings.context_window,
    )
    return TaskService(
        store=store,
        planner=planner,
        runner=runner,
        log_writer=log_writer,
        page_size=settings.list_page_size,
    )


def create_app(
    *,
    store: TaskStore | None = None,
    reasoning: ReasoningService | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    """Application factory.

    Tests pass an in-memory store and a fake reasoning service; production
    builds both from settings and fails fast when configuration is missing.
    Serve with `uvicorn task_engine.main:create_app --factory`.
    """
    settings = settings_override or get_settings()
    task_store = store or build_store(settings)
    task_store.migrate()
    reasoning_service = reasoning or build_reasoning_service(settings)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.state.settings = settings
    app.state.store = task_store
    app.state.reasoning = reasoning_service
    app.state.service = build_task_service(
        settings=settings,
        store=task_store,
        reasoning=reasoning_service,
    )

    @app.exception_handler(TaskEngineError)
    async def handle_engine_error(_request: Request, exc: TaskEngineError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("api event=error kind=%s message=%s", exc.kind, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/actions")
    def list_actions() -> dict[str, list[str]]:
        return {"actions": list(ACTION_CATALOGUE), "capabilities": list(CAPABILITIES)}

    @app.post("/tasks", response_model=CreateTaskResponse)
    def create_task(
        payload: CreateTaskRequest,
        x_owner_id: str = Header(default=""),
    ) -> CreateTaskResponse:
        task, plan = app.state.service.create_task(
            x_owner_id,
            payload.goal,
            capability=payload.capability,
            priority=payload.priority,
        )
        return CreateTaskResponse(task=task, plan=plan)

    @app.get("/tasks", response_model=TaskListResponse)
    def list_tasks(x_owner_id: str = Header(default="")) -> TaskListResponse:
        return TaskListResponse(tasks=app.state.service.list_tasks(x_owner_id))

    @app.get("/tasks/{task_id}", response_model=TaskDetail)
    def get_task_detail(task_id: str, x_owner_id: str = Header(default="")) -> TaskDetail:
        return app.state.service.get_task_detail(x_owner_id, task_id)

    # Runs execute in the threadpool alongside pause/cancel requests.
    @app.post("/tasks/{task_id}/run", response_model=RunOutcome)
    def run_task(task_id: str, x_owner_id: str = Header(default="")) -> RunOutcome:
        return app.state.service.run_task(x_owner_id, task_id)

    @app.post("/tasks/{task_id}/resume", response_model=RunOutcome)
    def resume_task(task_id: str, x_owner_id: str = Header(default="")) -> RunOutcome:
        return app.state.service.resume_task(x_owner_id, task_id)

    @app.post("/tasks/{task_id}/pause", response_model=ActionResponse)
    def pause_task(task_id: str, x_owner_id: str = Header(default="")) -> ActionResponse:
        task = app.state.service.pause_task(x_owner_id, task_id)
        return ActionResponse(success=True, task_id=task.task_id, status=task.status)

    @app.post("/tasks/{task_id}/cancel", response_model=ActionResponse)
    def cancel_task(task_id: str, x_owner_id: str = Header(default="")) -> ActionResponse:
        task = app.state.service.cancel_task(x_owner_id, task_id)
        return ActionResponse(success=True, task_id=task.task_id, status=task.status)

    return app
