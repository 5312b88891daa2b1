"""PostgreSQL storage backend for tasks, plans, and execution logs.

Terms:
- Migration: creating tables before normal reads/writes.
- JSONB: PostgreSQL JSON type used for phases, context, and log snapshots.
- Row factory: returns query rows as dict-like objects instead of tuples.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from ..errors import StorageError
from ..models import ExecutionLogEntry, Phase, Plan, Task, TaskStatus, utc_now

_TASK_COLUMNS = (
    "task_id",
    "owner_id",
    "title",
    "goal",
    "capability",
    "priority",
    "context_json",
    "status",
    "retry_count",
    "max_retries",
    "started_at",
    "completed_at",
    "result_json",
    "error_message",
    "created_at",
    "updated_at",
)


class PostgresTaskStore:
    """Thread-safe PostgreSQL-backed store."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        # Lock guards DB operations done through this store instance.
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        """Create required tables and indexes if they do not already exist."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS agent_tasks (
                    task_id UUID PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    goal TEXT NOT NULL,
                    capability TEXT NOT NULL,
                    priority TEXT NOT NULL DEFAULT 'normal',
                    context_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                    status TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    max_retries INTEGER NOT NULL DEFAULT 3,
                    started_at TIMESTAMPTZ,
                    completed_at TIMESTAMPTZ,
                    result_json JSONB,
                    error_message TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_agent_tasks_owner_created
                ON agent_tasks(owner_id, created_at DESC)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS agent_plans (
                    plan_id UUID PRIMARY KEY,
                    task_id UUID NOT NULL UNIQUE REFERENCES agent_tasks(task_id) ON DELETE CASCADE,
                    owner_id TEXT NOT NULL,
                    phases_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    current_phase_index INTEGER NOT NULL DEFAULT 0,
                    total_phases INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    revision_count INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS agent_execution_logs (
                    seq BIGSERIAL PRIMARY KEY,
                    log_id UUID NOT NULL UNIQUE,
                    task_id UUID NOT NULL REFERENCES agent_tasks(task_id) ON DELETE CASCADE,
                    plan_id UUID,
                    owner_id TEXT NOT NULL,
                    phase_index INTEGER,
                    action_type TEXT NOT NULL,
                    action_name TEXT,
                    input_json JSONB,
                    output_json JSONB,
                    status TEXT NOT NULL,
                    duration_ms DOUBLE PRECISION,
                    error_message TEXT,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_agent_execution_logs_task
                ON agent_execution_logs(task_id, seq)
                """)

    def create_task(self, task: Task, plan: Plan) -> None:
        """Insert the task row and its plan row in one transaction."""
        with self._transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO agent_tasks ({", ".join(_TASK_COLUMNS)})
                VALUES ({", ".join(["%s"] * len(_TASK_COLUMNS))})
                """,
                (
                    task.task_id,
                    task.owner_id,
                    task.title,
                    task.goal,
                    task.capability,
                    task.priority,
                    self._json_wrapper(task.context),
                    task.status,
                    task.retry_count,
                    task.max_retries,
                    task.started_at,
                    task.completed_at,
                    self._json_wrapper(task.result) if task.result is not None else None,
                    task.error_message,
                    task.created_at,
                    task.updated_at,
                ),
            )
            conn.execute(
                """
                INSERT INTO agent_plans (
                    plan_id,
                    task_id,
                    owner_id,
                    phases_json,
                    current_phase_index,
                    total_phases,
                    status,
                    revision_count,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    plan.plan_id,
                    plan.task_id,
                    plan.owner_id,
                    self._phases_json(plan),
                    plan.current_phase_index,
                    plan.total_phases,
                    plan.status,
                    plan.revision_count,
                    plan.created_at,
                    plan.updated_at,
                ),
            )

    def get_task(self, task_id: str, *, owner_id: str) -> Task | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM agent_tasks WHERE task_id::text = %s AND owner_id = %s",
                (task_id, owner_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def get_task_status(self, task_id: str) -> TaskStatus | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT status FROM agent_tasks WHERE task_id::text = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return row["status"]

    def get_plan(self, task_id: str, *, owner_id: str) -> Plan | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM agent_plans WHERE task_id::text = %s AND owner_id = %s",
                (task_id, owner_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_plan(row)

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
        """Update selected task columns (and the plan) while keeping the rest unchanged.

        With `allowed_from` the update is conditional on the current status and
        returns None when it does not match.
        """
        changes: dict[str, Any] = {
            "status": status,
            "retry_count": retry_count,
            "started_at": started_at,
            "completed_at": completed_at,
            "result_json": self._json_wrapper(result) if result is not None else None,
            "error_message": error_message,
        }
        assignments = {key: value for key, value in changes.items() if value is not None}
        assignments["updated_at"] = utc_now()
        set_clause = ", ".join(f"{column} = %s" for column in assignments)
        params: list[Any] = [*assignments.values(), task_id]
        where_clause = "task_id::text = %s"
        if allowed_from is not None:
            where_clause += " AND status = ANY(%s)"
            params.append(sorted(allowed_from))

        with self._transaction() as conn:
            row = conn.execute(
                f"UPDATE agent_tasks SET {set_clause} WHERE {where_clause} RETURNING *",
                params,
            ).fetchone()
            if row is None:
                if allowed_from is not None:
                    return None
                raise KeyError(f"Task {task_id} does not exist")
            if plan is not None:
                self._write_plan(conn, plan)
        return self._row_to_task(row)

    def save_plan(self, plan: Plan) -> Plan:
        with self._transaction() as conn:
            self._write_plan(conn, plan)
        return plan

    def set_status(
        self,
        task_id: str,
        *,
        owner_id: str,
        status: TaskStatus,
        allowed_from: frozenset[str],
    ) -> Task | None:
        with self._transaction() as conn:
            row = conn.execute(
                """
                UPDATE agent_tasks
                SET status = %s, updated_at = %s
                WHERE task_id::text = %s AND owner_id = %s AND status = ANY(%s)
                RETURNING *
                """,
                (status, utc_now(), task_id, owner_id, sorted(allowed_from)),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def list_tasks(self, owner_id: str, *, limit: int) -> list[tuple[Task, Plan | None]]:
        with self._transaction() as conn:
            task_rows = conn.execute(
                """
                SELECT * FROM agent_tasks
                WHERE owner_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (owner_id, limit),
            ).fetchall()
            task_ids = [str(row["task_id"]) for row in task_rows]
            plan_rows = (
                conn.execute(
                    "SELECT * FROM agent_plans WHERE task_id::text = ANY(%s)",
                    (task_ids,),
                ).fetchall()
                if task_ids
                else []
            )
        plans = {str(row["task_id"]): self._row_to_plan(row) for row in plan_rows}
        return [
            (self._row_to_task(row), plans.get(str(row["task_id"])))
            for row in task_rows
        ]

    def append_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO agent_execution_logs (
                    log_id,
                    task_id,
                    plan_id,
                    owner_id,
                    phase_index,
                    action_type,
                    action_name,
                    input_json,
                    output_json,
                    status,
                    duration_ms,
                    error_message,
                    created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.log_id,
                    entry.task_id,
                    entry.plan_id,
                    entry.owner_id,
                    entry.phase_index,
                    entry.action_type,
                    entry.action_name,
                    self._json_wrapper(entry.input_data) if entry.input_data is not None else None,
                    (
                        self._json_wrapper(entry.output_data)
                        if entry.output_data is not None
                        else None
                    ),
                    entry.status,
                    entry.duration_ms,
                    entry.error_message,
                    entry.created_at,
                ),
            )
        return entry

    def list_logs(self, task_id: str) -> list[ExecutionLogEntry]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM agent_execution_logs WHERE task_id::text = %s ORDER BY seq",
                (task_id,),
            ).fetchall()
        return [self._row_to_log(row) for row in rows]

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        """Run statements in one committed transaction; driver errors become StorageError."""
        with self._lock:
            try:
                with self._connect() as conn:
                    with conn.transaction():
                        yield conn
            except self._psycopg.Error as exc:
                raise StorageError(f"Task store operation failed: {exc}") from exc

    def _write_plan(self, conn: Any, plan: Plan) -> None:
        plan.updated_at = utc_now()
        result = conn.execute(
            """
            UPDATE agent_plans
            SET phases_json = %s,
                current_phase_index = %s,
                total_phases = %s,
                status = %s,
                revision_count = %s,
                updated_at = %s
            WHERE plan_id::text = %s
            """,
            (
                self._phases_json(plan),
                plan.current_phase_index,
                plan.total_phases,
                plan.status,
                plan.revision_count,
                plan.updated_at,
                plan.plan_id,
            ),
        )
        if result.rowcount == 0:
            raise KeyError(f"Plan {plan.plan_id} does not exist")

    def _phases_json(self, plan: Plan) -> Any:
        return self._json_wrapper([phase.model_dump(mode="json") for phase in plan.phases])

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json(raw: Any) -> Any:
        if isinstance(raw, str):
            return json.loads(raw)
        return raw

    @classmethod
    def _parse_json_object(cls, raw: Any) -> dict[str, Any] | None:
        if raw is None:
            return None
        parsed = cls._parse_json(raw)
        if isinstance(parsed, dict):
            return parsed
        return None

    @classmethod
    def _row_to_task(cls, row: Any) -> Task:
        """Map one DB row to the canonical Task model."""
        return Task(
            task_id=str(row["task_id"]),
            owner_id=row["owner_id"],
            title=row["title"],
            goal=row["goal"],
            capability=row["capability"],
            priority=row["priority"],
            context=cls._parse_json_object(row["context_json"]) or {},
            status=row["status"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            result=cls._parse_json_object(row["result_json"]),
            error_message=row["error_message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def _row_to_plan(cls, row: Any) -> Plan:
        raw_phases = cls._parse_json(row["phases_json"]) or []
        return Plan(
            plan_id=str(row["plan_id"]),
            task_id=str(row["task_id"]),
            owner_id=row["owner_id"],
            phases=[Phase.model_validate(item) for item in raw_phases],
            current_phase_index=row["current_phase_index"],
            total_phases=row["total_phases"],
            status=row["status"],
            revision_count=row["revision_count"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def _row_to_log(cls, row: Any) -> ExecutionLogEntry:
        return ExecutionLogEntry(
            log_id=str(row["log_id"]),
            task_id=str(row["task_id"]),
            plan_id=str(row["plan_id"]) if row["plan_id"] is not None else None,
            owner_id=row["owner_id"],
            phase_index=row["phase_index"],
            action_type=row["action_type"],
            action_name=row["action_name"],
            input_data=cls._parse_json_object(row["input_json"]),
            output_data=cls._parse_json_object(row["output_json"]),
            status=row["status"],
            duration_ms=row["duration_ms"],
            error_message=row["error_message"],
            created_at=row["created_at"],
        )
