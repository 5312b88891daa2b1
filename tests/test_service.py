from __future__ import annotations

import pytest

from task_engine.app.errors import (
    AuthorizationError,
    RateLimitedError,
    TaskNotFoundError,
    TaskStateError,
    TaskValidationError,
)


def test_empty_goal_is_rejected_and_nothing_is_created(service, store, reasoning) -> None:
    with pytest.raises(TaskValidationError):
        service.create_task("owner-a", "   ")

    assert service.list_tasks("owner-a") == []
    assert reasoning.calls == []


def test_missing_owner_is_unauthorized(service) -> None:
    with pytest.raises(AuthorizationError):
        service.create_task("", "Do something")
    with pytest.raises(AuthorizationError):
        service.list_tasks("  ")


def test_identical_goals_create_distinct_tasks(service) -> None:
    first, _ = service.create_task("owner-a", "Translate the README")
    second, _ = service.create_task("owner-a", "Translate the README")

    assert first.task_id != second.task_id
    assert len(service.list_tasks("owner-a")) == 2


def test_other_owner_cannot_see_or_control_task(service) -> None:
    task, _ = service.create_task("owner-a", "Private goal")

    with pytest.raises(TaskNotFoundError):
        service.get_task_detail("owner-b", task.task_id)
    with pytest.raises(TaskNotFoundError):
        service.run_task("owner-b", task.task_id)
    with pytest.raises(TaskNotFoundError):
        service.pause_task("owner-b", task.task_id)
    with pytest.raises(TaskNotFoundError):
        service.cancel_task("owner-b", task.task_id)
    assert service.list_tasks("owner-b") == []
    assert service.get_task_detail("owner-a", task.task_id).task.status == "pending"


def test_list_tasks_is_newest_first_and_bounded(service) -> None:
    created = [service.create_task("owner-a", f"Goal {number}")[0] for number in range(4)]

    summaries = service.list_tasks("owner-a", limit=2)

    assert [summary.task.task_id for summary in summaries] == [
        created[3].task_id,
        created[2].task_id,
    ]
    assert summaries[0].plan is not None
    assert summaries[0].plan.total_phases == 3
    assert summaries[0].plan.phase_counts == {"pending": 3}


def test_list_tasks_limit_cannot_exceed_page_size(service) -> None:
    service.page_size = 2
    for number in range(3):
        service.create_task("owner-a", f"Goal {number}")

    assert len(service.list_tasks("owner-a", limit=100)) == 2


def test_create_task_records_context_and_defaults(service, store, reasoning, make_plan) -> None:
    reasoning.plans.append(make_plan("Look", "Write", title="Solar report"))

    task, plan = service.create_task(
        "owner-a", "Write about solar", capability="coding", priority="high"
    )

    assert task.title == "Solar report"
    assert task.capability == "coding"
    assert task.priority == "high"
    assert task.status == "pending"
    assert task.max_retries == 3
    assert task.context["original_input"] == "Write about solar"
    assert task.context["analysis"]["title"] == "Solar report"
    assert plan.status == "draft"
    assert plan.total_phases == 2
    assert [phase.index for phase in plan.phases] == [0, 1]

    logs = store.list_logs(task.task_id)
    assert len(logs) == 1
    assert logs[0].action_type == "task_created"
    assert logs[0].phase_index == 0


def test_planner_service_errors_abort_creation(service, reasoning) -> None:
    reasoning.plans.append(RateLimitedError("Rate limited. Please try again later."))

    with pytest.raises(RateLimitedError):
        service.create_task("owner-a", "Anything")

    assert service.list_tasks("owner-a") == []


def test_pause_and_cancel_from_pending(service, store) -> None:
    task, _ = service.create_task("owner-a", "Pausable")

    paused = service.pause_task("owner-a", task.task_id)
    assert paused.status == "paused"

    cancelled = service.cancel_task("owner-a", task.task_id)
    assert cancelled.status == "cancelled"

    changes = [
        (entry.input_data["from"], entry.output_data["to"])
        for entry in store.list_logs(task.task_id)
        if entry.action_type == "status_change"
    ]
    assert changes == [("pending", "paused"), ("paused", "cancelled")]


def test_terminal_tasks_reject_status_requests(service) -> None:
    task, _ = service.create_task("owner-a", "Finish me")
    service.run_task("owner-a", task.task_id)

    with pytest.raises(TaskStateError):
        service.pause_task("owner-a", task.task_id)
    with pytest.raises(TaskStateError):
        service.cancel_task("owner-a", task.task_id)


def test_resume_requires_paused_task(service) -> None:
    task, _ = service.create_task("owner-a", "Not paused")

    with pytest.raises(TaskStateError):
        service.resume_task("owner-a", task.task_id)


def test_task_detail_includes_plan_and_logs(service) -> None:
    task, _ = service.create_task("owner-a", "Detail goal")
    service.run_task("owner-a", task.task_id)

    detail = service.get_task_detail("owner-a", task.task_id)

    assert detail.task.status == "completed"
    assert len(detail.plans) == 1
    assert detail.plans[0].status == "completed"
    assert [entry.action_type for entry in detail.logs].count("phase_execution") == 3
