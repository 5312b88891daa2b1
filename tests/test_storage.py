from __future__ import annotations

from task_engine.app.models import Phase, Plan, Task


def _seed(store) -> tuple[Task, Plan]:
    task = Task(owner_id="owner-a", title="Seeded", goal="Seeded goal")
    plan = Plan(
        task_id=task.task_id,
        owner_id="owner-a",
        phases=[Phase(index=0, name="Only")],
        total_phases=1,
    )
    store.create_task(task, plan)
    return task, plan


def test_conditional_update_skips_task_and_plan_on_status_mismatch(store) -> None:
    task, plan = _seed(store)
    store.set_status(
        task.task_id,
        owner_id="owner-a",
        status="cancelled",
        allowed_from=frozenset({"pending"}),
    )
    plan.status = "completed"

    updated = store.update_task(
        task.task_id,
        status="completed",
        plan=plan,
        allowed_from=frozenset({"executing", "paused"}),
    )

    assert updated is None
    assert store.get_task_status(task.task_id) == "cancelled"
    assert store.get_plan(task.task_id, owner_id="owner-a").status == "draft"


def test_conditional_update_applies_on_status_match(store) -> None:
    task, _ = _seed(store)

    updated = store.update_task(
        task.task_id,
        status="executing",
        allowed_from=frozenset({"pending"}),
    )

    assert updated is not None
    assert updated.status == "executing"


def test_owner_mismatch_reads_as_missing(store) -> None:
    task, _ = _seed(store)

    assert store.get_task(task.task_id, owner_id="owner-b") is None
    assert store.get_plan(task.task_id, owner_id="owner-b") is None
    assert store.list_tasks("owner-b", limit=10) == []
