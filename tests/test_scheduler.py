from __future__ import annotations

from datetime import UTC, datetime

from workflow_orchestrator.app.models import TaskDependency, WorkerDescriptor, WorkflowTask
from workflow_orchestrator.app.scheduler import TaskScheduler


def _task(task_id: str, status: str = "pending") -> WorkflowTask:
    return WorkflowTask(
        id=task_id,
        workflow_id="wf",
        worker_id="w1",
        description=f"task {task_id}",
        status=status,
        created_at=datetime.now(tz=UTC),
    )


def _dep(task_id: str, depends_on: str) -> TaskDependency:
    return TaskDependency(id=f"{task_id}->{depends_on}", task_id=task_id, depends_on_task_id=depends_on)


def _worker(worker_id: str, role: str, status: str = "idle") -> WorkerDescriptor:
    return WorkerDescriptor(id=worker_id, name=worker_id, role=role, status=status)


def test_ready_tasks_require_every_dependency_completed() -> None:
    scheduler = TaskScheduler()
    tasks = [_task("a", "completed"), _task("b", "running"), _task("c"), _task("d"), _task("e")]
    deps = [_dep("c", "a"), _dep("d", "a"), _dep("d", "b")]

    ready_ids = {task.id for task in scheduler.get_ready_tasks(tasks, deps)}

    assert ready_ids == {"c", "e"}


def test_ready_tasks_never_include_non_pending() -> None:
    scheduler = TaskScheduler()
    tasks = [_task("a", "completed"), _task("b", "failed"), _task("c", "skipped")]

    assert scheduler.get_ready_tasks(tasks, []) == []


def test_dependency_on_unknown_task_is_never_satisfied() -> None:
    scheduler = TaskScheduler()
    tasks = [_task("a")]

    assert scheduler.get_ready_tasks(tasks, [_dep("a", "ghost")]) == []


def test_failed_dependency_keeps_dependent_out_of_ready_set() -> None:
    scheduler = TaskScheduler()
    tasks = [_task("a", "failed"), _task("b")]

    assert scheduler.get_ready_tasks(tasks, [_dep("b", "a")]) == []


def test_ready_tasks_do_not_mutate_inputs() -> None:
    scheduler = TaskScheduler()
    tasks = [_task("a")]
    deps = [_dep("a", "b")]
    snapshot = ([task.model_dump() for task in tasks], [dep.model_dump() for dep in deps])

    scheduler.get_ready_tasks(tasks, deps)

    assert ([task.model_dump() for task in tasks], [dep.model_dump() for dep in deps]) == snapshot


def test_assign_worker_prefers_idle_role_match() -> None:
    scheduler = TaskScheduler()
    workers = [_worker("w1", "writer"), _worker("w2", "developer", "busy"), _worker("w3", "developer")]

    assert scheduler.assign_worker("developer", workers) == "w3"


def test_assign_worker_falls_back_to_any_idle() -> None:
    scheduler = TaskScheduler()
    workers = [_worker("w1", "developer", "busy"), _worker("w2", "writer")]

    assert scheduler.assign_worker("analyst", workers) == "w2"


def test_assign_worker_uses_busy_role_match_when_nobody_is_idle() -> None:
    scheduler = TaskScheduler()
    workers = [_worker("w1", "writer", "busy"), _worker("w2", "developer", "offline")]

    assert scheduler.assign_worker("developer", workers) == "w2"


def test_assign_worker_falls_back_to_first_worker() -> None:
    scheduler = TaskScheduler()
    workers = [_worker("w1", "writer", "busy"), _worker("w2", "designer", "offline")]

    assert scheduler.assign_worker("developer", workers) == "w1"


def test_assign_worker_returns_none_for_empty_roster() -> None:
    assert TaskScheduler().assign_worker("developer", []) is None


def test_detect_cycle_finds_loop() -> None:
    scheduler = TaskScheduler()
    tasks = [_task("a"), _task("b"), _task("c")]

    assert scheduler.detect_cycle(tasks, [_dep("b", "a"), _dep("c", "b"), _dep("a", "c")]) is True
    assert scheduler.detect_cycle(tasks, [_dep("b", "a"), _dep("c", "b")]) is False


def test_dangling_dependency_reads_as_cycle() -> None:
    scheduler = TaskScheduler()
    tasks = [_task("a"), _task("b")]

    assert scheduler.detect_cycle(tasks, [_dep("b", "ghost")]) is True


def test_edge_from_unknown_task_is_ignored() -> None:
    scheduler = TaskScheduler()
    tasks = [_task("a")]

    assert scheduler.detect_cycle(tasks, [_dep("ghost", "a")]) is False


def test_topological_order_respects_dependencies() -> None:
    scheduler = TaskScheduler()
    tasks = [_task("c"), _task("b"), _task("a")]
    deps = [_dep("c", "b"), _dep("b", "a")]

    assert scheduler.get_topological_order(tasks, deps) == ["a", "b", "c"]


def test_topological_order_is_partial_for_cycle() -> None:
    scheduler = TaskScheduler()
    tasks = [_task("a"), _task("b"), _task("c")]
    deps = [_dep("b", "c"), _dep("c", "b")]

    assert scheduler.get_topological_order(tasks, deps) == ["a"]


def test_blocked_tasks_propagate_through_chain() -> None:
    scheduler = TaskScheduler()
    tasks = [_task("a", "failed"), _task("b"), _task("c"), _task("d")]
    deps = [_dep("b", "a"), _dep("c", "b")]

    blocked_ids = {task.id for task in scheduler.blocked_tasks(tasks, deps)}

    assert blocked_ids == {"b", "c"}
