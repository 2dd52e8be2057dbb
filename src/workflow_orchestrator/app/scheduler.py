"""Pure graph operations over workflow tasks and dependency edges.

Nothing in this module performs I/O or mutates its inputs. Every function is
total: malformed edges (ids that do not belong to the task list) never raise.
In readiness checks such an edge is simply never satisfied; in the cycle and
topological paths it keeps its task from ever reaching zero in-degree, so a
dangling dependency reads the same as a cycle.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Sequence

from .models import TaskDependency, WorkerDescriptor, WorkflowTask


class TaskScheduler:
    """Readiness, worker assignment, cycle detection, and topological order."""

    def get_ready_tasks(
        self,
        tasks: Sequence[WorkflowTask],
        dependencies: Iterable[TaskDependency],
    ) -> list[WorkflowTask]:
        """Return pending tasks whose every dependency target is completed.

        Order of the result is not meaningful; callers must not rely on it.
        """
        completed_ids = {task.id for task in tasks if task.status == "completed"}
        edges_by_task = _edges_by_task(dependencies)
        return [
            task
            for task in tasks
            if task.status == "pending"
            and all(dep_id in completed_ids for dep_id in edges_by_task.get(task.id, ()))
        ]

    def assign_worker(
        self,
        suggested_role: str,
        workers: Sequence[WorkerDescriptor],
    ) -> str | None:
        """Pick a worker id for a task. Greedy, first match wins.

        1) role match and idle, 2) any idle, 3) role match in any status,
        4) first worker in the roster, 5) None for an empty roster.
        """
        for worker in workers:
            if worker.role == suggested_role and worker.status == "idle":
                return worker.id
        for worker in workers:
            if worker.status == "idle":
                return worker.id
        for worker in workers:
            if worker.role == suggested_role:
                return worker.id
        if workers:
            return workers[0].id
        return None

    def detect_cycle(
        self,
        tasks: Sequence[WorkflowTask],
        dependencies: Iterable[TaskDependency],
    ) -> bool:
        """True iff Kahn's traversal cannot process every task."""
        return len(self._kahn_order(tasks, dependencies)) != len(_unique_ids(tasks))

    def get_topological_order(
        self,
        tasks: Sequence[WorkflowTask],
        dependencies: Iterable[TaskDependency],
    ) -> list[str]:
        """Kahn order of task ids; partial when a cycle exists.

        Use detect_cycle when a cycle-free guarantee is needed.
        """
        return self._kahn_order(tasks, dependencies)

    def blocked_tasks(
        self,
        tasks: Sequence[WorkflowTask],
        dependencies: Iterable[TaskDependency],
    ) -> list[WorkflowTask]:
        """Pending tasks that can never run because an upstream task failed or was skipped."""
        status_by_id = {task.id: task.status for task in tasks}
        edges_by_task = _edges_by_task(dependencies)
        dead = {task_id for task_id, status in status_by_id.items() if status in {"failed", "skipped"}}

        # Propagate "dead" forward until nothing changes. Graphs here are tiny.
        changed = True
        while changed:
            changed = False
            for task in tasks:
                if task.id in dead or task.status != "pending":
                    continue
                if any(dep_id in dead for dep_id in edges_by_task.get(task.id, ())):
                    dead.add(task.id)
                    changed = True

        return [task for task in tasks if task.status == "pending" and task.id in dead]

    @staticmethod
    def _kahn_order(
        tasks: Sequence[WorkflowTask],
        dependencies: Iterable[TaskDependency],
    ) -> list[str]:
        task_ids = _unique_ids(tasks)
        known = set(task_ids)
        in_degree: dict[str, int] = {task_id: 0 for task_id in task_ids}
        dependents: dict[str, list[str]] = {task_id: [] for task_id in task_ids}

        for dep in dependencies:
            if dep.task_id not in known:
                continue
            # An edge to an unknown task is counted but can never be released.
            in_degree[dep.task_id] += 1
            if dep.depends_on_task_id in known:
                dependents[dep.depends_on_task_id].append(dep.task_id)

        queue = deque(task_id for task_id in task_ids if in_degree[task_id] == 0)
        order: list[str] = []
        while queue:
            current = queue.popleft()
            order.append(current)
            for nxt in dependents[current]:
                in_degree[nxt] -= 1
                if in_degree[nxt] == 0:
                    queue.append(nxt)
        return order


def _edges_by_task(dependencies: Iterable[TaskDependency]) -> dict[str, list[str]]:
    edges: dict[str, list[str]] = {}
    for dep in dependencies:
        edges.setdefault(dep.task_id, []).append(dep.depends_on_task_id)
    return edges


def _unique_ids(tasks: Sequence[WorkflowTask]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for task in tasks:
        if task.id in seen:
            continue
        seen.add(task.id)
        ordered.append(task.id)
    return ordered
