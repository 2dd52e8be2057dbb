"""Planning layer: turn a free-text request into a validated TaskPlan.

Terms:
- Plan: ordered list of PlannedTask objects plus a workflow title.
- dependsOn: indices into the same plan ("task 2 needs task 0").
- Fallback: when the model reply is not parseable JSON, the raw reply
  becomes a single-task plan instead of failing the request.

Model output is never trusted directly. After parsing, the plan is
normalized (missing fields get defaults) and validated (size bounds, index
ranges, no cycles) before anything is persisted.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any

from .errors import PlanningError
from .llm import CompletionClient, find_json_object, strip_code_fence
from .models import PlannedTask, TaskPlan, WorkerDescriptor

logger = logging.getLogger(__name__)

MAX_PLAN_TASKS = 8
FALLBACK_DESCRIPTION_CHARS = 500
DEFAULT_TITLE = "Workflow"

# Colours for the three-state DFS in _has_cycle.
_UNVISITED, _IN_STACK, _DONE = 0, 1, 2


class TaskPlanner:
    """Ask the completion client for a task plan, then parse and validate it."""

    def __init__(self, *, client: CompletionClient, max_tasks: int = MAX_PLAN_TASKS) -> None:
        self.client = client
        self.max_tasks = max_tasks

    def plan_tasks(self, request: str, workers: Sequence[WorkerDescriptor]) -> TaskPlan:
        system_prompt = self._system_prompt(workers)
        logger.info("planner event=request workers=%d request_chars=%d", len(workers), len(request))
        # Client errors propagate: a planning call that never returned is fatal.
        content = self.client.complete(system_prompt=system_prompt, user_prompt=request)

        plan = parse_plan_response(content)
        errors = validate_plan(plan, max_tasks=self.max_tasks)
        if errors:
            logger.warning("planner event=invalid_plan errors=%s", errors)
            raise PlanningError(errors)

        logger.info("planner event=planned title=%r tasks=%d", plan.title, len(plan.tasks))
        return plan

    def _system_prompt(self, workers: Sequence[WorkerDescriptor]) -> str:
        worker_lines = "\n".join(
            f"- {worker.name or worker.id} (role: {worker.role}, status: {worker.status})"
            for worker in workers
        )
        roles = sorted({worker.role for worker in workers})
        example_role = roles[0] if roles else "general"
        return (
            "You are a project manager. Break the user's request down into concrete tasks.\n\n"
            f"Available workers:\n{worker_lines}\n\n"
            f"Available roles: {', '.join(roles) or 'general'}\n\n"
            "Respond ONLY with JSON in exactly this shape (no other text):\n"
            "{\n"
            '  "title": "workflow title",\n'
            '  "tasks": [\n'
            "    {\n"
            '      "description": "concrete task description",\n'
            f'      "suggestedRole": "{example_role}",\n'
            '      "priority": "medium",\n'
            '      "dependsOn": [],\n'
            '      "estimatedComplexity": "moderate"\n'
            "    }\n"
            "  ]\n"
            "}\n\n"
            "Rules:\n"
            "1. Each task must be doable by a single worker.\n"
            "2. dependsOn lists the zero-based indices of tasks that must finish first.\n"
            "3. Tasks that can run in parallel should share the same dependency level.\n"
            f"4. Produce at least 1 and at most {self.max_tasks} tasks.\n"
            "5. suggestedRole must be one of the available roles.\n"
            "6. priority is one of low, medium, high, urgent; estimatedComplexity is one of "
            "simple, moderate, complex."
        )


def parse_plan_response(content: str) -> TaskPlan:
    """Parse a model reply into a TaskPlan, degrading to a single-task plan."""
    candidate = strip_code_fence(content)
    candidate = find_json_object(candidate) or candidate
    try:
        parsed = json.loads(candidate)
    except ValueError:
        parsed = None

    if not isinstance(parsed, dict):
        logger.warning("planner event=parse_fallback content_chars=%d", len(content))
        return TaskPlan(
            title=DEFAULT_TITLE,
            tasks=[PlannedTask(description=content[:FALLBACK_DESCRIPTION_CHARS])],
        )

    raw_tasks = parsed.get("tasks")
    tasks = [_normalize_task(raw) for raw in raw_tasks] if isinstance(raw_tasks, list) else []
    title = parsed.get("title")
    return TaskPlan(
        title=title.strip() if isinstance(title, str) and title.strip() else DEFAULT_TITLE,
        tasks=tasks,
    )


def validate_plan(plan: TaskPlan, *, max_tasks: int = MAX_PLAN_TASKS) -> list[str]:
    """Return every structural problem with the plan; empty list means valid."""
    errors: list[str] = []
    count = len(plan.tasks)
    if count == 0:
        errors.append("plan has no tasks")
    if count > max_tasks:
        errors.append(f"plan has {count} tasks (maximum is {max_tasks})")

    for index, task in enumerate(plan.tasks):
        for dep in task.depends_on:
            if dep < 0 or dep >= count or dep == index:
                errors.append(f"task {index} has invalid dependency index {dep}")

    if _has_cycle(plan.tasks):
        errors.append("plan contains a circular dependency")
    return errors


def _normalize_task(raw: Any) -> PlannedTask:
    if isinstance(raw, str):
        return PlannedTask(description=raw)
    if not isinstance(raw, dict):
        return PlannedTask()
    # Aliases and defaults for malformed fields live on the model.
    return PlannedTask.model_validate(raw)


def _has_cycle(tasks: Sequence[PlannedTask]) -> bool:
    """Depth-first search with three-colour marking over plan indices.

    Out-of-range indices are ignored here; validate_plan reports them.
    """
    count = len(tasks)
    colour = [_UNVISITED] * count

    def visit(node: int) -> bool:
        colour[node] = _IN_STACK
        for dep in tasks[node].depends_on:
            if not 0 <= dep < count:
                continue
            if colour[dep] == _IN_STACK:
                return True
            if colour[dep] == _UNVISITED and visit(dep):
                return True
        colour[node] = _DONE
        return False

    return any(colour[index] == _UNVISITED and visit(index) for index in range(count))
