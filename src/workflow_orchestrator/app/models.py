"""Pydantic models shared across API, planner, scheduler, orchestrator, and storage.

Terms used in this file:
- Workflow: one user request's execution unit.
- WorkflowTask: one decomposed unit of work, assigned to at most one worker.
- TaskDependency: a "must finish before" edge between two tasks.
- TaskPlan / PlannedTask: planner output before anything is persisted.
  Dependencies are plan-local indices until tasks get real ids.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, get_args

from pydantic import AliasChoices, BaseModel, Field, field_validator

# Workflow lifecycle states. "incomplete" marks a run that stopped (stuck or
# timed out) with unfinished work but no failed task.
WorkflowStatus = Literal["pending", "running", "completed", "failed", "cancelled", "incomplete"]
TaskStatus = Literal["pending", "running", "completed", "failed", "skipped"]
TaskPriority = Literal["low", "medium", "high", "urgent"]
TaskComplexity = Literal["simple", "moderate", "complex"]
WorkerStatus = Literal["idle", "busy", "offline"]

TERMINAL_TASK_STATUSES: frozenset[str] = frozenset({"completed", "failed", "skipped"})

EventType = Literal[
    "workflow_created",
    "workflow_started",
    "workflow_task_started",
    "workflow_task_completed",
    "workflow_task_failed",
    "workflow_cancelled",
    "workflow_completed",
    "workflow_failed",
]


class Workflow(BaseModel):
    """Persisted workflow record."""

    id: str
    title: str
    # Original request text.
    description: str
    status: WorkflowStatus = "pending"
    created_by: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class WorkflowTask(BaseModel):
    """Persisted task record. worker_id is None when no worker could be assigned."""

    id: str
    workflow_id: str
    worker_id: str | None = None
    description: str
    status: TaskStatus = "pending"
    result: str | None = None
    priority: TaskPriority = "medium"
    suggested_role: str = "general"
    # Position in the plan, for display.
    order_index: int = 0
    created_at: datetime
    completed_at: datetime | None = None


class TaskDependency(BaseModel):
    """Edge: task_id depends on depends_on_task_id."""

    id: str
    task_id: str
    depends_on_task_id: str


class PlannedTask(BaseModel):
    """One task as proposed by the planner.

    Model output arrives in camelCase or snake_case; unknown or malformed
    values fall back to the field defaults instead of failing validation.
    """

    description: str = ""
    suggested_role: str = Field(
        default="general",
        validation_alias=AliasChoices("suggestedRole", "suggested_role"),
    )
    priority: TaskPriority = "medium"
    # Indices into the same plan's task list.
    depends_on: list[int] = Field(
        default_factory=list,
        validation_alias=AliasChoices("dependsOn", "depends_on"),
    )
    estimated_complexity: TaskComplexity = Field(
        default="moderate",
        validation_alias=AliasChoices("estimatedComplexity", "estimated_complexity"),
    )

    @field_validator("description", mode="before")
    @classmethod
    def _text_or_empty(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""

    @field_validator("suggested_role", mode="before")
    @classmethod
    def _role_or_general(cls, value: Any) -> str:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return "general"

    @field_validator("priority", mode="before")
    @classmethod
    def _known_priority(cls, value: Any) -> str:
        return value if isinstance(value, str) and value in get_args(TaskPriority) else "medium"

    @field_validator("estimated_complexity", mode="before")
    @classmethod
    def _known_complexity(cls, value: Any) -> str:
        return value if isinstance(value, str) and value in get_args(TaskComplexity) else "moderate"

    @field_validator("depends_on", mode="before")
    @classmethod
    def _plan_indices(cls, value: Any) -> list[int]:
        if not isinstance(value, list):
            return []
        indices: list[int] = []
        for item in value:
            # bool is an int subclass; "true" is never a task index.
            if isinstance(item, bool):
                continue
            if isinstance(item, int):
                indices.append(item)
            elif isinstance(item, str) and item.strip().lstrip("-").isdigit():
                indices.append(int(item.strip()))
        return indices


class TaskPlan(BaseModel):
    """Planner output consumed by the orchestrator."""

    title: str
    tasks: list[PlannedTask] = Field(default_factory=list)


class QualityCheckResult(BaseModel):
    """Grader verdict. Not persisted; attached to the workflow result."""

    passed: bool = False
    score: int = Field(default=0, ge=0, le=100)
    feedback: str = ""
    suggestions: list[str] = Field(default_factory=list)

    @field_validator("passed", mode="before")
    @classmethod
    def _strict_pass(cls, value: Any) -> bool:
        # Only an explicit true passes; "false", 1, or "yes" do not.
        if isinstance(value, str):
            return value.strip().lower() == "true"
        return value is True

    @field_validator("score", mode="before")
    @classmethod
    def _clamp_score(cls, value: Any) -> int:
        if isinstance(value, bool):
            return 0
        try:
            score = float(value)
        except (TypeError, ValueError):
            return 0
        if score != score:  # NaN
            return 0
        return int(round(max(0.0, min(score, 100.0))))

    @field_validator("feedback", mode="before")
    @classmethod
    def _feedback_text(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""

    @field_validator("suggestions", mode="before")
    @classmethod
    def _suggestion_list(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(item) for item in value if item is not None]


class WorkerDescriptor(BaseModel):
    """Read-only view of one worker in the roster."""

    id: str
    name: str = ""
    role: str = "general"
    status: WorkerStatus = "idle"


class TaskOutcome(BaseModel):
    id: str
    worker_id: str | None
    description: str
    status: TaskStatus
    result: str | None = None


class WorkflowResult(BaseModel):
    """Terminal summary handed back to the caller of execute_workflow."""

    workflow_id: str
    status: WorkflowStatus
    tasks: list[TaskOutcome] = Field(default_factory=list)
    summary: str
    quality_check: QualityCheckResult | None = None


class WorkflowProgress(BaseModel):
    total: int = 0
    completed: int = 0
    running: int = 0
    failed: int = 0
    pending: int = 0
    skipped: int = 0


class WorkflowStatusView(BaseModel):
    """Read-only projection returned by get_workflow_status."""

    workflow: Workflow
    tasks: list[WorkflowTask] = Field(default_factory=list)
    dependencies: list[TaskDependency] = Field(default_factory=list)
    progress: WorkflowProgress


class WorkflowEvent(BaseModel):
    """Lifecycle event published to the event sink."""

    type: EventType
    workflow_id: str
    task_id: str | None = None
    worker_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime


class CreateWorkflowRequest(BaseModel):
    """Request body for POST /workflows."""

    # min_length enforces non-empty request text at the API boundary.
    request: str = Field(min_length=1)
    created_by: str | None = None


class CreateWorkflowResponse(BaseModel):
    workflow_id: str
    status: WorkflowStatus


class MessageResponse(BaseModel):
    message: str
