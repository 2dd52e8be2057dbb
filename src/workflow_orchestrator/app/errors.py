"""Shared error types for the workflow orchestrator."""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base exception for orchestrator errors.

    Use this for user-facing errors that should have actionable messages.
    """


class NoWorkersError(OrchestratorError):
    """Raised when a workflow is requested but the worker roster is empty."""

    def __init__(self, message: str = "No workers are available. Register a worker first.") -> None:
        super().__init__(message)


class PlanningError(OrchestratorError):
    """Raised when the planner output fails structural validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("Task plan validation failed: " + "; ".join(self.errors))


class WorkflowNotFoundError(OrchestratorError):
    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} does not exist")


class TaskNotFoundError(OrchestratorError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} does not exist")


class InvalidStateError(OrchestratorError):
    """Raised when an operation is not legal for the current workflow/task status."""


class LLMError(RuntimeError):
    """Text-completion request failed after all retries."""


class WorkerExecutionError(RuntimeError):
    """A worker could not fulfil a task description."""
