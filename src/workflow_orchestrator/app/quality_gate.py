from __future__ import annotations

import json
import logging
from collections.abc import Sequence

from .llm import CompletionClient, find_json_object
from .models import QualityCheckResult, Workflow, WorkflowTask

logger = logging.getLogger(__name__)

TASK_RESULT_PROMPT_CHARS = 3000
WORKFLOW_TASK_RESULT_PROMPT_CHARS = 200
PARSE_FAILURE_FEEDBACK = "evaluation parse failed (defaulting to pass)"

_VERDICT_SHAPE = (
    "Respond ONLY with JSON in exactly this shape:\n"
    "{\n"
    '  "passed": true,\n'
    '  "score": 0,\n'
    '  "feedback": "short assessment",\n'
    '  "suggestions": ["improvement 1", "improvement 2"]\n'
    "}\n"
    "score is an integer from 0 to 100."
)


class QualityGate:
    """Grade task or workflow output against the original request.

    Read-only: never touches persisted state. A grader reply that cannot be
    parsed yields a passing verdict so evaluator trouble never blocks a
    workflow that otherwise succeeded.
    """

    def __init__(self, *, client: CompletionClient) -> None:
        self.client = client

    def check_task_result(self, task: WorkflowTask, result: str) -> QualityCheckResult:
        system_prompt = (
            "You are a quality reviewer. Evaluate whether a task result fulfils the task.\n"
            + _VERDICT_SHAPE
        )
        user_prompt = (
            f"Task description: {task.description}\n\n"
            f"Task result:\n{result[:TASK_RESULT_PROMPT_CHARS]}\n\n"
            "Does this result satisfy the task description?"
        )
        content = self.client.complete(system_prompt=system_prompt, user_prompt=user_prompt)
        return parse_quality_result(content)

    def check_workflow_result(
        self,
        workflow: Workflow,
        tasks: Sequence[WorkflowTask],
        original_request: str,
    ) -> QualityCheckResult:
        task_summary = "\n".join(
            _task_line(position, task) for position, task in enumerate(tasks, start=1)
        )
        system_prompt = (
            "You are a quality reviewer. Evaluate the overall result of a multi-task workflow.\n"
            + _VERDICT_SHAPE
        )
        user_prompt = (
            f"Original request: {original_request}\n\n"
            f"Workflow: {workflow.title}\n\n"
            f"Task results:\n{task_summary}\n\n"
            "Does the combined result satisfy the original request?"
        )
        content = self.client.complete(system_prompt=system_prompt, user_prompt=user_prompt)
        verdict = parse_quality_result(content)
        logger.info(
            "quality_gate event=workflow_checked workflow_id=%s passed=%s score=%d",
            workflow.id,
            verdict.passed,
            verdict.score,
        )
        return verdict


def parse_quality_result(content: str) -> QualityCheckResult:
    """Parse a grader reply; fail open on anything unparseable."""
    candidate = find_json_object(content) or content.strip()
    try:
        parsed = json.loads(candidate)
    except ValueError:
        parsed = None
    if not isinstance(parsed, dict):
        logger.warning("quality_gate event=parse_fallback content_chars=%d", len(content))
        return QualityCheckResult(passed=True, score=70, feedback=PARSE_FAILURE_FEEDBACK)

    # Coercion (strict pass flag, score clamping) lives on the model.
    return QualityCheckResult.model_validate(parsed)


def _task_line(position: int, task: WorkflowTask) -> str:
    line = f"[{position}] {task.description} -> {task.status}"
    if task.result:
        line += f": {task.result[:WORKFLOW_TASK_RESULT_PROMPT_CHARS]}"
    return line
