"""Workflow lifecycle: plan, persist the task graph, run the scheduling loop, finalize.

Terms:
- Tick: one pass of the scheduling loop (check cancellation, reload the
  graph, dispatch one bounded batch of ready tasks).
- Run token: an asyncio.Event registered per active loop; setting it asks
  the loop to stop at its next tick boundary.
- Detached run: a loop started with asyncio.create_task whose caller does
  not await it (HTTP intake, retry).

Storage, planner, and quality-gate calls are synchronous and run in worker
threads via asyncio.to_thread. Worker execution is natively async.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TypeVar

from .errors import (
    InvalidStateError,
    NoWorkersError,
    TaskNotFoundError,
    WorkflowNotFoundError,
)
from .events import EventBus
from .models import (
    TERMINAL_TASK_STATUSES,
    QualityCheckResult,
    TaskOutcome,
    WorkerDescriptor,
    Workflow,
    WorkflowProgress,
    WorkflowResult,
    WorkflowStatus,
    WorkflowStatusView,
    WorkflowTask,
)
from .planner import TaskPlanner
from .quality_gate import QualityGate
from .scheduler import TaskScheduler
from .storage import WorkflowStorage
from .workers import WorkerPool

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_WORKFLOW_STATUSES: frozenset[str] = frozenset({"failed", "incomplete"})
CANCELLABLE_WORKFLOW_STATUSES: frozenset[str] = frozenset({"pending", "running"})


@dataclass(frozen=True)
class OrchestratorConfig:
    max_concurrent_tasks: int = 3
    workflow_timeout_s: float = 300.0
    idle_poll_interval_s: float = 1.0
    enable_quality_gate: bool = True


class RunRegistry:
    """Active workflow id -> run token. Owned by one Orchestrator instance."""

    def __init__(self) -> None:
        self._tokens: dict[str, asyncio.Event] = {}
        self._lock = threading.Lock()

    def register(self, workflow_id: str) -> asyncio.Event:
        token = asyncio.Event()
        with self._lock:
            self._tokens[workflow_id] = token
        return token

    def deregister(self, workflow_id: str, token: asyncio.Event) -> None:
        # A newer run (retry) may already own the slot; leave it alone.
        with self._lock:
            if self._tokens.get(workflow_id) is token:
                del self._tokens[workflow_id]

    def is_active(self, workflow_id: str) -> bool:
        with self._lock:
            return workflow_id in self._tokens

    def signal(self, workflow_id: str) -> bool:
        with self._lock:
            token = self._tokens.get(workflow_id)
        if token is None:
            return False
        token.set()
        return True

    def signal_all(self) -> int:
        with self._lock:
            tokens = list(self._tokens.values())
        for token in tokens:
            token.set()
        return len(tokens)


class Orchestrator:
    """Owns the workflow state machine and the per-workflow scheduling loop."""

    def __init__(
        self,
        storage: WorkflowStorage,
        workers: WorkerPool,
        planner: TaskPlanner,
        quality_gate: QualityGate | None,
        events: EventBus,
        *,
        config: OrchestratorConfig | None = None,
        registry: RunRegistry | None = None,
        scheduler: TaskScheduler | None = None,
    ) -> None:
        self.storage = storage
        self.workers = workers
        self.planner = planner
        self.quality_gate = quality_gate
        self.events = events
        self.config = config or OrchestratorConfig()
        self.registry = registry or RunRegistry()
        self.scheduler = scheduler or TaskScheduler()
        # Strong references to detached runs so they are not garbage-collected mid-flight.
        self._background: set[asyncio.Task[WorkflowResult]] = set()

    async def create_workflow(self, request: str, created_by: str | None = None) -> Workflow:
        """Plan the request and persist the workflow, its tasks, and their dependencies."""
        roster = self.workers.list_workers()
        if not roster:
            raise NoWorkersError()

        # Planning errors propagate before anything is written.
        plan = await _io(self.planner.plan_tasks, request, roster)

        workflow = await _io(
            self.storage.create_workflow,
            title=plan.title,
            description=request,
            status="running",
            created_by=created_by,
        )
        created: list[WorkflowTask] = []
        for index, planned in enumerate(plan.tasks):
            worker_id = self.scheduler.assign_worker(planned.suggested_role, roster)
            task = await _io(
                self.storage.create_task,
                workflow_id=workflow.id,
                worker_id=worker_id,
                description=planned.description,
                priority=planned.priority,
                suggested_role=planned.suggested_role,
                order_index=index,
            )
            created.append(task)

        self.events.emit(
            "workflow_created",
            workflow_id=workflow.id,
            title=workflow.title,
            task_count=len(created),
        )

        for index, planned in enumerate(plan.tasks):
            for dep_index in planned.depends_on:
                await _io(
                    self.storage.create_dependency,
                    task_id=created[index].id,
                    depends_on_task_id=created[dep_index].id,
                )

        logger.info(
            "workflow_run event=created workflow_id=%s tasks=%d unassigned=%d",
            workflow.id,
            len(created),
            sum(1 for task in created if task.worker_id is None),
        )
        return workflow

    async def execute_workflow(self, request: str, created_by: str | None = None) -> WorkflowResult:
        """Create a workflow and drive it to a terminal state."""
        workflow = await self.create_workflow(request, created_by)
        token = self.registry.register(workflow.id)
        return await self._run_registered(workflow.id, token)

    async def start_workflow(self, request: str, created_by: str | None = None) -> Workflow:
        """Create a workflow and run its loop in the background."""
        workflow = await self.create_workflow(request, created_by)
        self._spawn(workflow.id)
        return workflow

    async def execute_task(
        self,
        task: WorkflowTask,
        roster: Sequence[WorkerDescriptor],
    ) -> WorkflowTask:
        """Run one task on its assigned worker. Worker failures are recorded, never raised."""
        if task.worker_id is None:
            logger.warning(
                "workflow_run event=task_skipped workflow_id=%s task_id=%s reason=unassigned",
                task.workflow_id,
                task.id,
            )
            return await _io(self.storage.update_task, task.id, status="skipped", completed_at=_now())

        await _io(self.storage.update_task, task.id, status="running")
        worker = next((item for item in roster if item.id == task.worker_id), None)
        self.events.emit(
            "workflow_task_started",
            workflow_id=task.workflow_id,
            task_id=task.id,
            worker_id=task.worker_id,
            description=task.description,
            worker_role=worker.role if worker else None,
        )

        try:
            output = await self.workers.execute(task.worker_id, task.description)
        except Exception as exc:
            logger.warning(
                "workflow_run event=task_failed workflow_id=%s task_id=%s worker_id=%s error=%s",
                task.workflow_id,
                task.id,
                task.worker_id,
                exc,
            )
            updated = await _io(
                self.storage.update_task,
                task.id,
                status="failed",
                result=f"Error: {exc}",
                completed_at=_now(),
            )
            self.events.emit(
                "workflow_task_failed",
                workflow_id=task.workflow_id,
                task_id=task.id,
                worker_id=task.worker_id,
                error=str(exc),
            )
            return updated

        updated = await _io(
            self.storage.update_task,
            task.id,
            status="completed",
            result=output,
            completed_at=_now(),
        )
        self.events.emit(
            "workflow_task_completed",
            workflow_id=task.workflow_id,
            task_id=task.id,
            worker_id=task.worker_id,
            result_chars=len(output),
        )
        return updated

    async def retry_workflow(self, workflow_id: str) -> Workflow:
        """Reset failed tasks to pending and restart the loop in the background."""
        workflow = await self._require_workflow(workflow_id)
        if workflow.status not in RETRYABLE_WORKFLOW_STATUSES:
            raise InvalidStateError(
                f"Workflow {workflow_id} is {workflow.status}; only failed or incomplete "
                "workflows can be retried"
            )
        if self.registry.is_active(workflow_id):
            raise InvalidStateError(f"Workflow {workflow_id} already has an active run")

        # Claim the slot before any await so a concurrent retry sees it as active.
        token = self.registry.register(workflow_id)
        try:
            tasks = await _io(self.storage.list_tasks, workflow_id)
            reset = 0
            for task in tasks:
                if task.status != "failed":
                    continue
                await _io(self.storage.update_task, task.id, status="pending", result=None, completed_at=None)
                reset += 1

            workflow = await _io(self.storage.update_workflow, workflow_id, status="running", completed_at=None)
        except BaseException:
            self.registry.deregister(workflow_id, token)
            raise
        logger.info("workflow_run event=retry workflow_id=%s reset_tasks=%d", workflow_id, reset)
        self._spawn(workflow_id, token)
        return workflow

    async def retry_task(self, workflow_id: str, task_id: str) -> WorkflowTask:
        """Force one failed task to run again, then re-derive the workflow status.

        While a scheduling loop owns the workflow, the loop's finalization
        decides the workflow status and this call only updates the task.
        """
        await self._require_workflow(workflow_id)
        task = await _io(self.storage.get_task, task_id)
        if task is None or task.workflow_id != workflow_id:
            raise TaskNotFoundError(task_id)
        if task.status != "failed":
            raise InvalidStateError(f"Task {task_id} is {task.status}; only failed tasks can be retried")

        task = await _io(self.storage.update_task, task_id, status="pending", result=None, completed_at=None)
        updated = await self.execute_task(task, self.workers.list_workers())

        if not self.registry.is_active(workflow_id):
            tasks = await _io(self.storage.list_tasks, workflow_id)
            if all(item.status == "completed" for item in tasks):
                await _io(self.storage.update_workflow, workflow_id, status="completed", completed_at=_now())
            elif any(item.status == "failed" for item in tasks):
                await _io(self.storage.update_workflow, workflow_id, status="failed")
        logger.info(
            "workflow_run event=task_retried workflow_id=%s task_id=%s status=%s",
            workflow_id,
            task_id,
            updated.status,
        )
        return updated

    async def cancel_workflow(self, workflow_id: str) -> bool:
        """Request cancellation.

        Returns True when a running loop was signalled (it stops at its next
        tick), False when a pending or running workflow with no loop (for
        example after a restart) was marked cancelled directly.
        """
        workflow = await self._require_workflow(workflow_id)
        if self.registry.signal(workflow_id):
            logger.info("workflow_run event=cancel_requested workflow_id=%s", workflow_id)
            return True

        if workflow.status not in CANCELLABLE_WORKFLOW_STATUSES:
            raise InvalidStateError(
                f"Workflow {workflow_id} is {workflow.status}; only pending or running "
                "workflows can be cancelled"
            )
        await _io(self.storage.update_workflow, workflow_id, status="cancelled", completed_at=_now())
        self.events.emit("workflow_cancelled", workflow_id=workflow_id, active=False)
        return False

    async def get_workflow_status(self, workflow_id: str) -> WorkflowStatusView:
        workflow = await self._require_workflow(workflow_id)
        tasks = await _io(self.storage.list_tasks, workflow_id)
        dependencies = await _io(self.storage.list_dependencies, [task.id for task in tasks])
        return WorkflowStatusView(
            workflow=workflow,
            tasks=tasks,
            dependencies=dependencies,
            progress=_progress(tasks),
        )

    async def list_workflows(self) -> list[Workflow]:
        return await _io(self.storage.list_workflows)

    async def delete_workflow(self, workflow_id: str) -> None:
        await self._require_workflow(workflow_id)
        if self.registry.is_active(workflow_id):
            raise InvalidStateError(f"Workflow {workflow_id} is running; cancel it before deleting")
        await _io(self.storage.delete_workflow, workflow_id)
        logger.info("workflow_run event=deleted workflow_id=%s", workflow_id)

    def is_active(self, workflow_id: str) -> bool:
        return self.registry.is_active(workflow_id)

    async def shutdown(self, timeout_s: float | None = None) -> None:
        """Signal every active loop and wait for detached runs to stop."""
        signalled = self.registry.signal_all()
        pending = list(self._background)
        logger.info("workflow_run event=shutdown signalled=%d detached=%d", signalled, len(pending))
        if pending:
            await asyncio.wait(pending, timeout=timeout_s)

    def _spawn(self, workflow_id: str, token: asyncio.Event | None = None) -> None:
        # Register before scheduling so a cancel right after start finds the token.
        if token is None:
            token = self.registry.register(workflow_id)
        run = asyncio.create_task(
            self._run_registered(workflow_id, token),
            name=f"workflow-run-{workflow_id}",
        )
        self._background.add(run)
        run.add_done_callback(self._on_detached_done)

    def _on_detached_done(self, run: asyncio.Task[WorkflowResult]) -> None:
        self._background.discard(run)
        if run.cancelled():
            logger.warning("workflow_run event=detached_cancelled name=%s", run.get_name())
            return
        exc = run.exception()
        if exc is not None:
            logger.error(
                "workflow_run event=detached_failed name=%s error=%s",
                run.get_name(),
                exc,
                exc_info=exc,
            )

    async def _run_registered(self, workflow_id: str, token: asyncio.Event) -> WorkflowResult:
        try:
            return await self._run_loop(workflow_id, token)
        finally:
            self.registry.deregister(workflow_id, token)

    async def _run_loop(self, workflow_id: str, token: asyncio.Event) -> WorkflowResult:
        workflow = await self._require_workflow(workflow_id)
        deadline = time.monotonic() + self.config.workflow_timeout_s
        self.events.emit("workflow_started", workflow_id=workflow_id)

        while time.monotonic() < deadline:
            if token.is_set():
                return await self._finish_cancelled(workflow)

            tasks = await _io(self.storage.list_tasks, workflow_id)
            dependencies = await _io(self.storage.list_dependencies, [task.id for task in tasks])
            if all(task.status in TERMINAL_TASK_STATUSES for task in tasks):
                break

            ready = self.scheduler.get_ready_tasks(tasks, dependencies)
            if not ready:
                if not any(task.status == "running" for task in tasks):
                    logger.warning(
                        "workflow_run event=stuck workflow_id=%s pending=%d blocked=%d",
                        workflow_id,
                        sum(1 for task in tasks if task.status == "pending"),
                        len(self.scheduler.blocked_tasks(tasks, dependencies)),
                    )
                    break
                await asyncio.sleep(self.config.idle_poll_interval_s)
                continue

            batch = ready[: self.config.max_concurrent_tasks]
            logger.info(
                "workflow_run event=tick workflow_id=%s ready=%d dispatched=%d",
                workflow_id,
                len(ready),
                len(batch),
            )
            roster = self.workers.list_workers()
            await asyncio.gather(*(self.execute_task(task, roster) for task in batch))
        else:
            logger.warning(
                "workflow_run event=timeout workflow_id=%s timeout_s=%s",
                workflow_id,
                self.config.workflow_timeout_s,
            )

        return await self._finalize(workflow)

    async def _finalize(self, workflow: Workflow) -> WorkflowResult:
        tasks = await _io(self.storage.list_tasks, workflow.id)
        all_completed = all(task.status == "completed" for task in tasks)
        has_failed = any(task.status == "failed" for task in tasks)
        status: WorkflowStatus
        if all_completed:
            status = "completed"
        elif has_failed:
            status = "failed"
        else:
            status = "incomplete"

        await _io(self.storage.update_workflow, workflow.id, status=status, completed_at=_now())

        quality_check: QualityCheckResult | None = None
        if self.config.enable_quality_gate and all_completed and self.quality_gate is not None:
            try:
                quality_check = await _io(
                    self.quality_gate.check_workflow_result,
                    workflow,
                    tasks,
                    workflow.description,
                )
            except Exception:
                logger.exception("workflow_run event=quality_gate_failed workflow_id=%s", workflow.id)

        done = sum(1 for task in tasks if task.status == "completed")
        if all_completed:
            summary = f'Workflow "{workflow.title}" completed ({len(tasks)} tasks succeeded)'
        else:
            summary = f'Workflow "{workflow.title}" partially completed ({done}/{len(tasks)} tasks completed)'

        if status == "completed":
            self.events.emit(
                "workflow_completed",
                workflow_id=workflow.id,
                summary=summary,
                quality_passed=quality_check.passed if quality_check else None,
            )
        else:
            self.events.emit("workflow_failed", workflow_id=workflow.id, summary=summary, status=status)

        logger.info(
            "workflow_run event=finalized workflow_id=%s status=%s completed=%d total=%d",
            workflow.id,
            status,
            done,
            len(tasks),
        )
        return WorkflowResult(
            workflow_id=workflow.id,
            status=status,
            tasks=[_outcome(task) for task in tasks],
            summary=summary,
            quality_check=quality_check,
        )

    async def _finish_cancelled(self, workflow: Workflow) -> WorkflowResult:
        await _io(self.storage.update_workflow, workflow.id, status="cancelled", completed_at=_now())
        self.events.emit("workflow_cancelled", workflow_id=workflow.id, active=True)
        tasks = await _io(self.storage.list_tasks, workflow.id)
        logger.info("workflow_run event=cancelled workflow_id=%s", workflow.id)
        return WorkflowResult(
            workflow_id=workflow.id,
            status="cancelled",
            tasks=[_outcome(task) for task in tasks],
            summary=f'Workflow "{workflow.title}" was cancelled',
        )

    async def _require_workflow(self, workflow_id: str) -> Workflow:
        workflow = await _io(self.storage.get_workflow, workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow


async def _io(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    return await asyncio.to_thread(func, *args, **kwargs)


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _outcome(task: WorkflowTask) -> TaskOutcome:
    return TaskOutcome(
        id=task.id,
        worker_id=task.worker_id,
        description=task.description,
        status=task.status,
        result=task.result,
    )


def _progress(tasks: Sequence[WorkflowTask]) -> WorkflowProgress:
    counts = {status: 0 for status in ("completed", "running", "failed", "pending", "skipped")}
    for task in tasks:
        counts[task.status] += 1
    return WorkflowProgress(total=len(tasks), **counts)
