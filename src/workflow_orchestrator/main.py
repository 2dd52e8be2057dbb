"""FastAPI application wiring for the workflow orchestrator.

Terms used in this file:
- Application factory: create_app builds a fresh, fully wired app. Tests
  pass in-memory collaborators through its keyword overrides.
- app.state: shared runtime objects (orchestrator, event bus, roster).
- Lifespan: startup/shutdown hook; shutdown asks active workflow loops to
  stop and waits for them.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse

from .app.errors import (
    InvalidStateError,
    LLMError,
    NoWorkersError,
    OrchestratorError,
    PlanningError,
    TaskNotFoundError,
    WorkflowNotFoundError,
)
from .app.events import EventBus
from .app.llm import CompletionClient, build_completion_client
from .app.models import (
    CreateWorkflowRequest,
    CreateWorkflowResponse,
    MessageResponse,
    WorkerDescriptor,
    Workflow,
    WorkflowEvent,
    WorkflowStatusView,
    WorkflowTask,
)
from .app.orchestrator import Orchestrator
from .app.planner import TaskPlanner
from .app.quality_gate import QualityGate
from .app.settings import Settings, get_settings
from .app.storage import InMemoryWorkflowStorage, PostgresWorkflowStorage, WorkflowStorage
from .app.workers import LLMWorkerPool, WorkerPool

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_S = 10.0

_STATUS_BY_ERROR: Sequence[tuple[type[OrchestratorError], int]] = (
    (WorkflowNotFoundError, 404),
    (TaskNotFoundError, 404),
    (InvalidStateError, 409),
    (NoWorkersError, 409),
    (PlanningError, 422),
)


def create_app(
    *,
    storage: WorkflowStorage | None = None,
    workers: WorkerPool | None = None,
    completion_client: CompletionClient | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    """Application factory. Every collaborator can be overridden for tests."""
    settings = settings_override or get_settings()

    client = completion_client or build_completion_client(settings)
    if client is None:
        raise RuntimeError(
            "No completion client is configured. "
            "Set OPENAI_API_KEY and WORKFLOW_ORCHESTRATOR_LLM_PROVIDER=openai."
        )

    workflow_storage = storage or _build_storage(settings)
    worker_pool = workers or LLMWorkerPool(client, settings.workers)
    events = EventBus(history_size=settings.event_history_size)
    orchestrator = Orchestrator(
        workflow_storage,
        worker_pool,
        TaskPlanner(client=client, max_tasks=settings.max_plan_tasks),
        QualityGate(client=client),
        events,
        config=settings.to_orchestrator_config(),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "app event=startup workers=%d max_concurrent_tasks=%d",
            len(worker_pool.list_workers()),
            settings.max_concurrent_tasks,
        )
        yield
        await orchestrator.shutdown(timeout_s=SHUTDOWN_TIMEOUT_S)

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    # Shared objects live in app.state so route handlers and tests can reach them.
    app.state.settings = settings
    app.state.storage = workflow_storage
    app.state.workers = worker_pool
    app.state.events = events
    app.state.orchestrator = orchestrator

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
        status_code = next(
            (code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)),
            400,
        )
        content: dict[str, Any] = {"detail": str(exc)}
        if isinstance(exc, PlanningError):
            content["errors"] = exc.errors
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(LLMError)
    async def llm_error_handler(request: Request, exc: LLMError) -> JSONResponse:
        logger.warning("app event=llm_error path=%s error=%s", request.url.path, exc)
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    # Multiple health endpoints map to the same function for compatibility with
    # different probes/load balancers.
    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/workers", response_model=list[WorkerDescriptor])
    def list_workers() -> list[WorkerDescriptor]:
        return worker_pool.list_workers()

    @app.post("/workflows", response_model=CreateWorkflowResponse, status_code=201)
    async def create_workflow(payload: CreateWorkflowRequest) -> CreateWorkflowResponse:
        workflow = await orchestrator.start_workflow(payload.request, created_by=payload.created_by)
        return CreateWorkflowResponse(workflow_id=workflow.id, status=workflow.status)

    @app.get("/workflows", response_model=list[Workflow])
    async def list_workflows() -> list[Workflow]:
        return await orchestrator.list_workflows()

    @app.get("/workflows/{workflow_id}", response_model=WorkflowStatusView)
    async def get_workflow(workflow_id: str) -> WorkflowStatusView:
        return await orchestrator.get_workflow_status(workflow_id)

    @app.post("/workflows/{workflow_id}/cancel", response_model=MessageResponse)
    async def cancel_workflow(workflow_id: str) -> MessageResponse:
        signalled = await orchestrator.cancel_workflow(workflow_id)
        if signalled:
            return MessageResponse(message="Cancellation requested")
        return MessageResponse(message="Workflow cancelled")

    @app.post("/workflows/{workflow_id}/retry", response_model=MessageResponse)
    async def retry_workflow(workflow_id: str) -> MessageResponse:
        await orchestrator.retry_workflow(workflow_id)
        return MessageResponse(message="Workflow retry started")

    @app.post("/workflows/{workflow_id}/tasks/{task_id}/retry", response_model=WorkflowTask)
    async def retry_task(workflow_id: str, task_id: str) -> WorkflowTask:
        return await orchestrator.retry_task(workflow_id, task_id)

    @app.delete("/workflows/{workflow_id}", status_code=204)
    async def delete_workflow(workflow_id: str) -> Response:
        await orchestrator.delete_workflow(workflow_id)
        return Response(status_code=204)

    @app.get("/events", response_model=list[WorkflowEvent])
    def recent_events(
        workflow_id: str | None = None,
        limit: int | None = Query(default=None, ge=1),
    ) -> list[WorkflowEvent]:
        return events.recent(workflow_id=workflow_id, limit=limit)

    return app


def _build_storage(settings: Settings) -> WorkflowStorage:
    database_url = settings.resolved_database_url()
    if not database_url:
        logger.warning("app event=storage_fallback backend=memory reason=no_database_url")
        return InMemoryWorkflowStorage()
    return PostgresWorkflowStorage(database_url)


def __getattr__(name: str) -> Any:
    # Module-level app for `uvicorn workflow_orchestrator.main:app`, built on first
    # access so importing this module never needs credentials or a database.
    if name == "app":
        application = create_app()
        globals()["app"] = application
        return application
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
