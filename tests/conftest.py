from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from workflow_orchestrator.app.events import EventBus
from workflow_orchestrator.app.models import WorkerDescriptor
from workflow_orchestrator.app.orchestrator import Orchestrator, OrchestratorConfig
from workflow_orchestrator.app.planner import TaskPlanner
from workflow_orchestrator.app.quality_gate import QualityGate
from workflow_orchestrator.app.settings import Settings
from workflow_orchestrator.app.storage import InMemoryWorkflowStorage


def plan_json(*tasks: dict[str, Any], title: str = "T") -> str:
    return json.dumps({"title": title, "tasks": list(tasks)})


class FakeCompletionClient:
    """Routes prompts by their system-prompt persona; records every call."""

    def __init__(
        self,
        *,
        plan: str = "",
        verdict: str = '{"passed": true, "score": 90, "feedback": "good", "suggestions": []}',
        worker_output: str = "done",
    ) -> None:
        self.plan = plan
        self.verdict = verdict
        self.worker_output = worker_output
        self.calls: list[dict[str, str]] = []
        self.fail_with: Exception | None = None

    def complete(self, *, system_prompt: str, user_prompt: str) -> str:
        self.calls.append({"system_prompt": system_prompt, "user_prompt": user_prompt})
        if self.fail_with is not None:
            raise self.fail_with
        if "project manager" in system_prompt:
            return self.plan
        if "quality reviewer" in system_prompt:
            return self.verdict
        return self.worker_output

    def set_plan(self, *tasks: dict[str, Any], title: str = "T") -> None:
        self.plan = plan_json(*tasks, title=title)

    def calls_for(self, persona: str) -> list[dict[str, str]]:
        return [call for call in self.calls if persona in call["system_prompt"]]


class FakeWorkerPool:
    """Async worker double that tracks concurrency and can fail chosen tasks."""

    def __init__(
        self,
        workers: list[WorkerDescriptor] | None = None,
        *,
        delay_s: float = 0.01,
    ) -> None:
        self.workers = (
            workers if workers is not None else [WorkerDescriptor(id="w1", name="Ada", role="general")]
        )
        self.delay_s = delay_s
        self.fail_descriptions: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.running = 0
        self.max_running = 0
        # Optional hook awaited inside every execution (after the counters update).
        self.on_execute: Callable[[str], Any] | None = None

    def list_workers(self) -> list[WorkerDescriptor]:
        return [worker.model_copy() for worker in self.workers]

    async def execute(self, worker_id: str, task_description: str) -> str:
        self.calls.append((worker_id, task_description))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.on_execute is not None:
                result = self.on_execute(task_description)
                if asyncio.iscoroutine(result):
                    await result
            await asyncio.sleep(self.delay_s)
            if task_description in self.fail_descriptions:
                raise RuntimeError(f"boom: {task_description}")
            return f"result of {task_description}"
        finally:
            self.running -= 1


@pytest.fixture
def storage() -> InMemoryWorkflowStorage:
    return InMemoryWorkflowStorage()


@pytest.fixture
def fake_llm() -> FakeCompletionClient:
    return FakeCompletionClient(plan=plan_json({"description": "A"}))


@pytest.fixture
def worker_pool() -> FakeWorkerPool:
    return FakeWorkerPool()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def make_orchestrator(
    storage: InMemoryWorkflowStorage,
    fake_llm: FakeCompletionClient,
    worker_pool: FakeWorkerPool,
    events: EventBus,
) -> Callable[..., Orchestrator]:
    def factory(**config: Any) -> Orchestrator:
        config.setdefault("idle_poll_interval_s", 0.01)
        config.setdefault("workflow_timeout_s", 5.0)
        return Orchestrator(
            storage,
            worker_pool,
            TaskPlanner(client=fake_llm),
            QualityGate(client=fake_llm),
            events,
            config=OrchestratorConfig(**config),
        )

    return factory


@pytest.fixture
def app_settings() -> Settings:
    return Settings(
        database_url="",
        openai_api_key="",
        idle_poll_interval_s=0.01,
        workflow_timeout_s=5.0,
        workers=[],
    )


@pytest.fixture
def client(
    storage: InMemoryWorkflowStorage,
    fake_llm: FakeCompletionClient,
    worker_pool: FakeWorkerPool,
    app_settings: Settings,
) -> Iterator[TestClient]:
    from workflow_orchestrator.main import create_app

    app = create_app(
        storage=storage,
        workers=worker_pool,
        completion_client=fake_llm,
        settings_override=app_settings,
    )
    with TestClient(app) as test_client:
        yield test_client
