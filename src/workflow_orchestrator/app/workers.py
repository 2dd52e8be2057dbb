"""Worker roster and task execution.

A worker is a configured persona (name, role, extra instructions) backed by
the shared completion client. The orchestrator treats execution as opaque:
hand over a task description, get text back or an exception.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol

from .errors import WorkerExecutionError
from .llm import CompletionClient
from .models import WorkerDescriptor

if TYPE_CHECKING:
    from .settings import WorkerConfig

logger = logging.getLogger(__name__)


class WorkerPool(Protocol):
    def list_workers(self) -> list[WorkerDescriptor]: ...

    async def execute(self, worker_id: str, task_description: str) -> str: ...


class LLMWorkerPool:
    """Static roster whose workers fulfil tasks through one completion client."""

    def __init__(self, client: CompletionClient, workers: Sequence[WorkerConfig]) -> None:
        self.client = client
        self._workers = {worker.id: worker for worker in workers}
        # In-flight executions per worker; a worker is busy while this is > 0.
        self._in_flight: dict[str, int] = {worker_id: 0 for worker_id in self._workers}
        self._lock = threading.Lock()

    def list_workers(self) -> list[WorkerDescriptor]:
        with self._lock:
            return [
                WorkerDescriptor(
                    id=worker.id,
                    name=worker.name or worker.id,
                    role=worker.role,
                    status="busy" if self._in_flight[worker.id] > 0 else "idle",
                )
                for worker in self._workers.values()
            ]

    async def execute(self, worker_id: str, task_description: str) -> str:
        worker = self._workers.get(worker_id)
        if worker is None:
            raise WorkerExecutionError(f"Unknown worker: {worker_id}")

        self._mark(worker_id, +1)
        try:
            try:
                output = await asyncio.to_thread(
                    self.client.complete,
                    system_prompt=self._system_prompt(worker),
                    user_prompt=task_description,
                )
            except Exception as exc:
                raise WorkerExecutionError(f"Worker {worker_id} failed: {exc}") from exc
        finally:
            self._mark(worker_id, -1)

        if not output or not output.strip():
            raise WorkerExecutionError(f"Worker {worker_id} returned empty output")
        logger.info("worker event=executed worker_id=%s output_chars=%d", worker_id, len(output))
        return output.strip()

    def _mark(self, worker_id: str, delta: int) -> None:
        with self._lock:
            self._in_flight[worker_id] = max(0, self._in_flight[worker_id] + delta)

    @staticmethod
    def _system_prompt(worker: WorkerConfig) -> str:
        prompt = (
            f"You are {worker.name or worker.id}, a {worker.role} on a small team. "
            "Complete the task you are given and reply with the finished result only. "
            "Be concrete and self-contained."
        )
        if worker.instructions:
            prompt += f"\n\nAdditional instructions:\n{worker.instructions}"
        return prompt
