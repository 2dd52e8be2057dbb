"""In-process event sink for workflow lifecycle events.

Subscribers (UI bridges, loggers, tests) register a callable and receive
every event synchronously. The orchestrator never waits for an
acknowledgment, and a failing subscriber never affects the run.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from .models import EventType, WorkflowEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[WorkflowEvent], None]


class EventBus:
    """Fan-out publisher with a bounded history of recent events."""

    def __init__(self, *, history_size: int = 200) -> None:
        self._subscribers: dict[str, EventHandler] = {}
        self._history: deque[WorkflowEvent] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, handler: EventHandler) -> str:
        subscription_id = uuid.uuid4().hex[:12]
        with self._lock:
            self._subscribers[subscription_id] = handler
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> None:
        with self._lock:
            self._subscribers.pop(subscription_id, None)

    def emit(
        self,
        event_type: EventType,
        *,
        workflow_id: str,
        task_id: str | None = None,
        worker_id: str | None = None,
        **data: Any,
    ) -> WorkflowEvent:
        event = WorkflowEvent(
            type=event_type,
            workflow_id=workflow_id,
            task_id=task_id,
            worker_id=worker_id,
            data=data,
            emitted_at=datetime.now(tz=UTC),
        )
        logger.info(
            "workflow_event type=%s workflow_id=%s task_id=%s worker_id=%s",
            event_type,
            workflow_id,
            task_id,
            worker_id,
        )
        with self._lock:
            self._history.append(event)
            handlers = list(self._subscribers.values())
        for handler in handlers:
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                logger.exception("Event handler failed for %s", event_type)
        return event

    def recent(self, *, workflow_id: str | None = None, limit: int | None = None) -> list[WorkflowEvent]:
        """Most recent events, oldest first, optionally for one workflow."""
        with self._lock:
            events = list(self._history)
        if workflow_id is not None:
            events = [event for event in events if event.workflow_id == workflow_id]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events
