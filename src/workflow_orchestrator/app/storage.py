"""Storage backends for workflows, workflow tasks, and task dependencies.

Terms:
- Migration: creating tables before normal reads/writes.
- UNSET: sentinel meaning "leave this field unchanged". It exists because
  None is a meaningful value for nullable columns (clearing a result or a
  completion timestamp on retry).
- Row factory: returns query rows as dict-like objects instead of tuples.

Both backends are thread-safe; the orchestrator calls them from worker
threads via asyncio.to_thread.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any, Protocol

from .models import (
    TaskDependency,
    TaskPriority,
    TaskStatus,
    Workflow,
    WorkflowStatus,
    WorkflowTask,
)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


class WorkflowStorage(Protocol):
    def create_workflow(
        self,
        *,
        title: str,
        description: str,
        status: WorkflowStatus = "pending",
        created_by: str | None = None,
    ) -> Workflow: ...

    def get_workflow(self, workflow_id: str) -> Workflow | None: ...

    def list_workflows(self) -> list[Workflow]: ...

    def update_workflow(
        self,
        workflow_id: str,
        *,
        status: WorkflowStatus | None = None,
        completed_at: datetime | None = UNSET,
    ) -> Workflow: ...

    def delete_workflow(self, workflow_id: str) -> None: ...

    def create_task(
        self,
        *,
        workflow_id: str,
        worker_id: str | None,
        description: str,
        priority: TaskPriority = "medium",
        suggested_role: str = "general",
        order_index: int = 0,
    ) -> WorkflowTask: ...

    def get_task(self, task_id: str) -> WorkflowTask | None: ...

    def list_tasks(self, workflow_id: str) -> list[WorkflowTask]: ...

    def update_task(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        result: str | None = UNSET,
        completed_at: datetime | None = UNSET,
    ) -> WorkflowTask: ...

    def create_dependency(self, *, task_id: str, depends_on_task_id: str) -> TaskDependency: ...

    def list_dependencies(self, task_ids: Iterable[str]) -> list[TaskDependency]: ...


class InMemoryWorkflowStorage:
    """Process-local backend. Used when no database URL is configured, and by tests."""

    def __init__(self) -> None:
        self._workflows: dict[str, Workflow] = {}
        self._tasks: dict[str, WorkflowTask] = {}
        self._dependencies: dict[str, TaskDependency] = {}
        self._lock = threading.Lock()

    def create_workflow(
        self,
        *,
        title: str,
        description: str,
        status: WorkflowStatus = "pending",
        created_by: str | None = None,
    ) -> Workflow:
        workflow = Workflow(
            id=str(uuid.uuid4()),
            title=title,
            description=description,
            status=status,
            created_by=created_by,
            created_at=datetime.now(tz=UTC),
        )
        with self._lock:
            self._workflows[workflow.id] = workflow
        return workflow.model_copy(deep=True)

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        with self._lock:
            workflow = self._workflows.get(workflow_id)
            return workflow.model_copy(deep=True) if workflow else None

    def list_workflows(self) -> list[Workflow]:
        with self._lock:
            workflows = [item.model_copy(deep=True) for item in self._workflows.values()]
        return sorted(workflows, key=lambda item: item.created_at, reverse=True)

    def update_workflow(
        self,
        workflow_id: str,
        *,
        status: WorkflowStatus | None = None,
        completed_at: datetime | None = UNSET,
    ) -> Workflow:
        with self._lock:
            current = self._workflows.get(workflow_id)
            if current is None:
                raise KeyError(f"Workflow {workflow_id} does not exist")
            updated = current.model_copy(deep=True)
            if status is not None:
                updated.status = status
            if completed_at is not UNSET:
                updated.completed_at = completed_at
            self._workflows[workflow_id] = updated
            return updated.model_copy(deep=True)

    def delete_workflow(self, workflow_id: str) -> None:
        with self._lock:
            if self._workflows.pop(workflow_id, None) is None:
                raise KeyError(f"Workflow {workflow_id} does not exist")
            task_ids = {
                task_id
                for task_id, task in self._tasks.items()
                if task.workflow_id == workflow_id
            }
            for task_id in task_ids:
                del self._tasks[task_id]
            for dep_id in [
                dep_id
                for dep_id, dep in self._dependencies.items()
                if dep.task_id in task_ids or dep.depends_on_task_id in task_ids
            ]:
                del self._dependencies[dep_id]

    def create_task(
        self,
        *,
        workflow_id: str,
        worker_id: str | None,
        description: str,
        priority: TaskPriority = "medium",
        suggested_role: str = "general",
        order_index: int = 0,
    ) -> WorkflowTask:
        task = WorkflowTask(
            id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            worker_id=worker_id,
            description=description,
            status="pending",
            priority=priority,
            suggested_role=suggested_role,
            order_index=order_index,
            created_at=datetime.now(tz=UTC),
        )
        with self._lock:
            if workflow_id not in self._workflows:
                raise KeyError(f"Workflow {workflow_id} does not exist")
            self._tasks[task.id] = task
        return task.model_copy(deep=True)

    def get_task(self, task_id: str) -> WorkflowTask | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def list_tasks(self, workflow_id: str) -> list[WorkflowTask]:
        with self._lock:
            tasks = [
                task.model_copy(deep=True)
                for task in self._tasks.values()
                if task.workflow_id == workflow_id
            ]
        return sorted(tasks, key=lambda task: task.order_index)

    def update_task(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        result: str | None = UNSET,
        completed_at: datetime | None = UNSET,
    ) -> WorkflowTask:
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise KeyError(f"Task {task_id} does not exist")
            updated = current.model_copy(deep=True)
            if status is not None:
                updated.status = status
            if result is not UNSET:
                updated.result = result
            if completed_at is not UNSET:
                updated.completed_at = completed_at
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    def create_dependency(self, *, task_id: str, depends_on_task_id: str) -> TaskDependency:
        if task_id == depends_on_task_id:
            raise ValueError("A task cannot depend on itself")
        dependency = TaskDependency(
            id=str(uuid.uuid4()),
            task_id=task_id,
            depends_on_task_id=depends_on_task_id,
        )
        with self._lock:
            self._dependencies[dependency.id] = dependency
        return dependency.model_copy()

    def list_dependencies(self, task_ids: Iterable[str]) -> list[TaskDependency]:
        wanted = set(task_ids)
        with self._lock:
            return [dep.model_copy() for dep in self._dependencies.values() if dep.task_id in wanted]


class PostgresWorkflowStorage:
    """Thread-safe PostgreSQL-backed storage."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        # Lock guards DB operations done through this storage instance.
        self._lock = threading.Lock()
        self._psycopg, self._dict_row = self._load_psycopg()
        # Ensure schema exists before serving requests.
        self.migrate()

    def migrate(self) -> None:
        """Create required tables and indexes if they do not already exist."""
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workflows (
                    id UUID PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_by TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    completed_at TIMESTAMPTZ
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workflow_tasks (
                    id UUID PRIMARY KEY,
                    workflow_id UUID NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
                    worker_id TEXT,
                    description TEXT NOT NULL,
                    status TEXT NOT NULL,
                    result TEXT,
                    priority TEXT NOT NULL,
                    suggested_role TEXT NOT NULL,
                    order_index INTEGER NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    completed_at TIMESTAMPTZ
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_dependencies (
                    id UUID PRIMARY KEY,
                    task_id UUID NOT NULL REFERENCES workflow_tasks(id) ON DELETE CASCADE,
                    depends_on_task_id UUID NOT NULL REFERENCES workflow_tasks(id) ON DELETE CASCADE,
                    CHECK (task_id <> depends_on_task_id)
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_workflow_tasks_workflow_id
                ON workflow_tasks(workflow_id)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_task_dependencies_task_id
                ON task_dependencies(task_id)
                """)
            conn.commit()

    def create_workflow(
        self,
        *,
        title: str,
        description: str,
        status: WorkflowStatus = "pending",
        created_by: str | None = None,
    ) -> Workflow:
        workflow_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflows (id, title, description, status, created_by, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (workflow_id, title, description, status, created_by, now),
            )
            conn.commit()
        created = self.get_workflow(str(workflow_id))
        if created is None:
            raise RuntimeError("Failed to load created workflow")
        return created

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflows WHERE id::text = %s",
                (workflow_id,),
            ).fetchone()
        return self._row_to_workflow(row) if row is not None else None

    def list_workflows(self) -> list[Workflow]:
        with self._lock, self._connect() as conn:
            rows = conn.execute("SELECT * FROM workflows ORDER BY created_at DESC").fetchall()
        return [self._row_to_workflow(row) for row in rows]

    def update_workflow(
        self,
        workflow_id: str,
        *,
        status: WorkflowStatus | None = None,
        completed_at: datetime | None = UNSET,
    ) -> Workflow:
        changes: dict[str, Any] = {}
        if status is not None:
            changes["status"] = status
        if completed_at is not UNSET:
            changes["completed_at"] = completed_at
        self._apply_update("workflows", workflow_id, changes)
        refreshed = self.get_workflow(workflow_id)
        if refreshed is None:
            raise KeyError(f"Workflow {workflow_id} does not exist")
        return refreshed

    def delete_workflow(self, workflow_id: str) -> None:
        with self._lock, self._connect() as conn:
            deleted = conn.execute(
                "DELETE FROM workflows WHERE id::text = %s",
                (workflow_id,),
            ).rowcount
            conn.commit()
        if not deleted:
            raise KeyError(f"Workflow {workflow_id} does not exist")

    def create_task(
        self,
        *,
        workflow_id: str,
        worker_id: str | None,
        description: str,
        priority: TaskPriority = "medium",
        suggested_role: str = "general",
        order_index: int = 0,
    ) -> WorkflowTask:
        task_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflow_tasks (
                    id,
                    workflow_id,
                    worker_id,
                    description,
                    status,
                    result,
                    priority,
                    suggested_role,
                    order_index,
                    created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    task_id,
                    workflow_id,
                    worker_id,
                    description,
                    "pending",
                    None,
                    priority,
                    suggested_role,
                    order_index,
                    now,
                ),
            )
            conn.commit()
        created = self.get_task(str(task_id))
        if created is None:
            raise RuntimeError("Failed to load created task")
        return created

    def get_task(self, task_id: str) -> WorkflowTask | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflow_tasks WHERE id::text = %s",
                (task_id,),
            ).fetchone()
        return self._row_to_task(row) if row is not None else None

    def list_tasks(self, workflow_id: str) -> list[WorkflowTask]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM workflow_tasks
                WHERE workflow_id::text = %s
                ORDER BY order_index ASC
                """,
                (workflow_id,),
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def update_task(
        self,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        result: str | None = UNSET,
        completed_at: datetime | None = UNSET,
    ) -> WorkflowTask:
        changes: dict[str, Any] = {}
        if status is not None:
            changes["status"] = status
        if result is not UNSET:
            changes["result"] = result
        if completed_at is not UNSET:
            changes["completed_at"] = completed_at
        self._apply_update("workflow_tasks", task_id, changes)
        refreshed = self.get_task(task_id)
        if refreshed is None:
            raise KeyError(f"Task {task_id} does not exist")
        return refreshed

    def create_dependency(self, *, task_id: str, depends_on_task_id: str) -> TaskDependency:
        dependency_id = uuid.uuid4()
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO task_dependencies (id, task_id, depends_on_task_id)
                VALUES (%s, %s, %s)
                """,
                (dependency_id, task_id, depends_on_task_id),
            )
            conn.commit()
        return TaskDependency(
            id=str(dependency_id),
            task_id=task_id,
            depends_on_task_id=depends_on_task_id,
        )

    def list_dependencies(self, task_ids: Iterable[str]) -> list[TaskDependency]:
        wanted = [str(task_id) for task_id in task_ids]
        if not wanted:
            return []
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM task_dependencies WHERE task_id::text = ANY(%s)",
                (wanted,),
            ).fetchall()
        return [
            TaskDependency(
                id=str(row["id"]),
                task_id=str(row["task_id"]),
                depends_on_task_id=str(row["depends_on_task_id"]),
            )
            for row in rows
        ]

    def _apply_update(self, table: str, row_id: str, changes: dict[str, Any]) -> None:
        """Run a partial UPDATE. Column names come from this module, never from callers."""
        if not changes:
            return
        assignments = ", ".join(f"{column} = %s" for column in changes)
        with self._lock, self._connect() as conn:
            conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id::text = %s",
                (*changes.values(), row_id),
            )
            conn.commit()

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any]:
        """Import psycopg with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime | None:
        if raw is None:
            return None
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_workflow(cls, row: Any) -> Workflow:
        return Workflow(
            id=str(row["id"]),
            title=row["title"],
            description=row["description"],
            status=row["status"],
            created_by=row["created_by"],
            created_at=cls._parse_datetime(row["created_at"]),
            completed_at=cls._parse_datetime(row["completed_at"]),
        )

    @classmethod
    def _row_to_task(cls, row: Any) -> WorkflowTask:
        return WorkflowTask(
            id=str(row["id"]),
            workflow_id=str(row["workflow_id"]),
            worker_id=row["worker_id"],
            description=row["description"],
            status=row["status"],
            result=row["result"],
            priority=row["priority"],
            suggested_role=row["suggested_role"],
            order_index=int(row["order_index"]),
            created_at=cls._parse_datetime(row["created_at"]),
            completed_at=cls._parse_datetime(row["completed_at"]),
        )
