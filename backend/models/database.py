"""SQLite-based run persistence using aiosqlite.

This module provides the RunStore class for persisting workflow runs,
orchestrator runs, their tasks and per-run metrics. All operations are
async and designed to fail gracefully: a database error is logged and never
interrupts a running workflow or orchestrator.

Tables:
    workflow_runs: One row per workflow run (node statuses, results, errors).
    orchestrator_runs: One row per orchestrator run (role results, summary, plans).
    orchestrator_tasks: Tasks produced by role reports and the daily plan.
    run_metrics: Aggregate token usage and timing per run.

Usage:
    >>> from models.database import RunStore
    >>> store = RunStore("./data/runs.db")
    >>> await store.init()
    >>> await store.save_tasks("orch_abc123", tasks)
"""

import json
import time
from datetime import date
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from models.schemas import (
    AgentResult,
    OrchestratorRunDetail,
    OrchestratorTask,
    TaskStatus,
    WorkflowRunDetail,
)

logger = structlog.get_logger(__name__)

# Allowed predecessors for each target status. Tasks only move forward.
TASK_TRANSITIONS: dict[TaskStatus, tuple[TaskStatus, ...]] = {
    TaskStatus.IN_PROGRESS: (TaskStatus.PENDING,),
    TaskStatus.DONE: (TaskStatus.PENDING, TaskStatus.IN_PROGRESS),
}


def is_forward_transition(current: TaskStatus, new: TaskStatus) -> bool:
    return current in TASK_TRANSITIONS.get(new, ())


class RunStore:
    """Async SQLite store for runs, tasks and metrics.

    ``init()`` raises if the schema cannot be created. Every other public
    method catches exceptions internally, logs them and returns a neutral
    value (False, None, 0 or an empty list).

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def init(self) -> None:
        """Create database tables if they do not exist.

        Also creates parent directories for the database file if needed.
        """
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS workflow_runs (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        status TEXT NOT NULL,
                        node_statuses TEXT NOT NULL DEFAULT '{}',
                        results TEXT NOT NULL DEFAULT '{}',
                        errors TEXT NOT NULL DEFAULT '{}',
                        error TEXT,
                        created_at TEXT NOT NULL,
                        completed_at TEXT
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS orchestrator_runs (
                        id TEXT PRIMARY KEY,
                        deployment_id TEXT NOT NULL,
                        project_id TEXT NOT NULL,
                        status TEXT NOT NULL,
                        agent_results TEXT NOT NULL DEFAULT '[]',
                        summary TEXT NOT NULL DEFAULT '',
                        delivery_status TEXT NOT NULL DEFAULT '{}',
                        error TEXT,
                        created_at TEXT NOT NULL,
                        completed_at TEXT
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS orchestrator_tasks (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        run_id TEXT NOT NULL,
                        title TEXT NOT NULL,
                        description TEXT NOT NULL DEFAULT '',
                        category TEXT NOT NULL DEFAULT 'general',
                        priority TEXT NOT NULL DEFAULT 'normal',
                        assigned_role TEXT NOT NULL DEFAULT '',
                        assigned_role_emoji TEXT NOT NULL DEFAULT '',
                        due_date TEXT,
                        success_metric TEXT,
                        estimated_impact TEXT,
                        status TEXT NOT NULL DEFAULT 'pending',
                        metadata TEXT NOT NULL DEFAULT '{}',
                        created_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS run_metrics (
                        run_id TEXT PRIMARY KEY,
                        total_tokens INTEGER NOT NULL DEFAULT 0,
                        prompt_tokens INTEGER NOT NULL DEFAULT 0,
                        completion_tokens INTEGER NOT NULL DEFAULT 0,
                        llm_calls INTEGER NOT NULL DEFAULT 0,
                        nodes_executed INTEGER NOT NULL DEFAULT 0,
                        deliveries INTEGER NOT NULL DEFAULT 0,
                        delivery_failures INTEGER NOT NULL DEFAULT 0,
                        duration_ms INTEGER NOT NULL DEFAULT 0,
                        created_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_orchestrator_runs_created_at
                    ON orchestrator_runs(created_at DESC)
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_tasks_run_id
                    ON orchestrator_tasks(run_id)
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_tasks_due_date
                    ON orchestrator_tasks(due_date)
                """)
                await db.commit()
            logger.info("run_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error("run_store_init_failed", db_path=self.db_path, error=str(e))
            raise

    # -----------------------------------------------------------------
    # Workflow runs
    # -----------------------------------------------------------------

    async def save_workflow_run(self, detail: WorkflowRunDetail) -> bool:
        """Insert or replace a workflow run record."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO workflow_runs
                        (id, name, status, node_statuses, results, errors,
                         error, created_at, completed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        detail.run_id,
                        detail.name,
                        detail.status.value,
                        json.dumps({k: v.value for k, v in detail.node_statuses.items()}),
                        json.dumps(detail.results),
                        json.dumps(detail.errors),
                        detail.error,
                        detail.created_at.isoformat(),
                        detail.completed_at.isoformat() if detail.completed_at else None,
                    ),
                )
                await db.commit()
            logger.debug("workflow_run_saved", run_id=detail.run_id, status=detail.status.value)
            return True
        except Exception as e:
            logger.error("workflow_run_save_failed", run_id=detail.run_id, error=str(e))
            return False

    async def get_workflow_run(self, run_id: str) -> WorkflowRunDetail | None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute("SELECT * FROM workflow_runs WHERE id = ?", (run_id,))
                row = await cursor.fetchone()
                if row is None:
                    return None
                return WorkflowRunDetail(
                    run_id=row["id"],
                    name=row["name"],
                    status=row["status"],
                    node_statuses=json.loads(row["node_statuses"]),
                    results=json.loads(row["results"]),
                    errors=json.loads(row["errors"]),
                    error=row["error"],
                    created_at=row["created_at"],
                    completed_at=row["completed_at"],
                )
        except Exception as e:
            logger.error("workflow_run_get_failed", run_id=run_id, error=str(e))
            return None

    # -----------------------------------------------------------------
    # Orchestrator runs
    # -----------------------------------------------------------------

    async def save_orchestrator_run(self, detail: OrchestratorRunDetail) -> bool:
        """Insert or replace an orchestrator run record.

        Called once when the run starts and again when it finishes.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO orchestrator_runs
                        (id, deployment_id, project_id, status, agent_results,
                         summary, delivery_status, error, created_at, completed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        detail.run_id,
                        detail.deployment_id,
                        detail.project_id,
                        detail.status.value,
                        json.dumps([r.model_dump(mode="json") for r in detail.agent_results]),
                        detail.summary,
                        json.dumps(detail.delivery_status),
                        detail.error,
                        detail.created_at.isoformat(),
                        detail.completed_at.isoformat() if detail.completed_at else None,
                    ),
                )
                await db.commit()
            logger.debug("orchestrator_run_saved", run_id=detail.run_id, status=detail.status.value)
            return True
        except Exception as e:
            logger.error("orchestrator_run_save_failed", run_id=detail.run_id, error=str(e))
            return False

    @staticmethod
    def _orchestrator_row(row: aiosqlite.Row) -> OrchestratorRunDetail:
        return OrchestratorRunDetail(
            run_id=row["id"],
            deployment_id=row["deployment_id"],
            project_id=row["project_id"],
            status=row["status"],
            agent_results=[
                AgentResult.model_validate(r) for r in json.loads(row["agent_results"])
            ],
            summary=row["summary"],
            delivery_status=json.loads(row["delivery_status"]),
            error=row["error"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

    async def get_orchestrator_run(self, run_id: str) -> OrchestratorRunDetail | None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT * FROM orchestrator_runs WHERE id = ?", (run_id,)
                )
                row = await cursor.fetchone()
                return self._orchestrator_row(row) if row is not None else None
        except Exception as e:
            logger.error("orchestrator_run_get_failed", run_id=run_id, error=str(e))
            return None

    async def list_orchestrator_runs(
        self,
        project_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[OrchestratorRunDetail]:
        """Recent orchestrator runs, newest first, optionally for one project."""
        query = "SELECT * FROM orchestrator_runs"
        params: list[Any] = []
        if project_id is not None:
            query += " WHERE project_id = ?"
            params.append(project_id)
        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._orchestrator_row(row) for row in rows]
        except Exception as e:
            logger.error("orchestrator_run_list_failed", error=str(e))
            return []

    # -----------------------------------------------------------------
    # Tasks
    # -----------------------------------------------------------------

    async def save_tasks(self, run_id: str, tasks: list[OrchestratorTask]) -> int:
        """Insert tasks for a run.

        Returns:
            Number of rows inserted; 0 when the insert failed.
        """
        if not tasks:
            return 0
        now = time.time()
        rows = [
            (
                run_id,
                task.title,
                task.description,
                task.category,
                task.priority,
                task.assigned_role,
                task.assigned_role_emoji,
                task.due_date.isoformat() if task.due_date else None,
                task.success_metric,
                task.estimated_impact,
                task.status.value,
                json.dumps(task.metadata),
                now,
            )
            for task in tasks
        ]
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.executemany(
                    """
                    INSERT INTO orchestrator_tasks
                        (run_id, title, description, category, priority,
                         assigned_role, assigned_role_emoji, due_date,
                         success_metric, estimated_impact, status, metadata, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                await db.commit()
            logger.debug("tasks_saved", run_id=run_id, count=len(rows))
            return len(rows)
        except Exception as e:
            logger.error("tasks_save_failed", run_id=run_id, count=len(rows), error=str(e))
            return 0

    @staticmethod
    def _task_row(row: aiosqlite.Row) -> OrchestratorTask:
        data = dict(row)
        data.pop("created_at", None)
        data["metadata"] = json.loads(data["metadata"] or "{}")
        return OrchestratorTask.model_validate(data)

    async def list_tasks(self, run_id: str) -> list[OrchestratorTask]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT * FROM orchestrator_tasks WHERE run_id = ? ORDER BY id",
                    (run_id,),
                )
                return [self._task_row(row) for row in await cursor.fetchall()]
        except Exception as e:
            logger.error("tasks_list_failed", run_id=run_id, error=str(e))
            return []

    async def get_task(self, task_id: int) -> OrchestratorTask | None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT * FROM orchestrator_tasks WHERE id = ?", (task_id,)
                )
                row = await cursor.fetchone()
                return self._task_row(row) if row is not None else None
        except Exception as e:
            logger.error("task_get_failed", task_id=task_id, error=str(e))
            return None

    async def update_task_status(self, task_id: int, status: TaskStatus) -> bool:
        """Move a task forward to ``status``.

        Returns:
            True if the row changed; False for an unknown task, a backward
            or repeated move, or a database error.
        """
        allowed = TASK_TRANSITIONS.get(status, ())
        if not allowed:
            return False
        placeholders = ", ".join("?" for _ in allowed)
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    f"""
                    UPDATE orchestrator_tasks SET status = ?
                    WHERE id = ? AND status IN ({placeholders})
                    """,
                    (status.value, task_id, *(s.value for s in allowed)),
                )
                await db.commit()
                changed = cursor.rowcount > 0
            logger.debug("task_status_updated", task_id=task_id, status=status.value, changed=changed)
            return changed
        except Exception as e:
            logger.error("task_status_update_failed", task_id=task_id, error=str(e))
            return False

    async def list_overdue_tasks(self, today: date) -> list[OrchestratorTask]:
        """Tasks due before ``today`` that are not done."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    """
                    SELECT * FROM orchestrator_tasks
                    WHERE due_date IS NOT NULL AND due_date < ? AND status != ?
                    ORDER BY due_date, id
                    """,
                    (today.isoformat(), TaskStatus.DONE.value),
                )
                return [self._task_row(row) for row in await cursor.fetchall()]
        except Exception as e:
            logger.error("overdue_tasks_list_failed", error=str(e))
            return []

    # -----------------------------------------------------------------
    # Metrics
    # -----------------------------------------------------------------

    async def save_metrics(self, run_id: str, metrics_data: dict[str, Any]) -> None:
        """Save or replace aggregate metrics for a run.

        Args:
            run_id: The run the metrics belong to.
            metrics_data: Output of ``RunMetricsData.to_dict()``.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO run_metrics
                        (run_id, total_tokens, prompt_tokens, completion_tokens,
                         llm_calls, nodes_executed, deliveries, delivery_failures,
                         duration_ms, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        metrics_data.get("total_tokens", 0),
                        metrics_data.get("prompt_tokens", 0),
                        metrics_data.get("completion_tokens", 0),
                        metrics_data.get("llm_calls", 0),
                        metrics_data.get("nodes_executed", 0),
                        metrics_data.get("deliveries", 0),
                        metrics_data.get("delivery_failures", 0),
                        metrics_data.get("duration_ms", 0),
                        time.time(),
                    ),
                )
                await db.commit()
            logger.debug("run_metrics_saved", run_id=run_id)
        except Exception as e:
            logger.error("run_metrics_save_failed", run_id=run_id, error=str(e))

    async def get_metrics(self, run_id: str) -> dict[str, Any] | None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT * FROM run_metrics WHERE run_id = ?", (run_id,)
                )
                row = await cursor.fetchone()
                return dict(row) if row is not None else None
        except Exception as e:
            logger.error("run_metrics_get_failed", run_id=run_id, error=str(e))
            return None
