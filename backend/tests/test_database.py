"""Tests for models/database.py -- RunStore persistence."""

from datetime import UTC, date, datetime
from pathlib import Path

import pytest

from models.database import RunStore, is_forward_transition
from models.schemas import (
    AgentResult,
    NodeStatus,
    OrchestratorRunDetail,
    OrchestratorTask,
    RoleStatus,
    RunStatus,
    TaskStatus,
    WorkflowRunDetail,
)

NOW = datetime(2026, 3, 6, 9, 0, tzinfo=UTC)


def _orchestrator_run(run_id: str, project_id: str = "proj_1", minute: int = 0) -> OrchestratorRunDetail:
    return OrchestratorRunDetail(
        run_id=run_id,
        deployment_id="dep_1",
        project_id=project_id,
        status=RunStatus.COMPLETED,
        created_at=NOW.replace(minute=minute),
    )


def _task(title: str, due: date | None = None, **kwargs) -> OrchestratorTask:
    return OrchestratorTask(title=title, due_date=due, **kwargs)


class TestInit:
    async def test_creates_parent_directories(self, tmp_path: Path) -> None:
        store = RunStore(str(tmp_path / "nested" / "dir" / "runs.db"))
        await store.init()
        assert (tmp_path / "nested" / "dir" / "runs.db").exists()

    async def test_init_is_idempotent(self, run_store: RunStore) -> None:
        await run_store.init()
        assert await run_store.list_orchestrator_runs() == []


# =========================================================================
# Runs
# =========================================================================


class TestWorkflowRuns:
    async def test_save_and_get(self, run_store: RunStore) -> None:
        detail = WorkflowRunDetail(
            run_id="run_1",
            name="welcome",
            status=RunStatus.PARTIAL,
            node_statuses={"t": NodeStatus.SUCCESS, "a": NodeStatus.ERROR},
            results={"t": "Workflow started"},
            errors={"a": "provider down"},
            created_at=NOW,
            completed_at=NOW,
        )
        assert await run_store.save_workflow_run(detail)

        loaded = await run_store.get_workflow_run("run_1")
        assert loaded is not None
        assert loaded.status == RunStatus.PARTIAL
        assert loaded.node_statuses == {"t": NodeStatus.SUCCESS, "a": NodeStatus.ERROR}
        assert loaded.errors == {"a": "provider down"}
        assert loaded.completed_at == NOW

    async def test_unknown_run(self, run_store: RunStore) -> None:
        assert await run_store.get_workflow_run("nope") is None


class TestOrchestratorRuns:
    async def test_replace_on_second_save(self, run_store: RunStore) -> None:
        running = _orchestrator_run("orch_1").model_copy(update={"status": RunStatus.RUNNING})
        await run_store.save_orchestrator_run(running)

        result = AgentResult(
            role_id="ceo",
            title="CEO",
            status=RoleStatus.SUCCESS,
            text="report",
            started_at=NOW,
            completed_at=NOW,
        )
        done = _orchestrator_run("orch_1").model_copy(
            update={"agent_results": [result], "delivery_status": {"tasks_created": 2}}
        )
        await run_store.save_orchestrator_run(done)

        loaded = await run_store.get_orchestrator_run("orch_1")
        assert loaded is not None
        assert loaded.status == RunStatus.COMPLETED
        assert loaded.agent_results == [result]
        assert loaded.delivery_status == {"tasks_created": 2}

    async def test_list_newest_first_and_by_project(self, run_store: RunStore) -> None:
        await run_store.save_orchestrator_run(_orchestrator_run("old", minute=1))
        await run_store.save_orchestrator_run(_orchestrator_run("new", minute=5))
        await run_store.save_orchestrator_run(_orchestrator_run("other", project_id="proj_2", minute=3))

        assert [r.run_id for r in await run_store.list_orchestrator_runs()] == ["new", "other", "old"]
        assert [r.run_id for r in await run_store.list_orchestrator_runs(project_id="proj_1")] == ["new", "old"]
        assert [r.run_id for r in await run_store.list_orchestrator_runs(limit=1, offset=1)] == ["other"]


# =========================================================================
# Tasks
# =========================================================================


class TestTasks:
    async def test_save_and_list(self, run_store: RunStore) -> None:
        tasks = [
            _task("Fix titles", date(2026, 3, 9), priority="alta", metadata={"source": "role_round"}),
            _task("Publish guide"),
        ]
        assert await run_store.save_tasks("orch_1", tasks) == 2
        assert await run_store.save_tasks("orch_1", []) == 0

        stored = await run_store.list_tasks("orch_1")
        assert [t.title for t in stored] == ["Fix titles", "Publish guide"]
        assert stored[0].id is not None
        assert stored[0].run_id == "orch_1"
        assert stored[0].priority == "alta"
        assert stored[0].due_date == date(2026, 3, 9)
        assert stored[0].metadata == {"source": "role_round"}
        assert stored[0].status == TaskStatus.PENDING
        assert await run_store.list_tasks("orch_2") == []

    async def test_get_task(self, run_store: RunStore) -> None:
        await run_store.save_tasks("orch_1", [_task("A")])
        task_id = (await run_store.list_tasks("orch_1"))[0].id
        assert task_id is not None

        task = await run_store.get_task(task_id)
        assert task is not None and task.title == "A"
        assert await run_store.get_task(9999) is None

    async def test_status_moves_forward_only(self, run_store: RunStore) -> None:
        await run_store.save_tasks("orch_1", [_task("A")])
        task_id = (await run_store.list_tasks("orch_1"))[0].id
        assert task_id is not None

        assert await run_store.update_task_status(task_id, TaskStatus.IN_PROGRESS)
        # repeated move changes nothing
        assert not await run_store.update_task_status(task_id, TaskStatus.IN_PROGRESS)
        assert await run_store.update_task_status(task_id, TaskStatus.DONE)
        assert not await run_store.update_task_status(task_id, TaskStatus.IN_PROGRESS)
        assert not await run_store.update_task_status(task_id, TaskStatus.PENDING)

        task = await run_store.get_task(task_id)
        assert task is not None and task.status == TaskStatus.DONE

    async def test_pending_straight_to_done(self, run_store: RunStore) -> None:
        await run_store.save_tasks("orch_1", [_task("A")])
        task_id = (await run_store.list_tasks("orch_1"))[0].id
        assert task_id is not None
        assert await run_store.update_task_status(task_id, TaskStatus.DONE)

    async def test_unknown_task_not_updated(self, run_store: RunStore) -> None:
        assert not await run_store.update_task_status(42, TaskStatus.DONE)

    async def test_overdue(self, run_store: RunStore) -> None:
        await run_store.save_tasks(
            "orch_1",
            [
                _task("late", date(2026, 3, 2)),
                _task("later", date(2026, 3, 4)),
                _task("today", date(2026, 3, 6)),
                _task("undated"),
                _task("finished", date(2026, 3, 1), status=TaskStatus.DONE),
            ],
        )
        overdue = await run_store.list_overdue_tasks(date(2026, 3, 6))
        assert [t.title for t in overdue] == ["late", "later"]


class TestTransitions:
    @pytest.mark.parametrize(
        ("current", "new", "allowed"),
        [
            (TaskStatus.PENDING, TaskStatus.IN_PROGRESS, True),
            (TaskStatus.PENDING, TaskStatus.DONE, True),
            (TaskStatus.IN_PROGRESS, TaskStatus.DONE, True),
            (TaskStatus.IN_PROGRESS, TaskStatus.PENDING, False),
            (TaskStatus.DONE, TaskStatus.IN_PROGRESS, False),
            (TaskStatus.DONE, TaskStatus.DONE, False),
        ],
    )
    def test_is_forward_transition(self, current: TaskStatus, new: TaskStatus, allowed: bool) -> None:
        assert is_forward_transition(current, new) is allowed


# =========================================================================
# Metrics
# =========================================================================


class TestMetrics:
    async def test_save_and_get(self, run_store: RunStore) -> None:
        await run_store.save_metrics(
            "run_1",
            {"total_tokens": 300, "prompt_tokens": 200, "completion_tokens": 100, "llm_calls": 2},
        )
        metrics = await run_store.get_metrics("run_1")
        assert metrics is not None
        assert metrics["total_tokens"] == 300
        assert metrics["llm_calls"] == 2
        assert metrics["deliveries"] == 0

    async def test_missing(self, run_store: RunStore) -> None:
        assert await run_store.get_metrics("nope") is None
