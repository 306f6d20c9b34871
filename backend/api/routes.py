"""HTTP API routes for the workflow and orchestrator backend.

This module defines the HTTP endpoints for workflow runs, orchestrator runs,
their tasks and health checks. Real-time events are handled via WebSocket
in websocket.py.
"""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, HTTPException, Path, Query, status

from agents.hierarchy import HierarchyError
from models.database import is_forward_transition
from models.schemas import (
    HealthResponse,
    OrchestratorRunDetail,
    OrchestratorRunRequest,
    OrchestratorRunResponse,
    OrchestratorTask,
    TaskStatusUpdate,
    WorkflowRunDetail,
    WorkflowRunRequest,
    WorkflowRunResponse,
)
from workflow.errors import GraphError

if TYPE_CHECKING:
    from models.database import RunStore
    from run_manager import RunManager

logger = structlog.get_logger(__name__)

router = APIRouter()

# Run manager dependency (set during application startup)
_run_manager: RunManager | None = None


def set_run_manager(manager: RunManager) -> None:
    """Set the run manager instance for the routes.

    This should be called during application startup to inject the run
    manager dependency.

    Args:
        manager: The RunManager instance to use for all routes.
    """
    global _run_manager
    _run_manager = manager
    logger.info("run_manager_configured")


def get_run_manager() -> RunManager:
    """Get the run manager instance.

    Raises:
        RuntimeError: If the run manager has not been configured.
    """
    if _run_manager is None:
        logger.error("run_manager_not_configured")
        raise RuntimeError("RunManager not configured. Call set_run_manager() during startup.")
    return _run_manager


def _require_store() -> RunStore:
    run_store = get_run_manager().run_store
    if run_store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Run storage is not configured",
        )
    return run_store


# -----------------------------------------------------------------------------
# Workflow runs
# -----------------------------------------------------------------------------


@router.post(
    "/api/workflows/runs",
    response_model=WorkflowRunResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a workflow run",
    description=(
        "Validate a workflow graph and execute it in the background. "
        "Progress is streamed over the returned WebSocket URL."
    ),
)
async def start_workflow_run(request: WorkflowRunRequest) -> WorkflowRunResponse:
    """Start a workflow run.

    Raises:
        HTTPException: 422 if the graph cannot run (no trigger, several
            triggers, dangling edges, malformed nodes).
    """
    run_manager = get_run_manager()

    try:
        run_id = await run_manager.start_workflow(request)
    except (GraphError, ValueError) as e:
        # pydantic.ValidationError is a ValueError
        logger.warning("workflow_run_rejected", error=str(e), nodes=len(request.nodes))
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e

    logger.info("workflow_run_created", run_id=run_id, name=request.name)
    info = run_manager.get_workflow(run_id)
    return WorkflowRunResponse(
        run_id=run_id,
        websocket_url=f"/ws/{run_id}",
        status=info.status if info else "running",
    )


@router.get(
    "/api/workflows/runs/{run_id}",
    response_model=WorkflowRunDetail,
    summary="Get workflow run",
    description="Node statuses, node results and outcome of a workflow run.",
)
async def get_workflow_run(
    run_id: Annotated[str, Path(description="The workflow run ID")],
) -> WorkflowRunDetail:
    detail = await get_run_manager().get_workflow_detail(run_id)
    if detail is None:
        logger.warning("get_workflow_run_not_found", run_id=run_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run {run_id} not found",
        )
    return detail


@router.post(
    "/api/workflows/runs/{run_id}/cancel",
    response_model=WorkflowRunResponse,
    summary="Cancel workflow run",
    description="Stop a workflow run before its next node. Running nodes finish.",
)
async def cancel_workflow_run(
    run_id: Annotated[str, Path(description="The workflow run ID")],
) -> WorkflowRunResponse:
    try:
        run_status = await get_run_manager().cancel_workflow(run_id)
    except KeyError:
        logger.warning("cancel_workflow_run_not_found", run_id=run_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run {run_id} not found",
        ) from None

    return WorkflowRunResponse(run_id=run_id, websocket_url=f"/ws/{run_id}", status=run_status)


# -----------------------------------------------------------------------------
# Orchestrator runs
# -----------------------------------------------------------------------------


@router.post(
    "/api/orchestrator/runs",
    response_model=OrchestratorRunResponse,
    response_model_by_alias=True,
    summary="Run an organizational chart",
    description=(
        "Run every role once in hierarchy order, refine, synthesize the "
        "strategic and daily plans, persist tasks and send the summary. "
        "Returns when the run is finished."
    ),
)
async def run_orchestrator(request: OrchestratorRunRequest) -> OrchestratorRunResponse:
    """Run the orchestrator to completion.

    Raises:
        HTTPException: 422 for a cyclic or too deep hierarchy, 500 when the
            run failed unexpectedly.
    """
    try:
        response = await get_run_manager().run_orchestrator(request)
    except HierarchyError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e
    except Exception as e:
        logger.error(
            "orchestrator_run_failed",
            deployment_id=request.deployment_id,
            error=str(e),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Orchestrator run failed: {e}",
        ) from e

    logger.info(
        "orchestrator_run_finished",
        run_id=response.run_id,
        status=response.status.value,
        tasks_created=response.tasks_created,
    )
    return response


@router.get(
    "/api/orchestrator/runs",
    response_model=list[OrchestratorRunDetail],
    response_model_by_alias=True,
    summary="List orchestrator runs",
)
async def list_orchestrator_runs(
    project_id: Annotated[str | None, Query(alias="projectId")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 25,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[OrchestratorRunDetail]:
    return await _require_store().list_orchestrator_runs(project_id, limit, offset)


@router.get(
    "/api/orchestrator/runs/{run_id}",
    response_model=OrchestratorRunDetail,
    response_model_by_alias=True,
    summary="Get orchestrator run",
    description="Role results, summary and delivery status of an orchestrator run.",
)
async def get_orchestrator_run(
    run_id: Annotated[str, Path(description="The orchestrator run ID")],
) -> OrchestratorRunDetail:
    detail = await _require_store().get_orchestrator_run(run_id)
    if detail is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run {run_id} not found",
        )
    return detail


@router.get(
    "/api/orchestrator/runs/{run_id}/tasks",
    response_model=list[OrchestratorTask],
    response_model_by_alias=True,
    summary="List tasks of an orchestrator run",
)
async def list_run_tasks(
    run_id: Annotated[str, Path(description="The orchestrator run ID")],
) -> list[OrchestratorTask]:
    run_store = _require_store()
    if await run_store.get_orchestrator_run(run_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run {run_id} not found",
        )
    return await run_store.list_tasks(run_id)


# -----------------------------------------------------------------------------
# Tasks
# -----------------------------------------------------------------------------


@router.get(
    "/api/tasks/overdue",
    response_model=list[OrchestratorTask],
    response_model_by_alias=True,
    summary="List overdue tasks",
    description="Tasks whose due date is before the given day (default today) and are not done.",
)
async def list_overdue_tasks(
    today: Annotated[date | None, Query(description="Reference day (YYYY-MM-DD)")] = None,
) -> list[OrchestratorTask]:
    return await _require_store().list_overdue_tasks(today or date.today())


@router.patch(
    "/api/tasks/{task_id}",
    response_model=OrchestratorTask,
    response_model_by_alias=True,
    summary="Update task status",
    description="Move a task forward: pending to in_progress to done.",
)
async def update_task_status(
    task_id: Annotated[int, Path(description="The task ID")],
    update: TaskStatusUpdate,
) -> OrchestratorTask:
    """Update a task's status.

    Raises:
        HTTPException: 404 for an unknown task, 409 for a backward or
            repeated move.
    """
    run_store = _require_store()
    task = await run_store.get_task(task_id)
    if task is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task {task_id} not found",
        )

    if not is_forward_transition(task.status, update.status) or not await run_store.update_task_status(
        task_id, update.status
    ):
        logger.warning(
            "task_status_transition_rejected",
            task_id=task_id,
            current=task.status.value,
            requested=update.status.value,
        )
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot move task from {task.status.value} to {update.status.value}",
        )

    logger.info("task_status_changed", task_id=task_id, status=update.status.value)
    return task.model_copy(update={"status": update.status})


# -----------------------------------------------------------------------------
# Metrics & health
# -----------------------------------------------------------------------------


@router.get(
    "/api/runs/{run_id}/metrics",
    summary="Get run metrics",
    description="Token usage, node and delivery counts, and duration of a run.",
)
async def get_run_metrics(
    run_id: Annotated[str, Path(description="The run ID")],
) -> dict[str, object]:
    run_manager = get_run_manager()

    if run_manager.metrics_collector is not None:
        live = run_manager.metrics_collector.get(run_id)
        if live is not None:
            return live.to_dict()

    if run_manager.run_store is not None:
        persisted = await run_manager.run_store.get_metrics(run_id)
        if persisted is not None:
            return persisted

    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"No metrics for run {run_id}",
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with the number of runs in flight.",
)
async def health_check() -> HealthResponse:
    try:
        run_manager = get_run_manager()
    except RuntimeError:
        # RunManager not configured yet (e.g., during startup)
        return HealthResponse(status="degraded")

    return HealthResponse(status="healthy", active_runs=run_manager.active_run_count)
