"""Run manager for workflow and orchestrator runs.

This module provides the RunManager class that owns the lifecycle of runs:
building the engines, executing workflow runs in background tasks,
executing orchestrator runs to completion, persisting results and metrics,
and signalling run start/end on the event bus.

Usage:
    >>> from events import get_event_bus
    >>> from run_manager import RunManager
    >>>
    >>> manager = RunManager(get_event_bus(), run_store=store)
    >>> run_id = await manager.start_workflow(request)
    >>> info = manager.get_workflow(run_id)
    >>> print(info.status)
    >>>
    >>> await manager.cleanup_all()
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from agents.data_context import ProjectDataProvider
from agents.hierarchy import HierarchyError
from agents.orchestrator_graph import OrchestratorGraph
from agents.utils import LLMClient, MockLLMClient
from config import settings
from events import EventBus
from events.types import EventType, RunEvent
from metrics import MetricsCollector
from models.database import RunStore
from models.schemas import (
    OrchestratorRunDetail,
    OrchestratorRunRequest,
    OrchestratorRunResponse,
    RunStatus,
    WorkflowRunDetail,
    WorkflowRunRequest,
)
from workflow.delivery import Deliverer, DeliveryService, HttpDeliverer
from workflow.executor import DagExecutor, WorkflowRunResult
from workflow.graph import WorkflowGraph

logger = structlog.get_logger()

MOCK_REPLY = "Mock completion. Configure a provider key to get real output."

_OUTCOME_STATUS = {
    "completed": RunStatus.COMPLETED,
    "partial": RunStatus.PARTIAL,
    "cancelled": RunStatus.CANCELLED,
}


@dataclass
class WorkflowRunInfo:
    """In-memory state of a workflow run.

    Attributes:
        run_id: Unique identifier (e.g. "run_abc123def456")
        name: Workflow name from the request
        status: Current run status
        executor: The executor running the graph
        created_at: When the run was accepted
        completed_at: When the run ended (None while running)
        result: Final executor result (None while running)
        error: Failure message if the run itself failed
    """

    run_id: str
    name: str
    status: RunStatus
    executor: DagExecutor
    created_at: datetime
    completed_at: datetime | None = None
    result: WorkflowRunResult | None = None
    error: str | None = None

    def to_detail(self) -> WorkflowRunDetail:
        result = self.result
        return WorkflowRunDetail(
            run_id=self.run_id,
            name=self.name,
            status=self.status,
            node_statuses=result.statuses if result else {},
            results=result.results if result else {},
            errors=result.errors if result else {},
            error=self.error,
            created_at=self.created_at,
            completed_at=self.completed_at,
        )


def parse_workflow_graph(nodes: list[dict[str, Any]], edges: list[dict[str, Any]]) -> WorkflowGraph:
    """Accept either the canvas representation or the node/edge model form."""
    if any("data" in node for node in nodes):
        return WorkflowGraph.from_canvas(nodes, edges)
    return WorkflowGraph.model_validate({"nodes": nodes, "edges": edges})


class RunManager:
    """Coordinates workflow and orchestrator runs.

    Workflow runs execute in background tasks and can be cancelled.
    Orchestrator runs execute to completion inside the request.

    Attributes:
        event_bus: Event bus for run events
        run_store: Optional SQLite store for run persistence
        metrics_collector: Optional collector for token/timing metrics
    """

    def __init__(
        self,
        event_bus: EventBus,
        run_store: RunStore | None = None,
        metrics_collector: MetricsCollector | None = None,
        llm_client: LLMClient | None = None,
        deliverer: Deliverer | None = None,
        data_provider: ProjectDataProvider | None = None,
    ) -> None:
        self.event_bus = event_bus
        self.run_store = run_store
        self.metrics_collector = metrics_collector
        self.data_provider = data_provider
        self.llm_client = llm_client or self._create_llm_client()
        self.delivery = DeliveryService(
            deliverer or HttpDeliverer(event_bus=event_bus),
            event_bus=event_bus,
            metrics_collector=metrics_collector,
        )
        self._workflows: dict[str, WorkflowRunInfo] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._orchestrator_runs: set[str] = set()
        self._lock = asyncio.Lock()
        logger.info("run_manager_initialized", mock_llm=settings.use_mock_llm)

    def _create_llm_client(self) -> LLMClient:
        if settings.use_mock_llm:
            return MockLLMClient(default_response=MOCK_REPLY, event_bus=self.event_bus)
        return LLMClient(event_bus=self.event_bus, metrics_collector=self.metrics_collector)

    @staticmethod
    def _generate_run_id(prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex[:12]}"

    async def _finalize_metrics(self, run_id: str) -> None:
        """Finish the run's counters and persist them. Never raises."""
        if self.metrics_collector is None:
            return
        try:
            final_metrics = self.metrics_collector.finish(run_id)
            if final_metrics is not None and self.run_store is not None:
                await self.run_store.save_metrics(run_id, final_metrics.to_dict())
        except Exception as e:
            logger.error("finalize_run_metrics_failed", run_id=run_id, error=str(e))

    async def _publish(self, event_type: EventType, run_id: str, **data: Any) -> None:
        await self.event_bus.publish(RunEvent(type=event_type, run_id=run_id, data=data))

    @property
    def active_run_count(self) -> int:
        return len(self._tasks) + len(self._orchestrator_runs)

    # -------------------------------------------------------------------------
    # Workflow runs
    # -------------------------------------------------------------------------

    async def start_workflow(self, request: WorkflowRunRequest) -> str:
        """Validate a workflow graph and start running it in the background.

        Returns:
            The run id

        Raises:
            GraphError: The graph cannot run (no or several triggers,
                dangling edges).
            pydantic.ValidationError: A node or edge is malformed.
        """
        graph = parse_workflow_graph(request.nodes, request.edges)
        graph.validate_for_run()

        run_id = self._generate_run_id("run")
        executor = DagExecutor(
            self.llm_client,
            self.delivery,
            run_id=run_id,
            event_bus=self.event_bus,
            metrics_collector=self.metrics_collector,
        )
        info = WorkflowRunInfo(
            run_id=run_id,
            name=request.name,
            status=RunStatus.RUNNING,
            executor=executor,
            created_at=datetime.now(UTC),
        )

        async with self._lock:
            self._workflows[run_id] = info
            task = asyncio.create_task(self._run_workflow(info, graph), name=f"workflow_{run_id}")
            self._tasks[run_id] = task

            def _remove_task(t: asyncio.Task[None], rid: str = run_id) -> None:
                self._tasks.pop(rid, None)

            task.add_done_callback(_remove_task)

        logger.info("workflow_run_scheduled", run_id=run_id, nodes=len(graph.nodes))
        return run_id

    async def _run_workflow(self, info: WorkflowRunInfo, graph: WorkflowGraph) -> None:
        run_id = info.run_id
        if self.metrics_collector:
            self.metrics_collector.start(run_id)
        await self._publish(EventType.RUN_STARTED, run_id, kind="workflow", name=info.name)

        try:
            result = await info.executor.run(graph)
            async with self._lock:
                info.result = result
                info.status = _OUTCOME_STATUS[result.outcome]
                info.completed_at = datetime.now(UTC)

            if info.status == RunStatus.CANCELLED:
                await self._publish(EventType.RUN_CANCELLED, run_id)
            else:
                await self._publish(
                    EventType.RUN_COMPLETE,
                    run_id,
                    status=info.status.value,
                    executed=len(result.results),
                    errors=len(result.errors),
                    total_nodes=len(graph.nodes),
                )
        except asyncio.CancelledError:
            async with self._lock:
                info.status = RunStatus.CANCELLED
                info.completed_at = datetime.now(UTC)
            raise
        except Exception as e:
            logger.error("workflow_run_error", run_id=run_id, error=str(e))
            async with self._lock:
                info.status = RunStatus.FAILED
                info.error = str(e)
                info.completed_at = datetime.now(UTC)
            await self._publish(EventType.RUN_ERROR, run_id, error=str(e))
        finally:
            if self.run_store is not None:
                await self.run_store.save_workflow_run(info.to_detail())
            await self._finalize_metrics(run_id)
            await self.event_bus.close_run(run_id)

    def get_workflow(self, run_id: str) -> WorkflowRunInfo | None:
        return self._workflows.get(run_id)

    async def get_workflow_detail(self, run_id: str) -> WorkflowRunDetail | None:
        """Live state when the run is known in memory, otherwise the stored record."""
        info = self._workflows.get(run_id)
        if info is not None:
            return info.to_detail()
        if self.run_store is not None:
            return await self.run_store.get_workflow_run(run_id)
        return None

    async def cancel_workflow(self, run_id: str) -> RunStatus:
        """Ask a workflow run to stop before its next node.

        Raises:
            KeyError: If the run is unknown
        """
        async with self._lock:
            info = self._workflows.get(run_id)
            if info is None:
                raise KeyError(f"Run '{run_id}' not found")
            if info.status != RunStatus.RUNNING:
                logger.info("cancel_workflow_noop_terminal_state", run_id=run_id, status=info.status.value)
                return info.status
            info.executor.cancel()
        logger.info("cancel_workflow_requested", run_id=run_id)
        return info.status

    async def wait_for(self, run_id: str) -> None:
        """Wait until a background workflow run has finished."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)

    # -------------------------------------------------------------------------
    # Orchestrator runs
    # -------------------------------------------------------------------------

    async def run_orchestrator(self, request: OrchestratorRunRequest) -> OrchestratorRunResponse:
        """Run an organizational chart once and return its summary counts.

        Raises:
            HierarchyError: The hierarchy has a cycle or is too deep. The run
                is stored as failed.
        """
        run_id = self._generate_run_id("orch")
        graph = OrchestratorGraph(
            self.llm_client,
            self.delivery,
            event_bus=self.event_bus,
            store=self.run_store,
            data_provider=self.data_provider,
            metrics_collector=self.metrics_collector,
        )
        self._orchestrator_runs.add(run_id)
        if self.metrics_collector:
            self.metrics_collector.start(run_id)
        await self._publish(
            EventType.RUN_STARTED,
            run_id,
            kind="orchestrator",
            deployment_id=request.deployment_id,
            roles=len(request.roles),
            trigger_type=request.trigger_type,
        )

        try:
            result = await graph.run(request, run_id=run_id)
            response = result.to_response()
            await self._publish(EventType.RUN_COMPLETE, run_id, **response.model_dump(mode="json"))
            return response
        except HierarchyError as e:
            logger.warning("orchestrator_run_rejected", run_id=run_id, error=str(e))
            if self.run_store is not None:
                now = datetime.now(UTC)
                await self.run_store.save_orchestrator_run(
                    OrchestratorRunDetail(
                        run_id=run_id,
                        deployment_id=request.deployment_id,
                        project_id=request.project_id,
                        status=RunStatus.FAILED,
                        error=str(e),
                        created_at=now,
                        completed_at=now,
                    )
                )
            await self._publish(EventType.RUN_ERROR, run_id, error=str(e), phase="hierarchy")
            raise
        except Exception as e:
            logger.error("orchestrator_run_error", run_id=run_id, error=str(e))
            await self._publish(EventType.RUN_ERROR, run_id, error=str(e), phase="execution")
            raise
        finally:
            self._orchestrator_runs.discard(run_id)
            await self._finalize_metrics(run_id)
            await self.event_bus.close_run(run_id)

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def cleanup_all(self) -> None:
        """Cancel background workflow runs. Called on application shutdown."""
        async with self._lock:
            tasks = list(self._tasks.items())
            self._tasks.clear()

        logger.info("cleanup_all_start", run_count=len(tasks))
        for run_id, task in tasks:
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("cleanup_task_cancel_failed", run_id=run_id, error=str(e))
        logger.info("cleanup_all_complete")
