"""DAG executor for user-authored workflow graphs.

The walk starts at the trigger and goes depth-first along outgoing edges.
Every node runs at most once per run. Condition nodes follow only the edge
whose handle matches their verdict; split nodes walk all of their branches
concurrently and wait for them before the walk continues. A merge reached
from inside a split branch is a join point: it runs once every branch of
that split has finished.

Status changes are yielded by ``stream()`` and, when an event bus is
supplied, published as NODE_STATUS events.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Literal
from uuid import uuid4

import structlog

from agents.utils import LLMClient
from config import settings
from events.bus import EventBus
from events.types import EventType, RunEvent
from metrics import MetricsCollector
from models.schemas import NodeStatus
from workflow.context import RunContext
from workflow.delivery import DeliveryService
from workflow.errors import NodeExecutionError
from workflow.graph import Node, NodeKind, WorkflowGraph
from workflow.handlers import HANDLERS, TRIGGER_MARKER, HandlerDeps, NodeOutcome

logger = structlog.get_logger()

RunOutcome = Literal["completed", "partial", "cancelled"]


@dataclass(frozen=True)
class NodeStatusEvent:
    node_id: str
    status: NodeStatus
    result: str | None = None
    error: str | None = None


@dataclass
class WorkflowRunResult:
    """Final state of one workflow run."""

    run_id: str
    statuses: dict[str, NodeStatus] = field(default_factory=dict)
    results: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def outcome(self) -> RunOutcome:
        if self.cancelled:
            return "cancelled"
        if self.errors:
            return "partial"
        return "completed"

    def apply(self, event: NodeStatusEvent) -> None:
        self.statuses[event.node_id] = event.status
        if event.result is not None:
            self.results[event.node_id] = event.result
        if event.error is not None:
            self.errors[event.node_id] = event.error


class DagExecutor:
    """Runs one workflow graph once.

    Usage:
        >>> executor = DagExecutor(llm, delivery, event_bus=bus)
        >>> result = await executor.run(graph)
        >>> result.outcome
        'completed'
    """

    def __init__(
        self,
        llm: LLMClient,
        delivery: DeliveryService,
        run_id: str | None = None,
        event_bus: EventBus | None = None,
        metrics_collector: MetricsCollector | None = None,
        split_max_concurrency: int | None = None,
        delay_cap_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.run_id = run_id or f"run_{uuid4().hex[:12]}"
        self.event_bus = event_bus
        self.metrics_collector = metrics_collector
        self.deps = HandlerDeps(
            llm=llm,
            delivery=delivery,
            run_id=self.run_id,
            delay_cap_seconds=(
                delay_cap_seconds if delay_cap_seconds is not None else settings.delay_cap_seconds
            ),
            sleep=sleep,
        )
        self._split_limit = split_max_concurrency or settings.split_max_concurrency
        self._cancelled = False
        self.context = RunContext()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop dispatching nodes. A node already running finishes normally."""
        if not self._cancelled:
            logger.info("workflow_cancel_requested", run_id=self.run_id)
        self._cancelled = True

    async def run(self, graph: WorkflowGraph) -> WorkflowRunResult:
        result = WorkflowRunResult(run_id=self.run_id)
        async for event in self.stream(graph):
            result.apply(event)
        result.cancelled = self._cancelled
        return result

    async def stream(self, graph: WorkflowGraph) -> AsyncIterator[NodeStatusEvent]:
        """Execute ``graph`` and yield every node status change.

        Raises:
            GraphError: The graph has no single trigger or an edge points
                at an unknown node. Nothing has run yet.
        """
        trigger = graph.validate_for_run()
        self.context = RunContext()
        queue: asyncio.Queue[NodeStatusEvent | None] = asyncio.Queue()

        async def walk_all() -> None:
            try:
                for node in graph.nodes:
                    await self._emit(queue, NodeStatusEvent(node.id, NodeStatus.IDLE))
                # trigger output is reported but never enters the context
                await self._emit(
                    queue, NodeStatusEvent(trigger.id, NodeStatus.SUCCESS, result=TRIGGER_MARKER)
                )
                visited = {trigger.id}
                await self._walk(graph, self._targets(graph, trigger.id), visited, queue, None)
            finally:
                await queue.put(None)

        logger.info(
            "workflow_run_started",
            run_id=self.run_id,
            nodes=len(graph.nodes),
            edges=len(graph.edges),
        )
        task = asyncio.create_task(walk_all())
        try:
            while (event := await queue.get()) is not None:
                yield event
            await task
        finally:
            if not task.done():
                task.cancel()

        logger.info(
            "workflow_run_finished",
            run_id=self.run_id,
            cancelled=self._cancelled,
            context_size=len(self.context),
        )

    @staticmethod
    def _targets(graph: WorkflowGraph, node_id: str, handle: str | None = None) -> list[str]:
        return [edge.target_node_id for edge in graph.outgoing(node_id, handle)]

    async def _walk(
        self,
        graph: WorkflowGraph,
        node_ids: list[str],
        visited: set[str],
        queue: asyncio.Queue,
        joins: list[str] | None,
    ) -> None:
        """Depth-first walk over ``node_ids``.

        ``joins`` collects merge nodes reached inside a split branch; the
        split runs them after all of its branches return.
        """
        for node_id in node_ids:
            if self._cancelled or node_id in visited:
                continue
            node = graph.node(node_id)
            if joins is not None and node.kind == NodeKind.MERGE:
                if node_id not in joins:
                    joins.append(node_id)
                continue
            visited.add(node_id)

            outcome = await self._execute(node, queue)
            if outcome is None:
                continue

            if node.kind == NodeKind.CONDITION:
                handle = "true" if outcome.branch else "false"
                await self._walk(graph, self._targets(graph, node_id, handle), visited, queue, joins)
            elif node.kind == NodeKind.SPLIT:
                await self._fan_out(graph, node_id, visited, queue, joins)
            else:
                await self._walk(graph, self._targets(graph, node_id), visited, queue, joins)

    async def _fan_out(
        self,
        graph: WorkflowGraph,
        split_id: str,
        visited: set[str],
        queue: asyncio.Queue,
        outer_joins: list[str] | None,
    ) -> None:
        semaphore = asyncio.Semaphore(self._split_limit)
        joins: list[str] = []

        async def branch(target: str) -> None:
            async with semaphore:
                await self._walk(graph, [target], visited, queue, joins)

        targets = self._targets(graph, split_id)
        logger.debug("split_fan_out", run_id=self.run_id, node_id=split_id, branches=len(targets))
        await asyncio.gather(*(branch(target) for target in targets))

        for join_id in joins:
            if join_id in visited or self._cancelled:
                continue
            visited.add(join_id)
            outcome = await self._execute(graph.node(join_id), queue)
            if outcome is not None:
                await self._walk(graph, self._targets(graph, join_id), visited, queue, outer_joins)

    async def _execute(self, node: Node, queue: asyncio.Queue) -> NodeOutcome | None:
        """Run one node's handler and record the outcome. Returns None on failure."""
        await self._emit(queue, NodeStatusEvent(node.id, NodeStatus.RUNNING))
        handler = HANDLERS[node.kind]
        try:
            outcome = await handler(node, self.context, self.deps)
        except Exception as e:
            error = NodeExecutionError(node.id, node.kind.value, str(e) or type(e).__name__)
            logger.warning(
                "workflow_node_failed",
                run_id=self.run_id,
                node_id=node.id,
                kind=node.kind.value,
                error=str(error),
                error_type=type(e).__name__,
            )
            await self._emit(queue, NodeStatusEvent(node.id, NodeStatus.ERROR, error=str(error)))
            return None

        self.context.write(node.id, outcome.text)
        if self.metrics_collector:
            self.metrics_collector.record_node(self.run_id)
        await self._emit(queue, NodeStatusEvent(node.id, NodeStatus.SUCCESS, result=outcome.text))
        return outcome

    async def _emit(self, queue: asyncio.Queue, event: NodeStatusEvent) -> None:
        await queue.put(event)
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            RunEvent(
                type=EventType.NODE_STATUS,
                run_id=self.run_id,
                node_id=event.node_id,
                data={
                    "node_id": event.node_id,
                    "status": event.status.value,
                    "result": event.result,
                    "error": event.error,
                },
            )
        )
