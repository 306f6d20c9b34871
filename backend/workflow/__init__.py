"""Workflow engine: graph model, node handlers, run context and executor.

Usage:
    >>> from workflow import DagExecutor, WorkflowGraph
    >>> graph = WorkflowGraph.from_canvas(nodes, edges)
    >>> result = await DagExecutor(llm, delivery).run(graph)
"""

from workflow.context import CONTEXT_SEPARATOR, RunContext
from workflow.delivery import (
    Deliverer,
    DeliveryError,
    DeliveryReceipt,
    DeliveryService,
    HttpDeliverer,
)
from workflow.errors import (
    ContextWriteError,
    DanglingEdgeError,
    DuplicateTriggerError,
    GraphError,
    NodeExecutionError,
    NoTriggerError,
)
from workflow.executor import DagExecutor, NodeStatusEvent, WorkflowRunResult
from workflow.graph import Edge, Node, NodeKind, WorkflowGraph
from workflow.handlers import HANDLERS, NodeOutcome, evaluate_condition

__all__ = [
    # Graph
    "Edge",
    "Node",
    "NodeKind",
    "WorkflowGraph",
    # Context
    "CONTEXT_SEPARATOR",
    "RunContext",
    # Handlers
    "HANDLERS",
    "NodeOutcome",
    "evaluate_condition",
    # Delivery
    "Deliverer",
    "DeliveryError",
    "DeliveryReceipt",
    "DeliveryService",
    "HttpDeliverer",
    # Executor
    "DagExecutor",
    "NodeStatusEvent",
    "WorkflowRunResult",
    # Errors
    "ContextWriteError",
    "DanglingEdgeError",
    "DuplicateTriggerError",
    "GraphError",
    "NodeExecutionError",
    "NoTriggerError",
]
