"""Exceptions raised by the workflow engine.

GraphError subclasses are fatal and raised before any node runs.
NodeExecutionError is isolated to one branch of a run.
"""


class GraphError(Exception):
    """The graph cannot be run at all."""


class NoTriggerError(GraphError):
    def __init__(self) -> None:
        super().__init__("workflow has no trigger node")


class DuplicateTriggerError(GraphError):
    def __init__(self, trigger_ids: list[str]) -> None:
        super().__init__(f"workflow has {len(trigger_ids)} trigger nodes: {', '.join(trigger_ids)}")
        self.trigger_ids = trigger_ids


class DanglingEdgeError(GraphError):
    def __init__(self, edge_id: str, node_id: str) -> None:
        super().__init__(f"edge {edge_id} references unknown node {node_id}")
        self.edge_id = edge_id
        self.node_id = node_id


class NodeExecutionError(Exception):
    """A single node failed; its successors on that path are not visited."""

    def __init__(self, node_id: str, kind: str, message: str) -> None:
        super().__init__(message)
        self.node_id = node_id
        self.kind = kind


class ContextWriteError(Exception):
    """A node id was written to the run context twice."""
