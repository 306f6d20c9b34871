"""Typed node/edge model for user-authored workflow graphs.

Nodes carry a kind-specific config model. Config models accept unknown keys
and dump only the keys they were given, so a graph loaded from the canvas
representation serializes back to it without loss.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from workflow.errors import DanglingEdgeError, DuplicateTriggerError, NoTriggerError

RESULT_PLACEHOLDER = "{{result}}"


class NodeKind(StrEnum):
    TRIGGER = "trigger"
    AGENT = "agent"
    ACTION = "action"
    REPORT = "report"
    CONDITION = "condition"
    DELAY = "delay"
    SPLIT = "split"
    MERGE = "merge"


class ConfigModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        frozen=True,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)


class TriggerConfig(ConfigModel):
    trigger_type: Literal["manual", "schedule", "webhook", "event"] = "manual"
    cron_expression: str | None = None
    event_name: str | None = None


class AgentConfig(ConfigModel):
    agent_name: str = "Agent"
    agent_instructions: str = ""
    prompt_template: str = ""
    # older canvases store the template under "prompt"
    prompt: str = ""
    emoji: str = ""

    @property
    def template(self) -> str:
        return self.prompt_template or self.prompt


class ActionConfig(ConfigModel):
    action_type: Literal["email", "whatsapp", "webhook", "notification"] = "notification"
    destination: str | None = None
    destinations: list[str] = Field(default_factory=list)
    template: str | None = None

    @property
    def all_destinations(self) -> list[str]:
        found = [d for d in [self.destination, *self.destinations] if d]
        return list(dict.fromkeys(found))


class Recipient(ConfigModel):
    name: str = ""
    email: str | None = None
    phone: str | None = None


class ReportConfig(ConfigModel):
    report_name: str = "Report"
    channels: list[Literal["email", "whatsapp"]] = Field(default_factory=list)
    recipients: list[Recipient] = Field(default_factory=list)
    template: str | None = None


class ConditionConfig(ConfigModel):
    field: str = ""
    operator: Literal["contains", "not_contains", "equals", "gt", "lt", "exists"] = "contains"
    value: str = ""


class DelayConfig(ConfigModel):
    amount: float | None = None
    unit: Literal["seconds", "minutes", "hours"] | None = None
    # older canvases
    delay_seconds: float | None = None
    delay_unit: Literal["seconds", "minutes", "hours"] | None = None

    @property
    def effective_amount(self) -> float:
        if self.amount is not None:
            return self.amount
        return self.delay_seconds or 0.0

    @property
    def effective_unit(self) -> str:
        return self.unit or self.delay_unit or "seconds"


class SplitConfig(ConfigModel):
    split_type: Literal["parallel", "round_robin"] = "parallel"


class MergeConfig(ConfigModel):
    merge_type: Literal["wait_all", "wait_any"] = "wait_all"


NodeConfig = (
    TriggerConfig
    | AgentConfig
    | ActionConfig
    | ReportConfig
    | ConditionConfig
    | DelayConfig
    | SplitConfig
    | MergeConfig
)

CONFIG_MODELS: dict[NodeKind, type[ConfigModel]] = {
    NodeKind.TRIGGER: TriggerConfig,
    NodeKind.AGENT: AgentConfig,
    NodeKind.ACTION: ActionConfig,
    NodeKind.REPORT: ReportConfig,
    NodeKind.CONDITION: ConditionConfig,
    NodeKind.DELAY: DelayConfig,
    NodeKind.SPLIT: SplitConfig,
    NodeKind.MERGE: MergeConfig,
}


class Node(BaseModel):
    """One unit of work. ``config`` is always the model for ``kind``."""

    model_config = ConfigDict(frozen=True, extra="allow")

    id: str
    kind: NodeKind
    label: str = ""
    config: NodeConfig

    @model_validator(mode="before")
    @classmethod
    def _coerce_config(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        kind = NodeKind(data.get("kind"))
        config = data.get("config") or {}
        expected = CONFIG_MODELS[kind]
        if not isinstance(config, expected):
            raw = config.to_wire() if isinstance(config, ConfigModel) else config
            config = expected.model_validate(raw)
        return {**data, "kind": kind, "config": config}


class Edge(BaseModel):
    """Directed link. ``source_handle`` picks a condition branch (``"true"`` / ``"false"``)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="allow",
    )

    id: str
    source_node_id: str
    target_node_id: str
    source_handle: str | None = None


_CANVAS_EDGE_KEYS = ("id", "source", "target", "sourceHandle")


class WorkflowGraph(BaseModel):
    """Nodes plus directed edges. Cycles are the author's responsibility."""

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    def node(self, node_id: str) -> Node:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(node_id)

    def outgoing(self, node_id: str, handle: str | None = None) -> list[Edge]:
        """Edges leaving ``node_id``, optionally only those on ``handle``."""
        return [
            e
            for e in self.edges
            if e.source_node_id == node_id and (handle is None or e.source_handle == handle)
        ]

    def trigger(self) -> Node:
        triggers = [n for n in self.nodes if n.kind == NodeKind.TRIGGER]
        if not triggers:
            raise NoTriggerError()
        if len(triggers) > 1:
            raise DuplicateTriggerError([n.id for n in triggers])
        return triggers[0]

    def validate_for_run(self) -> Node:
        """Check the graph can start and return its trigger.

        Raises:
            NoTriggerError, DuplicateTriggerError, DanglingEdgeError
        """
        trigger = self.trigger()
        known = {n.id for n in self.nodes}
        for edge in self.edges:
            for endpoint in (edge.source_node_id, edge.target_node_id):
                if endpoint not in known:
                    raise DanglingEdgeError(edge.id, endpoint)
        return trigger

    @classmethod
    def from_canvas(
        cls, nodes: list[dict[str, Any]], edges: list[dict[str, Any]]
    ) -> "WorkflowGraph":
        """Build a graph from persisted canvas nodes and edges.

        Canvas nodes look like ``{id, type, position, data: {label, nodeType,
        config}}``, edges ``{id, source, target, sourceHandle}``. Every key
        other than the ones modelled here is kept on the node or edge and
        written back by ``to_canvas``; an edge without an id gets one here but
        is written back without it.
        """
        parsed_nodes = []
        for raw in nodes:
            data = dict(raw.get("data") or {})
            kind = data.pop("nodeType", None) or raw.get("type")
            extras = {k: v for k, v in raw.items() if k not in ("id", "data")}
            parsed_nodes.append(
                Node(
                    id=raw["id"],
                    kind=kind,
                    label=data.pop("label", ""),
                    config=data.pop("config", {}),
                    canvas_extra=extras,
                    data_extra=data,
                )
            )

        parsed_edges = [
            Edge(
                id=raw.get("id") or f"{raw['source']}->{raw['target']}",
                source_node_id=raw["source"],
                target_node_id=raw["target"],
                source_handle=raw.get("sourceHandle"),
                canvas_extra={
                    k: v
                    for k, v in raw.items()
                    if k not in _CANVAS_EDGE_KEYS or (k in ("id", "sourceHandle") and not v)
                },
                generated_id=not raw.get("id"),
            )
            for raw in edges
        ]
        return cls(nodes=parsed_nodes, edges=parsed_edges)

    def to_canvas(self) -> dict[str, list[dict[str, Any]]]:
        nodes = []
        for node in self.nodes:
            extra = node.model_extra or {}
            data = {
                **extra.get("data_extra", {}),
                "label": node.label,
                "nodeType": node.kind.value,
                "config": node.config.to_wire(),
            }
            nodes.append({"id": node.id, **extra.get("canvas_extra", {}), "data": data})

        edges = []
        for edge in self.edges:
            extra = edge.model_extra or {}
            wire: dict[str, Any] = {} if extra.get("generated_id") else {"id": edge.id}
            wire["source"] = edge.source_node_id
            wire["target"] = edge.target_node_id
            if edge.source_handle is not None:
                wire["sourceHandle"] = edge.source_handle
            edges.append({**wire, **extra.get("canvas_extra", {})})
        return {"nodes": nodes, "edges": edges}
