"""One execution strategy per node kind.

Handlers never touch the graph. Their only side effects are completion
calls (agent) and deliveries (action, report). A handler signals failure by
raising; the executor turns that into a NodeExecutionError for the node.
"""

import asyncio
import json
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

import structlog

from agents.prompts import build_workflow_agent_prompt, build_workflow_agent_system_prompt
from agents.utils import LLMClient
from config import settings
from workflow.context import RunContext
from workflow.delivery import NOTIFICATION_DESTINATION, DeliveryService
from workflow.graph import (
    RESULT_PLACEHOLDER,
    ActionConfig,
    AgentConfig,
    ConditionConfig,
    ConfigModel,
    DelayConfig,
    MergeConfig,
    Node,
    NodeKind,
    ReportConfig,
    SplitConfig,
    TriggerConfig,
)

logger = structlog.get_logger()

TRIGGER_MARKER = "Workflow started"

UNIT_SECONDS = {"seconds": 1, "minutes": 60, "hours": 3600}

_LEADING_FLOAT = re.compile(r"^\s*[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")


@dataclass(frozen=True)
class NodeOutcome:
    """Text produced by a node; ``branch`` is set only by condition nodes."""

    text: str
    branch: bool | None = None


@dataclass
class HandlerDeps:
    """Collaborators available to handlers during one run."""

    llm: LLMClient
    delivery: DeliveryService
    run_id: str
    delay_cap_seconds: float = field(default_factory=lambda: settings.delay_cap_seconds)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


C = TypeVar("C", bound=ConfigModel)


class NodeHandler(ABC, Generic[C]):
    kind: NodeKind

    async def __call__(self, node: Node, context: RunContext, deps: HandlerDeps) -> NodeOutcome:
        return await self.execute(node.config, node, context, deps)  # type: ignore[arg-type]

    @abstractmethod
    async def execute(
        self, config: C, node: Node, context: RunContext, deps: HandlerDeps
    ) -> NodeOutcome: ...


class TriggerHandler(NodeHandler[TriggerConfig]):
    kind = NodeKind.TRIGGER

    async def execute(self, config, node, context, deps):
        return NodeOutcome(TRIGGER_MARKER)


class AgentHandler(NodeHandler[AgentConfig]):
    kind = NodeKind.AGENT

    async def execute(self, config, node, context, deps):
        system = build_workflow_agent_system_prompt(config.agent_name, config.agent_instructions)
        prompt = build_workflow_agent_prompt(context.joined(), config.template)
        text = await deps.llm.complete(
            system,
            prompt,
            run_id=deps.run_id,
            agent_id=node.id,
        )
        return NodeOutcome(text)


class ActionHandler(NodeHandler[ActionConfig]):
    """Fill the template with the latest result and deliver it per destination."""

    kind = NodeKind.ACTION

    async def execute(self, config, node, context, deps):
        template = config.template or RESULT_PLACEHOLDER
        content = template.replace(RESULT_PLACEHOLDER, context.latest())

        destinations = config.all_destinations
        if not destinations and config.action_type == "notification":
            destinations = [NOTIFICATION_DESTINATION]
        if not destinations:
            return NodeOutcome(f"{config.action_type} skipped: no destination configured")

        acks = []
        for destination in destinations:
            receipt = await deps.delivery.send(
                config.action_type, destination, content, run_id=deps.run_id
            )
            acks.append(receipt.ack)
        return NodeOutcome("\n".join(acks))


class ReportHandler(NodeHandler[ReportConfig]):
    """Deliver the whole run context to every channel/recipient pair."""

    kind = NodeKind.REPORT

    async def execute(self, config, node, context, deps):
        template = config.template or RESULT_PLACEHOLDER
        content = template.replace(RESULT_PLACEHOLDER, context.joined())

        acks = []
        for recipient in config.recipients:
            sent = []
            for channel in config.channels:
                address = recipient.email if channel == "email" else recipient.phone
                if not address:
                    continue
                receipt = await deps.delivery.send(channel, address, content, run_id=deps.run_id)
                sent.append(receipt.ack)
            name = recipient.name or recipient.email or recipient.phone or "recipient"
            acks.append(f"{name}: {'; '.join(sent) if sent else 'no matching channel'}")

        if not acks:
            return NodeOutcome(f"{config.report_name}: no recipients")
        return NodeOutcome(f"{config.report_name}\n" + "\n".join(acks))


def _parse_leading_float(text: str) -> float | None:
    match = _LEADING_FLOAT.match(text)
    return float(match.group(0)) if match else None


def _condition_subject(config: ConditionConfig, latest: str) -> str:
    """The field's value when the latest result is a JSON object holding it."""
    if config.field:
        try:
            parsed = json.loads(latest)
        except json.JSONDecodeError:
            return latest
        if isinstance(parsed, dict) and config.field in parsed:
            value = parsed[config.field]
            return value if isinstance(value, str) else json.dumps(value)
    return latest


def evaluate_condition(config: ConditionConfig, latest: str) -> bool:
    """Case-insensitive comparison of the latest result against ``value``."""
    target = _condition_subject(config, latest).lower()
    expected = (config.value or "").lower()

    match config.operator:
        case "contains":
            return expected in target
        case "not_contains":
            return expected not in target
        case "equals":
            return target == expected
        case "gt" | "lt":
            left, right = _parse_leading_float(target), _parse_leading_float(expected)
            if left is None or right is None:
                return False
            return left > right if config.operator == "gt" else left < right
        case "exists":
            return len(target.strip()) > 0
        case _:
            return True


class ConditionHandler(NodeHandler[ConditionConfig]):
    kind = NodeKind.CONDITION

    async def execute(self, config, node, context, deps):
        latest = context.latest()
        return NodeOutcome(latest, branch=evaluate_condition(config, latest))


class DelayHandler(NodeHandler[DelayConfig]):
    kind = NodeKind.DELAY

    async def execute(self, config, node, context, deps):
        amount = config.effective_amount
        unit = config.effective_unit
        seconds = max(amount * UNIT_SECONDS[unit], 0)
        await deps.sleep(min(seconds, deps.delay_cap_seconds))
        return NodeOutcome(f"Waited {amount:g} {unit}")


class SplitHandler(NodeHandler[SplitConfig]):
    kind = NodeKind.SPLIT

    async def execute(self, config, node, context, deps):
        return NodeOutcome(context.latest())


class MergeHandler(NodeHandler[MergeConfig]):
    kind = NodeKind.MERGE

    async def execute(self, config, node, context, deps):
        if config.merge_type == "wait_any":
            return NodeOutcome(context.latest())
        return NodeOutcome(context.joined())


HANDLERS: dict[NodeKind, NodeHandler] = {
    handler.kind: handler
    for handler in (
        TriggerHandler(),
        AgentHandler(),
        ActionHandler(),
        ReportHandler(),
        ConditionHandler(),
        DelayHandler(),
        SplitHandler(),
        MergeHandler(),
    )
}

_missing = set(NodeKind) - set(HANDLERS)
if _missing:
    raise RuntimeError(f"no handler registered for node kinds: {sorted(_missing)}")
