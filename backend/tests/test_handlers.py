"""Tests for workflow/handlers.py -- per-kind node execution and conditions."""

from unittest.mock import AsyncMock

import pytest

from agents.utils import MockLLMClient, UpstreamError
from tests.conftest import RecordingDeliverer
from workflow.context import RunContext
from workflow.delivery import NOTIFICATION_DESTINATION, DeliveryService
from workflow.graph import ConditionConfig, Node
from workflow.handlers import HANDLERS, TRIGGER_MARKER, HandlerDeps, evaluate_condition

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _deps(
    llm: MockLLMClient | None = None,
    deliverer: RecordingDeliverer | None = None,
    sleep: AsyncMock | None = None,
    delay_cap_seconds: float = 30.0,
) -> HandlerDeps:
    return HandlerDeps(
        llm=llm or MockLLMClient(default_response="ok"),
        delivery=DeliveryService(deliverer or RecordingDeliverer()),
        run_id="run_test",
        delay_cap_seconds=delay_cap_seconds,
        sleep=sleep or AsyncMock(),
    )


def _context(*values: str) -> RunContext:
    context = RunContext()
    for i, value in enumerate(values):
        context.write(f"n{i}", value)
    return context


async def _run(node: Node, context: RunContext, deps: HandlerDeps):
    return await HANDLERS[node.kind](node, context, deps)


# =========================================================================
# Trigger & agent
# =========================================================================


class TestTriggerAndAgent:
    async def test_trigger_marker(self) -> None:
        outcome = await _run(Node(id="t", kind="trigger"), RunContext(), _deps())
        assert outcome.text == TRIGGER_MARKER

    async def test_agent_sees_full_context_and_template(self) -> None:
        llm = MockLLMClient(default_response="summary")
        node = Node(
            id="a",
            kind="agent",
            config={"agentName": "Summarizer", "agentInstructions": "Be brief", "promptTemplate": "Summarize"},
        )

        outcome = await _run(node, _context("first", "second"), _deps(llm=llm))

        assert outcome.text == "summary"
        call = llm.call_history[0]
        assert "Summarizer" in call["system"]
        assert "Be brief" in call["system"]
        assert "first" in call["user"] and "second" in call["user"]
        assert call["user"].endswith("Summarize")
        assert call["agent_id"] == "a"

    async def test_agent_without_context_sends_template_only(self) -> None:
        llm = MockLLMClient(default_response="x")
        node = Node(id="a", kind="agent", config={"promptTemplate": "Hello"})
        await _run(node, RunContext(), _deps(llm=llm))
        assert llm.call_history[0]["user"] == "Hello"

    async def test_agent_failure_raises(self) -> None:
        llm = MockLLMClient(responses=[UpstreamError("provider down", 502)])
        with pytest.raises(UpstreamError):
            await _run(Node(id="a", kind="agent"), RunContext(), _deps(llm=llm))


# =========================================================================
# Action & report
# =========================================================================


class TestAction:
    async def test_template_filled_with_latest_result(self) -> None:
        deliverer = RecordingDeliverer()
        node = Node(
            id="act",
            kind="action",
            config={"actionType": "email", "destination": "a@x.com", "template": "Result: {{result}}"},
        )

        outcome = await _run(node, _context("old", "new"), _deps(deliverer=deliverer))

        assert deliverer.sent == [("email", "a@x.com", "Result: new")]
        assert outcome.text == "email sent to a@x.com"

    async def test_one_delivery_per_destination(self) -> None:
        deliverer = RecordingDeliverer()
        node = Node(
            id="act",
            kind="action",
            config={"actionType": "whatsapp", "destinations": ["+1", "+2"]},
        )
        outcome = await _run(node, _context("msg"), _deps(deliverer=deliverer))
        assert [d for d, _ in deliverer.to("whatsapp")] == ["+1", "+2"]
        assert outcome.text.splitlines() == ["whatsapp sent to +1", "whatsapp sent to +2"]

    async def test_notification_defaults_to_in_app(self) -> None:
        deliverer = RecordingDeliverer()
        node = Node(id="act", kind="action", config={"actionType": "notification"})
        await _run(node, _context("done"), _deps(deliverer=deliverer))
        assert deliverer.sent == [("notification", NOTIFICATION_DESTINATION, "done")]

    async def test_missing_destination_skips(self) -> None:
        deliverer = RecordingDeliverer()
        node = Node(id="act", kind="action", config={"actionType": "email"})
        outcome = await _run(node, _context("x"), _deps(deliverer=deliverer))
        assert deliverer.sent == []
        assert "skipped" in outcome.text

    async def test_failed_delivery_is_reported_not_raised(self) -> None:
        deliverer = RecordingDeliverer(fail_destinations={"bad@x.com"})
        node = Node(
            id="act",
            kind="action",
            config={"actionType": "email", "destinations": ["bad@x.com", "good@x.com"]},
        )
        outcome = await _run(node, _context("x"), _deps(deliverer=deliverer))
        lines = outcome.text.splitlines()
        assert "failed" in lines[0]
        assert lines[1] == "email sent to good@x.com"


class TestReport:
    async def test_full_context_to_each_recipient_channel(self) -> None:
        deliverer = RecordingDeliverer()
        node = Node(
            id="r",
            kind="report",
            config={
                "reportName": "Weekly",
                "channels": ["email", "whatsapp"],
                "recipients": [
                    {"name": "Ana", "email": "ana@x.com", "phone": "+55"},
                    {"name": "Bo", "email": "bo@x.com"},
                ],
            },
        )

        outcome = await _run(node, _context("one", "two"), _deps(deliverer=deliverer))

        assert [d for d, _ in deliverer.to("email")] == ["ana@x.com", "bo@x.com"]
        assert [d for d, _ in deliverer.to("whatsapp")] == ["+55"]
        content = deliverer.sent[0][2]
        assert "one" in content and "two" in content
        assert outcome.text.startswith("Weekly")
        assert "Ana:" in outcome.text and "Bo:" in outcome.text

    async def test_no_recipients(self) -> None:
        node = Node(id="r", kind="report", config={"reportName": "Weekly", "channels": ["email"]})
        outcome = await _run(node, _context("x"), _deps())
        assert outcome.text == "Weekly: no recipients"


# =========================================================================
# Condition
# =========================================================================


class TestEvaluateCondition:
    @pytest.mark.parametrize(
        ("operator", "value", "latest", "expected"),
        [
            ("contains", "urgent", "This is URGENT", True),
            ("contains", "urgent", "calm", False),
            ("not_contains", "error", "all good", True),
            ("not_contains", "error", "an Error occurred", False),
            ("equals", "yes", "YES", True),
            ("equals", "yes", "yes!", False),
            ("gt", "10", "42 visitors", True),
            ("gt", "10", "9.5", False),
            ("lt", "10", "3", True),
            ("gt", "10", "many", False),
            ("exists", "", "anything", True),
            ("exists", "", "   ", False),
        ],
    )
    def test_operators(self, operator: str, value: str, latest: str, expected: bool) -> None:
        config = ConditionConfig(operator=operator, value=value)
        assert evaluate_condition(config, latest) is expected

    def test_field_of_json_object(self) -> None:
        config = ConditionConfig(field="score", operator="gt", value="50")
        assert evaluate_condition(config, '{"score": 80, "label": "x"}') is True
        assert evaluate_condition(config, '{"score": 20}') is False

    def test_field_missing_falls_back_to_whole_text(self) -> None:
        config = ConditionConfig(field="status", operator="contains", value="ok")
        assert evaluate_condition(config, "everything ok") is True

    async def test_handler_passes_latest_through(self) -> None:
        node = Node(id="c", kind="condition", config={"operator": "contains", "value": "go"})
        outcome = await _run(node, _context("stop", "go ahead"), _deps())
        assert outcome.branch is True
        assert outcome.text == "go ahead"


# =========================================================================
# Delay, split & merge
# =========================================================================


class TestDelay:
    async def test_converts_units(self) -> None:
        sleep = AsyncMock()
        node = Node(id="d", kind="delay", config={"amount": 0.25, "unit": "minutes"})
        outcome = await _run(node, RunContext(), _deps(sleep=sleep))
        sleep.assert_awaited_once_with(15.0)
        assert outcome.text == "Waited 0.25 minutes"

    async def test_capped(self) -> None:
        sleep = AsyncMock()
        node = Node(id="d", kind="delay", config={"amount": 2, "unit": "hours"})
        await _run(node, RunContext(), _deps(sleep=sleep, delay_cap_seconds=30.0))
        sleep.assert_awaited_once_with(30.0)

    async def test_negative_amount_waits_zero(self) -> None:
        sleep = AsyncMock()
        node = Node(id="d", kind="delay", config={"amount": -5})
        await _run(node, RunContext(), _deps(sleep=sleep))
        sleep.assert_awaited_once_with(0)


class TestSplitMerge:
    async def test_split_passes_latest(self) -> None:
        outcome = await _run(Node(id="s", kind="split"), _context("a", "b"), _deps())
        assert outcome.text == "b"

    async def test_merge_wait_all_joins_context(self) -> None:
        outcome = await _run(Node(id="m", kind="merge"), _context("a", "b"), _deps())
        assert outcome.text == "a\n\n---\n\nb"

    async def test_merge_wait_any_takes_latest(self) -> None:
        node = Node(id="m", kind="merge", config={"mergeType": "wait_any"})
        outcome = await _run(node, _context("a", "b"), _deps())
        assert outcome.text == "b"
