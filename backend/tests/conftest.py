"""Shared test fixtures for backend tests.

Provides a fresh EventBus, scripted LLM clients, a recording deliverer and
a temporary RunStore so tests never touch a real LLM provider, relay or
network endpoint.
"""

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from workflow.graph import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.utils import LLMResponse, MockLLMClient, MockReply  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import RunEvent  # noqa: E402
from models.database import RunStore  # noqa: E402
from models.schemas import Role  # noqa: E402
from rate_limiter import reset_rate_limiter  # noqa: E402
from workflow.delivery import DeliveryError, DeliveryService  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    reset_rate_limiter()
    return EventBus()


def collect_events(event_bus: EventBus, run_id: str) -> list[RunEvent]:
    """All events published for a run so far, in publish order."""
    return event_bus.get_event_history(run_id)


# ---------------------------------------------------------------------------
# Mock LLM helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_llm_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set USE_MOCK_LLM=true in the environment."""
    monkeypatch.setenv("USE_MOCK_LLM", "true")


class RoutingMockLLMClient(MockLLMClient):
    """Mock LLM that routes replies by ``agent_id``.

    Orchestrator refinement and plan synthesis run concurrently on one
    client, so replies are keyed by the caller instead of call order.

    Args:
        response_map: agent_id -> reply (or list of replies consumed in
            order). ``"default"`` answers any other agent_id.
    """

    def __init__(self, response_map: dict[str, MockReply | list[MockReply]], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._response_map = {
            key: list(value) if isinstance(value, list) else [value]
            for key, value in response_map.items()
        }

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        run_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        key = agent_id if agent_id in self._response_map else "default"
        replies = self._response_map.get(key)
        if replies:
            # the last reply repeats once the list is used up
            reply = replies.pop(0) if len(replies) > 1 else replies[0]
            self.responder = lambda _s, _u, r=reply: r
        else:
            self.responder = None
        return await super().call(
            messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            run_id=run_id,
            agent_id=agent_id,
        )


@pytest.fixture()
def mock_llm() -> Callable[..., MockLLMClient]:
    """Factory for a scripted MockLLMClient."""

    def _make(*responses: MockReply, default: str | None = None, **kwargs: Any) -> MockLLMClient:
        return MockLLMClient(responses=list(responses), default_response=default, **kwargs)

    return _make


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


class RecordingDeliverer:
    """Deliverer that records every message and fails for chosen destinations."""

    def __init__(self, fail_destinations: set[str] | None = None) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail_destinations = fail_destinations or set()

    async def deliver(self, channel: str, destination: str, content: str) -> str:
        if destination in self.fail_destinations:
            raise DeliveryError(channel, destination, "relay refused the message")
        self.sent.append((channel, destination, content))
        return f"{channel} sent to {destination}"

    def to(self, channel: str) -> list[tuple[str, str]]:
        return [(dest, content) for ch, dest, content in self.sent if ch == channel]


@pytest.fixture()
def deliverer() -> RecordingDeliverer:
    return RecordingDeliverer()


@pytest.fixture()
def delivery(deliverer: RecordingDeliverer, event_bus: EventBus) -> DeliveryService:
    return DeliveryService(deliverer, event_bus=event_bus)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


@pytest.fixture()
async def run_store(tmp_path: Path) -> RunStore:
    store = RunStore(str(tmp_path / "runs.db"))
    await store.init()
    return store


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def make_role(role_id: str, title: str | None = None, emoji: str = "", **kwargs: Any) -> Role:
    return Role(id=role_id, title=title or role_id.upper(), emoji=emoji, **kwargs)


def canvas_node(node_id: str, node_type: str, config: dict[str, Any] | None = None, label: str = "") -> dict:
    """A node in the persisted canvas representation."""
    return {
        "id": node_id,
        "type": node_type,
        "position": {"x": 0, "y": 0},
        "data": {"label": label or node_id, "nodeType": node_type, "config": config or {}},
    }


def canvas_edge(source: str, target: str, handle: str | None = None) -> dict:
    edge = {"id": f"{source}-{target}", "source": source, "target": target}
    if handle is not None:
        edge["sourceHandle"] = handle
    return edge
