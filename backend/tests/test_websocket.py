"""Tests for api/websocket.py -- event replay and client commands.

Uses FastAPI TestClient websockets against the global EventBus with a
mocked RunManager.
"""

from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import api.websocket as websocket_module
from api.websocket import set_run_manager, websocket_router
from events.bus import EventBus, get_event_bus, reset_event_bus
from events.types import EventType, RunEvent
from models.schemas import RunStatus


@pytest.fixture()
def bus() -> EventBus:
    reset_event_bus()
    return get_event_bus()


@pytest.fixture()
def mock_run_manager() -> MagicMock:
    mgr = MagicMock()
    mgr.cancel_workflow = AsyncMock(return_value=RunStatus.RUNNING)
    return mgr


@pytest.fixture()
def client(bus: EventBus, mock_run_manager: MagicMock) -> Generator[TestClient, None, None]:
    app = FastAPI()
    app.include_router(websocket_router)
    set_run_manager(mock_run_manager)  # type: ignore[arg-type]
    with TestClient(app) as c:
        yield c
    websocket_module._run_manager = None
    reset_event_bus()


class TestReplay:
    def test_finished_run_replayed_then_closed(self, client: TestClient, bus: EventBus) -> None:
        bus.publish_sync(RunEvent(type=EventType.RUN_STARTED, run_id="run_1"))
        bus.publish_sync(
            RunEvent(
                type=EventType.NODE_STATUS,
                run_id="run_1",
                node_id="a",
                data={"node_id": "a", "status": "success"},
            )
        )
        bus.publish_sync(RunEvent(type=EventType.RUN_COMPLETE, run_id="run_1"))

        with client.websocket_connect("/ws/run_1") as ws:
            received = [ws.receive_json()["type"] for _ in range(3)]
            assert received == ["run_started", "node_status", "run_complete"]
            with pytest.raises(WebSocketDisconnect):
                ws.receive_json()


class TestCommands:
    def test_ping(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/run_1") as ws:
            ws.send_json({"type": "ping", "timestamp": 123})
            assert ws.receive_json() == {"type": "pong", "timestamp": 123}

    def test_cancel(self, client: TestClient, mock_run_manager: MagicMock) -> None:
        with client.websocket_connect("/ws/run_1") as ws:
            ws.send_json({"type": "cancel"})
            # commands are handled in order; the pong means cancel was processed
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"
        mock_run_manager.cancel_workflow.assert_awaited_once_with("run_1")

    def test_cancel_unknown_run_reports_error(
        self, client: TestClient, mock_run_manager: MagicMock
    ) -> None:
        mock_run_manager.cancel_workflow = AsyncMock(side_effect=KeyError("run_1"))
        with client.websocket_connect("/ws/run_1") as ws:
            ws.send_json({"type": "cancel"})
            event = ws.receive_json()
        assert event["type"] == "run_error"
        assert event["data"]["phase"] == "cancellation"
