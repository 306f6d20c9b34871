"""WebSocket handler for real-time run event streaming.

Streams RunEvents for one run to the client (history first, then live) and
receives commands (cancel, ping) from it.
"""

import asyncio
import contextlib
from typing import TYPE_CHECKING

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events import EventType, RunEvent, get_event_bus

if TYPE_CHECKING:
    from run_manager import RunManager

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

_run_manager: "RunManager | None" = None

# A run that has published one of these will not publish anything else.
TERMINAL_EVENTS = {EventType.RUN_COMPLETE, EventType.RUN_ERROR, EventType.RUN_CANCELLED}


def set_run_manager(manager: "RunManager") -> None:
    """Set the run manager used by WebSocket command handlers."""
    global _run_manager
    _run_manager = manager
    logger.info("websocket_run_manager_configured")


def get_run_manager() -> "RunManager":
    if _run_manager is None:
        raise RuntimeError(
            "RunManager not configured for WebSocket handlers. "
            "Call set_run_manager() during startup."
        )
    return _run_manager


@websocket_router.websocket("/ws/{run_id}")
async def websocket_endpoint(websocket: WebSocket, run_id: str) -> None:
    """Stream a run's events and accept commands.

    - Server -> Client: RunEvents (node status, role lifecycle, deliveries...)
    - Client -> Server: {"type": "cancel"} or {"type": "ping"}
    """
    await websocket.accept()
    logger.info("websocket_connected", run_id=run_id)

    event_bus = get_event_bus()

    # Subscribe before reading history so nothing published in between is lost.
    queue = event_bus.subscribe(run_id)

    try:
        last_replay_timestamp: float = 0.0
        finished = False
        history = event_bus.get_event_history(run_id)
        if history:
            logger.info("replaying_event_history", run_id=run_id, event_count=len(history))
            for event in history:
                try:
                    await websocket.send_json(event.model_dump(mode="json"))
                except WebSocketDisconnect:
                    logger.info("websocket_disconnect_during_replay", run_id=run_id)
                    return
                last_replay_timestamp = event.timestamp
                finished = finished or event.type in TERMINAL_EVENTS

        if finished:
            logger.info("websocket_run_already_finished", run_id=run_id)
            await websocket.close()
            return

        async def send_events() -> None:
            """Forward live events, skipping any already sent during replay."""
            try:
                while True:
                    event = await queue.get()
                    if event.type == EventType.RUN_CLOSED:
                        logger.info("run_closed_sentinel", run_id=run_id)
                        break
                    if event.timestamp <= last_replay_timestamp:
                        continue
                    await websocket.send_json(event.model_dump(mode="json"))
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", run_id=run_id)

        async def receive_commands() -> None:
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", run_id=run_id)
                        continue
                    command_type = data.get("type")
                    logger.info("command_received", run_id=run_id, command_type=command_type)

                    if command_type == "cancel":
                        await handle_cancel_command(run_id)
                    elif command_type == "ping":
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    else:
                        logger.warning("unknown_command", run_id=run_id, command_type=command_type)
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", run_id=run_id)

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        done, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for task in done:
            if task.exception() is not None:
                logger.error("websocket_task_error", run_id=run_id, error=str(task.exception()))

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", run_id=run_id)
    finally:
        event_bus.unsubscribe(run_id, queue)
        logger.info("websocket_cleanup_complete", run_id=run_id)


async def handle_cancel_command(run_id: str) -> None:
    """Cancel a workflow run on behalf of a WebSocket client.

    Unknown runs (including orchestrator runs, which cannot be cancelled)
    get a RUN_ERROR event on their stream.
    """
    run_manager = get_run_manager()
    event_bus = get_event_bus()

    try:
        await run_manager.cancel_workflow(run_id)
    except KeyError:
        logger.warning("cancel_command_run_not_found", run_id=run_id)
        await event_bus.publish(
            RunEvent(
                type=EventType.RUN_ERROR,
                run_id=run_id,
                data={"error": f"Run {run_id} not found", "phase": "cancellation"},
            )
        )
