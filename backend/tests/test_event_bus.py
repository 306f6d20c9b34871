"""Tests for events/bus.py -- async pub/sub event bus.

Covers publish/subscribe, buffering, history replay, the close_run
sentinel, thread-safe publish_sync and the global singleton accessor.
"""

import asyncio
import threading

from events.bus import EventBus, get_event_bus, reset_event_bus
from events.types import EventType, RunEvent

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(
    run_id: str = "run_test",
    event_type: EventType = EventType.NODE_STATUS,
) -> RunEvent:
    return RunEvent(
        type=event_type,
        run_id=run_id,
        node_id="agent-1",
        data={"node_id": "agent-1", "status": "running"},
    )


# =========================================================================
# Subscribe / Publish basics
# =========================================================================


class TestSubscribePublish:
    """Basic subscribe and async publish."""

    async def test_subscribe_returns_queue(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("run_1")
        assert isinstance(queue, asyncio.Queue)

    async def test_publish_delivers_to_subscriber(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("run_1")
        await event_bus.publish(_make_event("run_1"))
        received = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert received.type == EventType.NODE_STATUS
        assert received.run_id == "run_1"

    async def test_publish_multiple_subscribers(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("run_1")
        q2 = event_bus.subscribe("run_1")
        await event_bus.publish(_make_event("run_1"))
        r1 = await asyncio.wait_for(q1.get(), timeout=1.0)
        r2 = await asyncio.wait_for(q2.get(), timeout=1.0)
        assert r1.type == r2.type == EventType.NODE_STATUS

    async def test_publish_does_not_cross_runs(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("run_1")
        q2 = event_bus.subscribe("run_2")
        await event_bus.publish(_make_event("run_1"))
        r1 = await asyncio.wait_for(q1.get(), timeout=1.0)
        assert r1.run_id == "run_1"
        assert q2.empty()


# =========================================================================
# Event Buffering
# =========================================================================


class TestEventBuffering:
    """Events published before a subscriber connects are buffered."""

    async def test_buffered_events_delivered_on_subscribe(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("run_1", EventType.RUN_STARTED))
        await event_bus.publish(_make_event("run_1", EventType.NODE_STATUS))

        queue = event_bus.subscribe("run_1")
        r1 = await asyncio.wait_for(queue.get(), timeout=1.0)
        r2 = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert r1.type == EventType.RUN_STARTED
        assert r2.type == EventType.NODE_STATUS

    async def test_buffer_cleared_after_subscribe(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("run_1"))
        q1 = event_bus.subscribe("run_1")
        assert not q1.empty()
        # A second subscriber does not get the already-delivered buffer
        q2 = event_bus.subscribe("run_1")
        assert q2.empty()


# =========================================================================
# History
# =========================================================================


class TestEventHistory:
    """Every event except the close sentinel is kept for replay."""

    async def test_history_in_publish_order(self, event_bus: EventBus) -> None:
        event_bus.subscribe("run_1")
        await event_bus.publish(_make_event("run_1", EventType.RUN_STARTED))
        await event_bus.publish(_make_event("run_1", EventType.RUN_COMPLETE))
        await event_bus.close_run("run_1")

        types = [e.type for e in event_bus.get_event_history("run_1")]
        assert types == [EventType.RUN_STARTED, EventType.RUN_COMPLETE]

    async def test_history_is_bounded(self, event_bus: EventBus) -> None:
        event_bus.MAX_HISTORY_PER_RUN = 3
        for _ in range(5):
            await event_bus.publish(_make_event("run_1"))
        assert len(event_bus.get_event_history("run_1")) == 3

    async def test_clear_history(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("run_1"))
        event_bus.clear_event_history("run_1")
        assert event_bus.get_event_history("run_1") == []

    async def test_unknown_run_has_no_history(self, event_bus: EventBus) -> None:
        assert event_bus.get_event_history("nope") == []


# =========================================================================
# Unsubscribe
# =========================================================================


class TestUnsubscribe:
    """Unsubscribe removes a specific queue from the run."""

    async def test_unsubscribe_removes_queue(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("run_1")
        event_bus.unsubscribe("run_1", queue)
        assert event_bus.get_subscriber_count("run_1") == 0

    async def test_unsubscribe_nonexistent_is_noop(self, event_bus: EventBus) -> None:
        dummy: asyncio.Queue[RunEvent] = asyncio.Queue()
        event_bus.unsubscribe("no_such_run", dummy)

    async def test_unsubscribe_wrong_queue_is_noop(self, event_bus: EventBus) -> None:
        event_bus.subscribe("run_1")
        wrong_queue: asyncio.Queue[RunEvent] = asyncio.Queue()
        event_bus.unsubscribe("run_1", wrong_queue)
        assert event_bus.get_subscriber_count("run_1") == 1

    async def test_after_unsubscribe_events_not_delivered(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("run_1")
        event_bus.unsubscribe("run_1", queue)
        await event_bus.publish(_make_event("run_1"))
        assert queue.empty()


# =========================================================================
# close_run -- sentinel
# =========================================================================


class TestCloseRun:
    """close_run sends a RUN_CLOSED sentinel and cleans up."""

    async def test_close_sends_sentinel(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("run_1")
        await event_bus.close_run("run_1")
        sentinel = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert sentinel.type == EventType.RUN_CLOSED
        assert sentinel.run_id == "run_1"

    async def test_close_removes_subscribers(self, event_bus: EventBus) -> None:
        event_bus.subscribe("run_1")
        await event_bus.close_run("run_1")
        assert event_bus.get_subscriber_count("run_1") == 0

    async def test_close_clears_buffer_but_keeps_history(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("run_1"))
        await event_bus.close_run("run_1")
        queue = event_bus.subscribe("run_1")
        assert queue.empty()
        assert len(event_bus.get_event_history("run_1")) == 1

    async def test_close_nonexistent_is_noop(self, event_bus: EventBus) -> None:
        await event_bus.close_run("no_such_run")

    async def test_close_multiple_subscribers(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("run_1")
        q2 = event_bus.subscribe("run_1")
        await event_bus.close_run("run_1")
        s1 = await asyncio.wait_for(q1.get(), timeout=1.0)
        s2 = await asyncio.wait_for(q2.get(), timeout=1.0)
        assert s1.type == EventType.RUN_CLOSED
        assert s2.type == EventType.RUN_CLOSED


# =========================================================================
# publish_sync -- thread-safe synchronous publish
# =========================================================================


class TestPublishSync:
    """publish_sync uses call_soon_threadsafe for thread safety."""

    async def test_publish_sync_delivers_event(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("run_1")
        event_bus._loop = asyncio.get_running_loop()

        event_bus.publish_sync(_make_event("run_1"))

        # call_soon_threadsafe schedules on the loop; yield once
        await asyncio.sleep(0.05)
        assert not queue.empty()
        assert queue.get_nowait().type == EventType.NODE_STATUS

    async def test_publish_sync_from_thread(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("run_1")
        event_bus._loop = asyncio.get_running_loop()
        done = threading.Event()

        def bg_publish() -> None:
            event_bus.publish_sync(_make_event("run_1"))
            done.set()

        thread = threading.Thread(target=bg_publish)
        thread.start()
        done.wait(timeout=2.0)
        thread.join(timeout=2.0)

        await asyncio.sleep(0.05)
        assert not queue.empty()
        assert queue.get_nowait().run_id == "run_1"

    async def test_publish_sync_buffers_when_no_subscribers(self, event_bus: EventBus) -> None:
        event_bus._loop = asyncio.get_running_loop()
        event_bus.publish_sync(_make_event("run_1"))

        queue = event_bus.subscribe("run_1")
        assert not queue.empty()

    async def test_publish_sync_no_loop_fallback(self, event_bus: EventBus) -> None:
        """When no event loop is cached, publish_sync falls back to put_nowait."""
        queue = event_bus.subscribe("run_1")
        event_bus._loop = None

        event_bus.publish_sync(_make_event("run_1"))

        assert not queue.empty()
        assert queue.get_nowait().type == EventType.NODE_STATUS


# =========================================================================
# Global singleton
# =========================================================================


class TestGlobalEventBus:
    """get_event_bus / reset_event_bus singleton pattern."""

    def test_get_event_bus_returns_same_instance(self) -> None:
        reset_event_bus()
        assert get_event_bus() is get_event_bus()

    def test_reset_event_bus_creates_new_instance(self) -> None:
        reset_event_bus()
        bus1 = get_event_bus()
        reset_event_bus()
        assert get_event_bus() is not bus1


class TestSubscriberInfo:
    async def test_subscriber_count(self, event_bus: EventBus) -> None:
        assert event_bus.get_subscriber_count("run_1") == 0
        event_bus.subscribe("run_1")
        assert event_bus.get_subscriber_count("run_1") == 1
        event_bus.subscribe("run_1")
        assert event_bus.get_subscriber_count("run_1") == 2
