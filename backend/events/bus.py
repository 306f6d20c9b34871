"""Async event bus for run-scoped pub/sub.

Engines publish RunEvents; WebSocket handlers and other observers subscribe
per run id. Supports:
- Multiple subscribers per run
- Buffering of events published before the first subscriber connects
- History replay for late or reconnecting subscribers
- Run close signalling via a RUN_CLOSED sentinel
"""

import asyncio
import contextlib
import threading
from collections import defaultdict

import structlog

from events.types import EventType, RunEvent

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus keyed by run id.

    Events published before any subscriber connects are buffered and
    handed to the first subscriber. Every event except the close sentinel
    is also kept in a bounded per-run history for replay.

    The subscriber registry is guarded by a threading.Lock so events may
    be published from worker threads through publish_sync.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("run_123")
        >>> await bus.publish(RunEvent(type=EventType.RUN_STARTED, run_id="run_123"))
        >>> event = await queue.get()
        >>> await bus.close_run("run_123")
    """

    MAX_HISTORY_PER_RUN = 5000

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[RunEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[RunEvent]] = defaultdict(list)
        self._event_history: dict[str, list[RunEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        logger.info("event_bus_initialized")

    def subscribe(self, run_id: str) -> asyncio.Queue[RunEvent]:
        """Subscribe to events for a run.

        Buffered events for the run, if any, are delivered to the new
        queue immediately.

        Args:
            run_id: The run to subscribe to

        Returns:
            A queue receiving RunEvent objects for this run
        """
        queue: asyncio.Queue[RunEvent] = asyncio.Queue()
        buffered_events: list[RunEvent] = []

        with self._lock:
            self._subscribers[run_id].append(queue)
            subscriber_count = len(self._subscribers[run_id])
            buffered_events = self._event_buffer.pop(run_id, [])

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            run_id=run_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, run_id: str, queue: asyncio.Queue[RunEvent]) -> None:
        """Remove a subscriber queue. Unknown queues are ignored."""
        with self._lock:
            queues = self._subscribers.get(run_id)
            if not queues or queue not in queues:
                logger.warning("unsubscribe_queue_not_found", run_id=run_id)
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[run_id]
            logger.info(
                "subscriber_removed",
                run_id=run_id,
                subscriber_count=len(queues),
            )

    def _record(self, event: RunEvent) -> list[asyncio.Queue[RunEvent]]:
        """Store the event in history and return current subscribers.

        Must be called with the lock held. Buffers the event when the run
        has no subscriber yet.
        """
        if event.type != EventType.RUN_CLOSED:
            history = self._event_history[event.run_id]
            history.append(event)
            if len(history) > self.MAX_HISTORY_PER_RUN:
                self._event_history[event.run_id] = history[-self.MAX_HISTORY_PER_RUN:]

        subscribers = list(self._subscribers.get(event.run_id, []))
        if not subscribers:
            self._event_buffer[event.run_id].append(event)
        return subscribers

    async def publish(self, event: RunEvent) -> None:
        """Publish an event to all subscribers of its run.

        A subscriber that does not drain its queue within five seconds
        misses the event; other subscribers are unaffected.
        """
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        with self._lock:
            subscribers = self._record(event)

        if not subscribers:
            logger.debug("event_buffered", run_id=event.run_id, event_type=event.type.value)
            return

        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    run_id=event.run_id,
                    event_type=event.type.value,
                )

        logger.debug(
            "event_published",
            run_id=event.run_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    def publish_sync(self, event: RunEvent) -> None:
        """Publish from a non-async context.

        Puts are scheduled on the bus's event loop thread because
        asyncio.Queue is not thread-safe.
        """
        with self._lock:
            subscribers = self._record(event)
            loop = self._loop

        if not subscribers:
            return

        if loop is not None and not loop.is_closed():
            for queue in subscribers:
                with contextlib.suppress(RuntimeError):
                    loop.call_soon_threadsafe(queue.put_nowait, event)
        else:
            for queue in subscribers:
                queue.put_nowait(event)

    def get_event_history(self, run_id: str) -> list[RunEvent]:
        """Return all stored events for a run in publish order."""
        with self._lock:
            return list(self._event_history.get(run_id, []))

    async def close_run(self, run_id: str) -> None:
        """Signal every subscriber that the run has ended.

        Each subscriber queue receives a RUN_CLOSED sentinel, then the
        subscriber list and buffer are dropped. History is kept so that a
        client connecting after the run can still replay it.
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(run_id, [])
            buffer_count = len(self._event_buffer.pop(run_id, []))

        for queue in queues_to_signal:
            await queue.put(
                RunEvent(
                    type=EventType.RUN_CLOSED,
                    run_id=run_id,
                    data={"reason": "run_closed"},
                )
            )

        logger.info(
            "run_closed",
            run_id=run_id,
            subscribers_removed=len(queues_to_signal),
            buffered_events_cleared=buffer_count,
        )

    def get_subscriber_count(self, run_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(run_id, []))

    def clear_event_history(self, run_id: str) -> None:
        with self._lock:
            self._event_history.pop(run_id, None)


_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance, creating it on first call."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Drop the global EventBus instance (used by tests)."""
    global _event_bus
    with _bus_lock:
        _event_bus = None
    logger.info("event_bus_reset")
