"""Run event infrastructure.

Engines publish RunEvent objects to an EventBus keyed by run id; the
WebSocket layer subscribes and forwards them to clients.

Usage:
    >>> from events import EventType, RunEvent, get_event_bus
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("run_123")
    >>> await bus.publish(RunEvent(type=EventType.RUN_STARTED, run_id="run_123"))
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    EventType,
    LLMMetrics,
    RunEvent,
)

__all__ = [
    "EventType",
    "RunEvent",
    "LLMMetrics",
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
