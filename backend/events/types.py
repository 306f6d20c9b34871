"""Event type definitions for workflow and orchestrator runs.

Every meaningful state change of a run produces an event. Callers (the
WebSocket layer, loggers, tests) subscribe to these instead of the engines
reaching into any presentation code.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types emitted by the execution engines.

    Events are categorized by:
    - Run lifecycle: start, completion, cancellation and error states
    - Workflow nodes: per-node status transitions
    - Orchestrator roles: per-role lifecycle, refinement and synthesis
    - Delivery: outbound message acknowledgements and failures
    - Observability: LLM call metrics
    """

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETE = "run_complete"
    RUN_ERROR = "run_error"
    RUN_CANCELLED = "run_cancelled"
    RUN_CLOSED = "run_closed"

    # Workflow nodes
    NODE_STATUS = "node_status"

    # Orchestrator roles
    ROLE_STARTED = "role_started"
    ROLE_COMPLETE = "role_complete"
    ROLE_ERROR = "role_error"
    REFINEMENT_COMPLETE = "refinement_complete"
    TASKS_EXTRACTED = "tasks_extracted"
    PLAN_SYNTHESIZED = "plan_synthesized"

    # Delivery
    DELIVERY_SENT = "delivery_sent"
    DELIVERY_FAILED = "delivery_failed"

    # Observability
    LLM_CALL_COMPLETE = "llm_call_complete"


class RunEvent(BaseModel):
    """An event emitted during a run.

    Payload schemas by event type:

    NODE_STATUS:
        - node_id: str - Node whose status changed
        - status: str - idle, running, success or error
        - result: Optional[str] - Produced text on success
        - error: Optional[str] - Failure message on error

    ROLE_COMPLETE / ROLE_ERROR:
        - title: str - Role title
        - status: str - success or error
        - preview: str - First characters of the report

    TASKS_EXTRACTED:
        - count: int - Number of valid tasks parsed for the role

    PLAN_SYNTHESIZED:
        - kind: str - strategic or daily
        - present: bool - Whether parsing produced a plan

    DELIVERY_SENT / DELIVERY_FAILED:
        - channel: str - email, whatsapp, webhook or notification
        - destination: str - Recipient address
        - error: Optional[str] - Failure message

    LLM_CALL_COMPLETE:
        - model: str - Model used
        - input_tokens: int - Input token count
        - output_tokens: int - Output token count
        - latency_ms: int - Latency in milliseconds
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    run_id: str
    node_id: str | None = None
    role_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "node_status",
                    "timestamp": 1699876543.123,
                    "run_id": "run_abc123",
                    "node_id": "agent-1",
                    "data": {"node_id": "agent-1", "status": "running"},
                }
            ]
        }
    }


class LLMMetrics(BaseModel):
    """Token and latency metrics for a single LLM call."""

    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used in this call."""
        return self.input_tokens + self.output_tokens
