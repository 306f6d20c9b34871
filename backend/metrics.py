"""In-memory metrics for active runs.

MetricsCollector accumulates LLM usage, node executions and deliveries per
run id. When a run finishes the totals are persisted through RunStore.

Usage:
    >>> collector = MetricsCollector()
    >>> collector.start("run_abc123")
    >>> collector.record_llm_call("run_abc123", prompt_tokens=100, completion_tokens=50)
    >>> final = collector.finish("run_abc123")
"""

import time
from dataclasses import asdict, dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class RunMetricsData:
    """Accumulated counters for one run.

    Attributes:
        prompt_tokens: Input tokens across all completion calls.
        completion_tokens: Output tokens across all completion calls.
        llm_calls: Number of completion calls.
        nodes_executed: Workflow nodes or orchestrator roles that ran.
        deliveries: Outbound messages attempted.
        delivery_failures: Outbound messages that failed.
        duration_ms: Wall-clock time, set by finish().
    """

    prompt_tokens: int = 0
    completion_tokens: int = 0
    llm_calls: int = 0
    nodes_executed: int = 0
    deliveries: int = 0
    delivery_failures: int = 0
    duration_ms: int = 0
    started_at: float = field(default_factory=time.time)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict[str, int]:
        """Plain dict for RunStore.save_metrics()."""
        data = asdict(self)
        data.pop("started_at")
        data["total_tokens"] = self.total_tokens
        return data


class MetricsCollector:
    """Per-run counters keyed by run id.

    Recording against a run that is not being tracked is a logged no-op,
    so engines can record unconditionally.
    """

    def __init__(self) -> None:
        self._runs: dict[str, RunMetricsData] = {}

    def start(self, run_id: str) -> None:
        self._runs.setdefault(run_id, RunMetricsData())

    def _get(self, run_id: str, what: str) -> RunMetricsData | None:
        data = self._runs.get(run_id)
        if data is None:
            logger.debug("metrics_run_not_tracked", run_id=run_id, metric=what)
        return data

    def record_llm_call(self, run_id: str, prompt_tokens: int, completion_tokens: int) -> None:
        data = self._get(run_id, "llm_call")
        if data is None:
            return
        data.prompt_tokens += prompt_tokens
        data.completion_tokens += completion_tokens
        data.llm_calls += 1

    def record_node(self, run_id: str) -> None:
        data = self._get(run_id, "node")
        if data is not None:
            data.nodes_executed += 1

    def record_delivery(self, run_id: str, ok: bool) -> None:
        data = self._get(run_id, "delivery")
        if data is None:
            return
        data.deliveries += 1
        if not ok:
            data.delivery_failures += 1

    def finish(self, run_id: str) -> RunMetricsData | None:
        """Stop tracking a run and return its final counters."""
        data = self._runs.pop(run_id, None)
        if data is None:
            logger.warning("metrics_finish_no_run", run_id=run_id)
            return None

        data.duration_ms = int((time.time() - data.started_at) * 1000)
        logger.info(
            "metrics_run_finished",
            run_id=run_id,
            total_tokens=data.total_tokens,
            llm_calls=data.llm_calls,
            nodes_executed=data.nodes_executed,
            duration_ms=data.duration_ms,
        )
        return data

    def get(self, run_id: str) -> RunMetricsData | None:
        return self._runs.get(run_id)
