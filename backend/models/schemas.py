"""Pydantic schemas for the orchestrator domain and the HTTP API.

Wire models accept both camelCase and snake_case keys and serialize to
camelCase, matching the JSON the canvas and dashboard exchange.
"""

from datetime import date, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Status enums
# ---------------------------------------------------------------------------


class RunStatus(StrEnum):
    """Lifecycle of a workflow or orchestrator run."""

    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


class NodeStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class RoleStatus(StrEnum):
    SUCCESS = "success"
    ERROR = "error"


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"


# ---------------------------------------------------------------------------
# Organization
# ---------------------------------------------------------------------------


class RoleRoutine(WireModel):
    """What a role does on each run."""

    frequency: str = "daily"
    tasks: list[str] = Field(default_factory=list)
    data_sources: list[str] = Field(default_factory=list)
    outputs: list[str] = Field(default_factory=list)
    autonomous_actions: list[str] = Field(default_factory=list)


class Role(WireModel):
    """A configured AI persona positioned in the reporting hierarchy."""

    id: str
    title: str
    emoji: str = ""
    instructions: str = ""
    routine: RoleRoutine = Field(default_factory=RoleRoutine)
    whatsapp: str | None = Field(
        default=None,
        description="Phone number that receives the executive summary (root role only)",
    )


class AgentResult(WireModel):
    """Outcome of one role in one orchestrator run. Never mutated."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    role_id: str
    title: str
    emoji: str = ""
    status: RoleStatus
    text: str
    started_at: datetime
    completed_at: datetime


class OrchestratorTask(WireModel):
    """Follow-up work synthesized from a role report or the daily plan."""

    id: int | None = None
    run_id: str | None = None
    title: str
    description: str = ""
    category: str = "general"
    priority: str = "normal"
    assigned_role: str = ""
    assigned_role_emoji: str = ""
    due_date: date | None = None
    success_metric: str | None = None
    estimated_impact: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Project data
# ---------------------------------------------------------------------------


class SearchRow(BaseModel):
    """One search-performance row (a query or a URL) over the reporting window."""

    query: str | None = None
    url: str | None = None
    clicks: int = 0
    impressions: int = 0
    position: float | None = None
    ctr: float | None = None

    @property
    def click_rate(self) -> float:
        if self.ctr is not None:
            return self.ctr
        return self.clicks / (self.impressions or 1)


class ProjectSnapshot(WireModel):
    """Project data handed to roles. Empty when nothing is synced yet."""

    search_rows: list[SearchRow] = Field(default_factory=list)
    analytics_summary: str = ""


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class PlanModel(BaseModel):
    """Base for LLM-authored plan JSON: unknown keys kept, numbers accepted as text."""

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)


class KpiWatch(PlanModel):
    metric: str = ""
    target: str = ""
    current: str = ""


class StrategicPlan(PlanModel):
    """Weekly plan written by the root role."""

    week_theme: str = ""
    top_goals: list[str] = Field(default_factory=list)
    daily_focus: dict[str, str] = Field(default_factory=dict)
    kpis_to_watch: list[KpiWatch] = Field(default_factory=list)
    risk_alert: str = ""
    quick_wins: list[str] = Field(default_factory=list)


class KpiTarget(PlanModel):
    metric: str = ""
    target: str = ""
    area: str = ""


class DailyAction(PlanModel):
    time: str | None = None
    title: str
    description: str = ""
    area: str = ""
    priority: str = "normal"
    duration_min: float | None = None
    responsible: str = ""
    success_metric: str | None = None
    status: str = "scheduled"
    tools: list[str] = Field(default_factory=list)


class DailyPlanDay(PlanModel):
    date: date
    day_name: str = ""
    theme: str = ""
    areas_covered: list[str] = Field(default_factory=list)
    kpi_targets: list[KpiTarget] = Field(default_factory=list)
    actions: list[DailyAction] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# API: orchestrator
# ---------------------------------------------------------------------------


class OrchestratorRunRequest(WireModel):
    """Run an organizational chart once."""

    deployment_id: str
    project_id: str
    owner_id: str
    roles: list[Role] = Field(min_length=1)
    hierarchy: dict[str, str] = Field(
        default_factory=dict,
        description="Maps child role id to parent role id",
        examples=[{"analyst": "manager", "manager": "ceo"}],
    )
    trigger_type: Literal["manual", "schedule", "event"] = "manual"
    project_data: ProjectSnapshot | None = Field(
        default=None,
        description="Inline project data; when absent the configured provider is asked",
    )


class OrchestratorRunResponse(WireModel):
    run_id: str
    status: RunStatus
    results_count: int
    success_count: int
    tasks_created: int
    daily_tasks_created: int
    squad_refinements: int
    has_strategic_plan: bool
    daily_plan_days: int


class OrchestratorRunDetail(WireModel):
    run_id: str
    deployment_id: str
    project_id: str
    status: RunStatus
    agent_results: list[AgentResult] = Field(default_factory=list)
    summary: str = ""
    delivery_status: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class TaskStatusUpdate(BaseModel):
    status: TaskStatus


# ---------------------------------------------------------------------------
# API: workflows
# ---------------------------------------------------------------------------


class WorkflowRunRequest(BaseModel):
    """A workflow graph, either in canvas form or in node/edge model form."""

    nodes: list[dict[str, Any]] = Field(min_length=1)
    edges: list[dict[str, Any]] = Field(default_factory=list)
    name: str = "workflow"


class WorkflowRunResponse(WireModel):
    run_id: str
    websocket_url: str = Field(examples=["/ws/run_abc123"])
    status: RunStatus


class WorkflowRunDetail(WireModel):
    run_id: str
    name: str
    status: RunStatus
    node_statuses: dict[str, NodeStatus] = Field(default_factory=dict)
    results: dict[str, str] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)
    error: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded", "unhealthy"] = "healthy"
    version: str = "0.1.0"
    active_runs: int = 0
