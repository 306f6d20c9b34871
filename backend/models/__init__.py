"""Domain and API models."""

from models.schemas import (
    AgentResult,
    DailyAction,
    DailyPlanDay,
    HealthResponse,
    NodeStatus,
    OrchestratorRunDetail,
    OrchestratorRunRequest,
    OrchestratorRunResponse,
    OrchestratorTask,
    ProjectSnapshot,
    Role,
    RoleRoutine,
    RoleStatus,
    RunStatus,
    SearchRow,
    StrategicPlan,
    TaskStatus,
    TaskStatusUpdate,
    WorkflowRunDetail,
    WorkflowRunRequest,
    WorkflowRunResponse,
)

__all__ = [
    "AgentResult",
    "DailyAction",
    "DailyPlanDay",
    "HealthResponse",
    "NodeStatus",
    "OrchestratorRunDetail",
    "OrchestratorRunRequest",
    "OrchestratorRunResponse",
    "OrchestratorTask",
    "ProjectSnapshot",
    "Role",
    "RoleRoutine",
    "RoleStatus",
    "RunStatus",
    "SearchRow",
    "StrategicPlan",
    "TaskStatus",
    "TaskStatusUpdate",
    "WorkflowRunDetail",
    "WorkflowRunRequest",
    "WorkflowRunResponse",
]
