"""Tests for models/schemas.py -- Pydantic request/response models.

Validates model construction, the camelCase wire aliases, enum values and
validation rules.
"""

from datetime import UTC, date, datetime

import pytest
from pydantic import ValidationError

from models.schemas import (
    AgentResult,
    DailyPlanDay,
    HealthResponse,
    OrchestratorRunRequest,
    OrchestratorTask,
    Role,
    RoleStatus,
    RunStatus,
    SearchRow,
    StrategicPlan,
    TaskStatus,
    TaskStatusUpdate,
    WorkflowRunRequest,
)

# =========================================================================
# Enums
# =========================================================================


class TestEnums:
    def test_run_statuses(self) -> None:
        assert {s.value for s in RunStatus} == {"running", "completed", "partial", "failed", "cancelled"}

    def test_task_statuses(self) -> None:
        assert [s.value for s in TaskStatus] == ["pending", "in_progress", "done"]

    def test_string_coercion(self) -> None:
        assert TaskStatus("in_progress") == TaskStatus.IN_PROGRESS


# =========================================================================
# Wire aliases
# =========================================================================


class TestOrchestratorRunRequest:
    def test_camel_case_body(self) -> None:
        request = OrchestratorRunRequest.model_validate({
            "deploymentId": "dep_1",
            "projectId": "proj_1",
            "ownerId": "owner_1",
            "roles": [
                {
                    "id": "seo",
                    "title": "SEO Lead",
                    "routine": {"dataSources": ["search"], "autonomousActions": ["fix titles"]},
                }
            ],
            "hierarchy": {"seo": "ceo"},
            "triggerType": "schedule",
        })
        assert request.deployment_id == "dep_1"
        assert request.trigger_type == "schedule"
        assert request.roles[0].routine.data_sources == ["search"]
        assert request.roles[0].routine.autonomous_actions == ["fix titles"]

    def test_snake_case_accepted(self) -> None:
        request = OrchestratorRunRequest(
            deployment_id="dep_1",
            project_id="proj_1",
            owner_id="owner_1",
            roles=[Role(id="ceo", title="CEO")],
        )
        assert request.hierarchy == {}
        assert request.project_data is None

    def test_at_least_one_role(self) -> None:
        with pytest.raises(ValidationError):
            OrchestratorRunRequest(deployment_id="d", project_id="p", owner_id="o", roles=[])

    def test_unknown_trigger_type(self) -> None:
        with pytest.raises(ValidationError):
            OrchestratorRunRequest(
                deployment_id="d",
                project_id="p",
                owner_id="o",
                roles=[Role(id="ceo", title="CEO")],
                trigger_type="webhook",
            )


class TestOrchestratorTask:
    def test_defaults(self) -> None:
        task = OrchestratorTask(title="Fix titles")
        assert task.status == TaskStatus.PENDING
        assert task.category == "general"
        assert task.priority == "normal"
        assert task.metadata == {}

    def test_serializes_camel_case(self) -> None:
        task = OrchestratorTask(title="A", assigned_role="SEO", due_date=date(2026, 3, 9))
        dumped = task.model_dump(mode="json", by_alias=True)
        assert dumped["assignedRole"] == "SEO"
        assert dumped["dueDate"] == "2026-03-09"


class TestAgentResult:
    def test_frozen(self) -> None:
        now = datetime(2026, 3, 6, tzinfo=UTC)
        result = AgentResult(
            role_id="ceo", title="CEO", status=RoleStatus.SUCCESS, text="r", started_at=now, completed_at=now
        )
        with pytest.raises(ValidationError):
            result.text = "changed"  # type: ignore[misc]


# =========================================================================
# Plans and project data
# =========================================================================


class TestPlans:
    def test_strategic_plan_keeps_unknown_keys(self) -> None:
        plan = StrategicPlan.model_validate({"week_theme": "CTR", "budget": "low"})
        assert plan.model_extra == {"budget": "low"}
        assert plan.top_goals == []

    def test_daily_plan_day_requires_date(self) -> None:
        with pytest.raises(ValidationError):
            DailyPlanDay.model_validate({"actions": []})

    def test_daily_action_requires_title(self) -> None:
        with pytest.raises(ValidationError):
            DailyPlanDay.model_validate({"date": "2026-03-09", "actions": [{"area": "seo"}]})


class TestSearchRow:
    def test_click_rate_computed(self) -> None:
        assert SearchRow(clicks=5, impressions=100).click_rate == 0.05

    def test_explicit_ctr_wins(self) -> None:
        assert SearchRow(clicks=5, impressions=100, ctr=0.2).click_rate == 0.2

    def test_zero_impressions(self) -> None:
        assert SearchRow(clicks=0, impressions=0).click_rate == 0.0


# =========================================================================
# API models
# =========================================================================


class TestApiModels:
    def test_workflow_request_needs_nodes(self) -> None:
        with pytest.raises(ValidationError):
            WorkflowRunRequest(nodes=[])

    def test_task_status_update(self) -> None:
        assert TaskStatusUpdate.model_validate({"status": "done"}).status == TaskStatus.DONE
        with pytest.raises(ValidationError):
            TaskStatusUpdate.model_validate({"status": "archived"})

    def test_health_defaults(self) -> None:
        health = HealthResponse()
        assert health.status == "healthy"
        assert health.active_runs == 0

    def test_health_invalid_status(self) -> None:
        with pytest.raises(ValidationError):
            HealthResponse(status="broken")  # type: ignore[arg-type]
