"""Turn free-form model output into tasks and plans.

Parsing is best-effort everywhere: ``parse_*`` helpers return None or an
empty list instead of raising, and PlanSynthesizer converts an absent plan
into SynthesisParseError so the caller can log and omit it.
"""

from datetime import date, timedelta
from typing import Any

import structlog
from pydantic import ValidationError

from agents.prompts import (
    STRATEGIC_PLAN_SYSTEM_PROMPT,
    TASKS_DELIMITER,
    build_daily_plan_system_prompt,
    build_daily_plan_user_prompt,
    build_strategic_plan_user_prompt,
)
from agents.utils import LLMClient, extract_json_array, extract_json_object
from config import settings
from models.schemas import (
    AgentResult,
    DailyAction,
    DailyPlanDay,
    OrchestratorTask,
    Role,
    RoleStatus,
    StrategicPlan,
)

logger = structlog.get_logger()

AREA_CATEGORIES = {
    "seo": "seo",
    "content": "content",
    "conteudo": "content",
    "links": "links",
    "ads": "ads",
    "technical": "technical",
    "tecnico": "technical",
    "analytics": "analytics",
    "strategy": "strategy",
    "estrategia": "strategy",
}

CATEGORY_EMOJI = {
    "seo": "🔍",
    "content": "✍️",
    "links": "🔗",
    "ads": "📣",
    "technical": "🔧",
    "analytics": "📊",
}
DEFAULT_EMOJI = "🎯"


class SynthesisParseError(Exception):
    """A plan response could not be turned into a plan."""


# ---------------------------------------------------------------------------
# Role output
# ---------------------------------------------------------------------------


def split_report_and_tasks(output: str) -> tuple[str, str]:
    """Split a role response on the first delimiter line.

    Returns (report, raw task block). The task block is empty when the
    delimiter is missing; the report is empty when nothing precedes it.
    """
    report, _, tasks = output.partition(TASKS_DELIMITER)
    return report.strip(), tasks.strip()


def parse_role_tasks(raw: str, role: Role, default_due: date) -> list[OrchestratorTask]:
    """Tasks from a role's JSON block. Entries without title, category and priority are dropped."""
    if not raw:
        return []
    items = extract_json_array(raw)
    if items is None:
        logger.warning("role_tasks_unparseable", role_id=role.id, preview=raw[:80])
        return []

    tasks = []
    for item in items:
        if not isinstance(item, dict):
            continue
        if not (item.get("title") and item.get("category") and item.get("priority")):
            continue
        try:
            tasks.append(
                OrchestratorTask(
                    title=str(item["title"]),
                    description=str(item.get("description") or ""),
                    category=str(item["category"]),
                    priority=str(item["priority"]),
                    assigned_role=item.get("assigned_role") or role.title,
                    assigned_role_emoji=item.get("assigned_role_emoji") or role.emoji,
                    due_date=item.get("due_date") or default_due,
                    success_metric=item.get("success_metric"),
                    estimated_impact=item.get("estimated_impact"),
                    metadata={"source": "role_round", "role_id": role.id},
                )
            )
        except ValidationError as e:
            logger.warning("role_task_invalid", role_id=role.id, error=str(e))
    return tasks


def format_reports(results: list[AgentResult], per_report: int, total: int) -> str:
    """Successful reports, each excerpted, joined and capped at ``total`` characters."""
    joined = "\n\n---\n\n".join(
        f"### {r.emoji} {r.title}\n{r.text[:per_report]}"
        for r in results
        if r.status == RoleStatus.SUCCESS
    )
    return joined[:total]


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


def next_business_days(start: date, count: int) -> list[date]:
    """The ``count`` weekdays strictly after ``start``."""
    days = []
    current = start
    while len(days) < count:
        current += timedelta(days=1)
        if current.weekday() < 5:
            days.append(current)
    return days


def day_label(day: date) -> str:
    return f"{day.isoformat()} ({day.strftime('%A')})"


def parse_strategic_plan(text: str) -> StrategicPlan | None:
    data = extract_json_object(text)
    if data is None:
        return None
    try:
        return StrategicPlan.model_validate(data)
    except ValidationError as e:
        logger.warning("strategic_plan_invalid", error=str(e))
        return None


def _parse_actions(raw_actions: Any) -> list[DailyAction]:
    if not isinstance(raw_actions, list):
        return []
    actions = []
    for raw in raw_actions:
        try:
            actions.append(DailyAction.model_validate(raw))
        except ValidationError:
            continue
    return actions


def _parse_day(item: dict[str, Any], override_date: date | None = None) -> DailyPlanDay | None:
    actions = _parse_actions(item.get("actions"))
    if not actions:
        return None
    data = {**item, "actions": actions}
    if override_date is not None:
        data["date"] = override_date
        data["day_name"] = override_date.strftime("%A")
    try:
        return DailyPlanDay.model_validate(data)
    except ValidationError:
        return None


def parse_daily_plan(text: str, days: list[date]) -> list[DailyPlanDay] | None:
    """Daily plan from a JSON array response.

    Days need a valid date and at least one valid action. When no item
    qualifies but some carry actions, those items are mapped in order onto
    ``days`` instead.
    """
    items = extract_json_array(text)
    if not items:
        return None
    candidates = [item for item in items if isinstance(item, dict)]

    plan = [
        day
        for item in candidates
        if item.get("date") and (day := _parse_day(item)) is not None
    ]
    if not plan:
        with_actions = [item for item in candidates if _parse_actions(item.get("actions"))]
        plan = [
            day
            for item, target in zip(with_actions, days, strict=False)
            if (day := _parse_day(item, override_date=target)) is not None
        ]
        if plan:
            logger.info("daily_plan_dates_remapped", days=len(plan))
    return plan or None


def daily_plan_to_tasks(plan: list[DailyPlanDay]) -> list[OrchestratorTask]:
    """One pending task per scheduled action, due on its day."""
    tasks = []
    for day in plan:
        for action in day.actions:
            category = AREA_CATEGORIES.get(action.area.lower(), "general")
            tasks.append(
                OrchestratorTask(
                    title=action.title,
                    description=action.description,
                    category=category,
                    priority=action.priority or "normal",
                    assigned_role=action.responsible or "Team",
                    assigned_role_emoji=CATEGORY_EMOJI.get(category, DEFAULT_EMOJI),
                    due_date=day.date,
                    success_metric=action.success_metric,
                    metadata={
                        "source": "daily_plan",
                        "day_name": day.day_name,
                        "day_theme": day.theme,
                        "scheduled_time": action.time,
                        "duration_min": action.duration_min,
                        "tools": action.tools,
                        "area": action.area,
                    },
                )
            )
    return tasks


def urgent_actions(plan: list[DailyPlanDay], per_day: int = 3, limit: int = 10) -> list[str]:
    """Headline list of urgent/high priority actions across the plan."""
    lines = []
    for day in plan:
        picked = [a for a in day.actions if a.priority.lower() in ("urgent", "high", "urgente", "alta")]
        lines.extend(f"[{day.day_name or day.date.isoformat()}] {a.title}" for a in picked[:per_day])
    return lines[:limit]


class PlanSynthesizer:
    """Runs the two plan completions and parses them."""

    def __init__(self, llm: LLMClient, model: str | None = None) -> None:
        self.llm = llm
        self.model = model or settings.synthesis_model

    async def strategic_plan(self, data_context: str, root_report: str, run_id: str) -> StrategicPlan:
        text = await self.llm.complete(
            STRATEGIC_PLAN_SYSTEM_PROMPT,
            build_strategic_plan_user_prompt(data_context, root_report),
            model=self.model,
            max_tokens=settings.strategic_plan_max_tokens,
            run_id=run_id,
            agent_id="strategic_plan",
        )
        plan = parse_strategic_plan(text)
        if plan is None:
            raise SynthesisParseError("no JSON object in strategic plan response")
        return plan

    async def daily_plan(
        self, days: list[date], data_context: str, all_reports: str, run_id: str
    ) -> list[DailyPlanDay]:
        text = await self.llm.complete(
            build_daily_plan_system_prompt(days, [day_label(d) for d in days]),
            build_daily_plan_user_prompt(data_context, all_reports),
            model=self.model,
            max_tokens=settings.daily_plan_max_tokens,
            run_id=run_id,
            agent_id="daily_plan",
        )
        plan = parse_daily_plan(text, days)
        if plan is None:
            raise SynthesisParseError(f"no usable daily plan in {len(text)} chars of output")
        return plan
