"""Hierarchical role orchestrator LangGraph implementation.

Runs an organizational chart of AI roles once: every role reports in
hierarchy order (roots first), small teams refine against each other, and
the reports are synthesized into a strategic plan, a daily plan and tasks.

Graph structure:
    START -> prepare -> run_role (loop, one role per step) -> refine
                                                              |
                                        +---------------------+
                                        v                     v
                                 strategic_plan          daily_plan
                                        |                     |
                                        +------> finalize <---+ -> END

A role failure is recorded on its AgentResult and the loop moves on.
Refinement, synthesis, persistence and delivery are best effort: failures
are logged and leave the run's control flow alone.

Events emitted:
- ROLE_STARTED, ROLE_COMPLETE, ROLE_ERROR: per role
- TASKS_EXTRACTED: after a role's task block is parsed
- REFINEMENT_COMPLETE: after each successful refinement
- PLAN_SYNTHESIZED: once per plan kind, whether or not a plan came out
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any, Protocol, TypedDict
from uuid import uuid4

import structlog
from langgraph.graph import END, START, StateGraph

from agents.data_context import (
    EmptyDataProvider,
    ProjectDataProvider,
    SnapshotView,
    classify_role_domain,
    general_section,
    planning_section,
    specialist_section,
)
from agents.hierarchy import HierarchyResolver
from agents.prompts import (
    EXECUTIVE_USER_PROMPT,
    SECTION_SEPARATOR,
    build_refinement_prompts,
    build_role_system_prompt,
    build_specialist_user_prompt,
    format_peer_report,
)
from agents.synthesis import (
    PlanSynthesizer,
    daily_plan_to_tasks,
    day_label,
    format_reports,
    next_business_days,
    parse_role_tasks,
    split_report_and_tasks,
    urgent_actions,
)
from agents.utils import LLMClient, truncate
from config import settings
from events.bus import EventBus
from events.types import EventType, RunEvent
from metrics import MetricsCollector
from models.schemas import (
    AgentResult,
    DailyPlanDay,
    OrchestratorRunDetail,
    OrchestratorRunRequest,
    OrchestratorRunResponse,
    OrchestratorTask,
    Role,
    RoleStatus,
    RunStatus,
    StrategicPlan,
)
from workflow.delivery import NOTIFICATION_DESTINATION, DeliveryService

logger = structlog.get_logger()

REFINEMENT_HEADER = "**Squad refinement:**"


class AgentRoundError(Exception):
    """One role's round failed; the remaining roles still run."""

    def __init__(self, role_id: str, message: str) -> None:
        super().__init__(message)
        self.role_id = role_id


class OrchestratorStore(Protocol):
    """Storage used by the orchestrator. Implemented by ``models.database.RunStore``."""

    async def save_orchestrator_run(self, detail: OrchestratorRunDetail) -> bool: ...

    async def save_tasks(self, run_id: str, tasks: list[OrchestratorTask]) -> int: ...


# -----------------------------------------------------------------------------
# State Schema Definitions
# -----------------------------------------------------------------------------


class OrchestratorState(TypedDict):
    """State flowing through the orchestrator graph.

    Attributes:
        run_id: Run identifier for events and storage
        request: The run request as received
        resolver: Depth and peer lookups for the request's roles
        roles: Roles in execution order (roots first)
        role_index: Index of the next role to run
        results: AgentResult per role id, in completion order
        view: Derived project data for prompts
        today: Run date
        created_at: Run start time
        tasks: Tasks parsed from role reports
        tasks_created: Role tasks accepted by storage
        refinements: Number of roles whose report was refined
        strategic_plan: Parsed strategic plan, if any
        daily_plan: Parsed daily plan, if any
        daily_tasks: Tasks derived from the daily plan
        daily_tasks_created: Daily plan tasks accepted by storage
        status: Final run status
        summary: Root role report
        delivery_status: Plans and counters persisted with the run
    """

    run_id: str
    request: OrchestratorRunRequest
    resolver: HierarchyResolver
    roles: list[Role]
    role_index: int
    results: dict[str, AgentResult]
    view: SnapshotView
    today: date
    created_at: datetime
    tasks: list[OrchestratorTask]
    tasks_created: int
    refinements: int
    strategic_plan: StrategicPlan | None
    daily_plan: list[DailyPlanDay] | None
    daily_tasks: list[OrchestratorTask]
    daily_tasks_created: int
    status: RunStatus
    summary: str
    delivery_status: dict[str, Any]


@dataclass
class OrchestratorResult:
    """What one orchestrator run produced."""

    run_id: str
    status: RunStatus
    results: list[AgentResult] = field(default_factory=list)
    tasks: list[OrchestratorTask] = field(default_factory=list)
    daily_tasks: list[OrchestratorTask] = field(default_factory=list)
    tasks_created: int = 0
    daily_tasks_created: int = 0
    refinements: int = 0
    strategic_plan: StrategicPlan | None = None
    daily_plan: list[DailyPlanDay] = field(default_factory=list)
    summary: str = ""
    delivery_status: dict[str, Any] = field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.status == RoleStatus.SUCCESS)

    def to_response(self) -> OrchestratorRunResponse:
        return OrchestratorRunResponse(
            run_id=self.run_id,
            status=self.status,
            results_count=len(self.results),
            success_count=self.success_count,
            tasks_created=self.tasks_created,
            daily_tasks_created=self.daily_tasks_created,
            squad_refinements=self.refinements,
            has_strategic_plan=self.strategic_plan is not None,
            daily_plan_days=len(self.daily_plan),
        )


class OrchestratorGraph:
    """Hierarchical role orchestrator.

    Usage:
        >>> graph = OrchestratorGraph(llm_client, delivery, event_bus=bus, store=store)
        >>> result = await graph.run(request)
        >>> result.to_response().success_count
    """

    def __init__(
        self,
        llm_client: LLMClient,
        delivery: DeliveryService,
        event_bus: EventBus | None = None,
        store: OrchestratorStore | None = None,
        data_provider: ProjectDataProvider | None = None,
        metrics_collector: MetricsCollector | None = None,
        synthesis_model: str | None = None,
        today: date | None = None,
    ) -> None:
        self.llm_client = llm_client
        self.delivery = delivery
        self.event_bus = event_bus
        self.store = store
        self.data_provider = data_provider or EmptyDataProvider()
        self.metrics_collector = metrics_collector
        self.synthesis_model = synthesis_model or settings.synthesis_model
        self.synthesizer = PlanSynthesizer(llm_client, model=self.synthesis_model)
        self._today = today
        self._compiled_graph = self._build_graph()

    def _build_graph(self):
        graph = StateGraph(OrchestratorState)

        graph.add_node("prepare", self._prepare)
        graph.add_node("run_role", self._run_role)
        graph.add_node("refine", self._refine)
        graph.add_node("strategic_plan", self._strategic_plan)
        graph.add_node("daily_plan", self._daily_plan)
        graph.add_node("finalize", self._finalize)

        graph.add_edge(START, "prepare")
        graph.add_conditional_edges(
            "prepare",
            self._route_next_role,
            {"run_role": "run_role", "refine": "refine"},
        )
        graph.add_conditional_edges(
            "run_role",
            self._route_next_role,
            {"run_role": "run_role", "refine": "refine"},
        )

        # Both plans read the refined reports and run side by side.
        graph.add_edge("refine", "strategic_plan")
        graph.add_edge("refine", "daily_plan")
        graph.add_edge(["strategic_plan", "daily_plan"], "finalize")
        graph.add_edge("finalize", END)

        return graph.compile()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _emit(self, event_type: EventType, run_id: str, role_id: str | None = None, **data: Any) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            RunEvent(type=event_type, run_id=run_id, role_id=role_id, data=data)
        )

    async def _persist_tasks(self, run_id: str, tasks: list[OrchestratorTask]) -> int:
        if not tasks:
            return 0
        if self.store is None:
            return len(tasks)
        return await self.store.save_tasks(run_id, tasks)

    def _root_result(self, state: OrchestratorState) -> tuple[Role | None, AgentResult | None]:
        """First root role in execution order and its successful result, if any."""
        for role in state["roles"]:
            if state["resolver"].parent_of(role.id) is None:
                result = state["results"].get(role.id)
                if result is not None and result.status == RoleStatus.SUCCESS:
                    return role, result
                return role, None
        return None, None

    def _plan_days(self, state: OrchestratorState) -> list[date]:
        return next_business_days(state["today"], settings.daily_plan_days)

    def _planning_context(self, state: OrchestratorState) -> str:
        return planning_section(state["view"], [day_label(d) for d in self._plan_days(state)])

    # -------------------------------------------------------------------------
    # Graph nodes
    # -------------------------------------------------------------------------

    async def _prepare(self, state: OrchestratorState) -> dict[str, Any]:
        """Order the roles and load project data."""
        request = state["request"]
        roles = state["resolver"].execution_order()

        snapshot = request.project_data
        if snapshot is None:
            snapshot = await self.data_provider.snapshot(request.project_id)
        view = SnapshotView.from_snapshot(snapshot)

        if self.store is not None:
            await self.store.save_orchestrator_run(
                OrchestratorRunDetail(
                    run_id=state["run_id"],
                    deployment_id=request.deployment_id,
                    project_id=request.project_id,
                    status=RunStatus.RUNNING,
                    created_at=state["created_at"],
                )
            )

        logger.info(
            "orchestrator_prepared",
            run_id=state["run_id"],
            order=[role.id for role in roles],
            has_real_data=view.has_real_data,
        )
        return {"roles": roles, "role_index": 0, "view": view}

    def _route_next_role(self, state: OrchestratorState) -> str:
        if state.get("role_index", 0) < len(state.get("roles", [])):
            return "run_role"
        return "refine"

    def _role_prompts(self, role: Role, state: OrchestratorState) -> tuple[str, str]:
        results = state["results"]
        view = state["view"]
        is_root = state["resolver"].parent_of(role.id) is None

        superior = None
        directive = ""
        parent_id = state["resolver"].parent_of(role.id)
        if parent_id is not None:
            superior = next((r for r in state["roles"] if r.id == parent_id), None)
            parent_result = results.get(parent_id)
            if parent_result is not None and parent_result.status == RoleStatus.SUCCESS:
                directive = truncate(parent_result.text, settings.directive_excerpt_chars)

        peers = [
            format_peer_report(peer, truncate(results[peer.id].text, settings.peer_excerpt_chars))
            for peer in state["resolver"].peer_group(role.id)
            if peer.id != role.id
            and peer.id in results
            and results[peer.id].status == RoleStatus.SUCCESS
        ]
        peers_section = truncate(SECTION_SEPARATOR.join(peers), settings.peer_section_chars)

        if is_root:
            data_section = general_section(view)
        else:
            data_section = specialist_section(classify_role_domain(role.title), view)

        system = build_role_system_prompt(
            role,
            today=state["today"],
            due_date=state["today"] + timedelta(days=settings.task_due_days),
            data_section=data_section,
            has_real_data=view.has_real_data,
            superior=superior,
            superior_directive=directive,
            peers_section=peers_section,
        )
        user = EXECUTIVE_USER_PROMPT if is_root else build_specialist_user_prompt(role)
        return system, user

    async def _run_role(self, state: OrchestratorState) -> dict[str, Any]:
        """Run the role at ``role_index`` and record its AgentResult."""
        run_id = state["run_id"]
        role = state["roles"][state["role_index"]]
        started_at = datetime.now(UTC)
        await self._emit(EventType.ROLE_STARTED, run_id, role.id, title=role.title)

        new_tasks: list[OrchestratorTask] = []
        created = 0
        try:
            system, user = self._role_prompts(role, state)
            try:
                output = await self.llm_client.complete(
                    system,
                    user,
                    max_tokens=settings.role_max_tokens,
                    run_id=run_id,
                    agent_id=role.id,
                )
            except Exception as e:
                raise AgentRoundError(role.id, str(e) or type(e).__name__) from e

            report, raw_tasks = split_report_and_tasks(output)
            due = state["today"] + timedelta(days=settings.task_due_days)
            new_tasks = [
                task.model_copy(update={"run_id": run_id})
                for task in parse_role_tasks(raw_tasks, role, due)
            ]
            created = await self._persist_tasks(run_id, new_tasks)
            await self._emit(EventType.TASKS_EXTRACTED, run_id, role.id, count=len(new_tasks))

            result = AgentResult(
                role_id=role.id,
                title=role.title,
                emoji=role.emoji,
                status=RoleStatus.SUCCESS,
                text=report,
                started_at=started_at,
                completed_at=datetime.now(UTC),
            )
            await self._emit(
                EventType.ROLE_COMPLETE,
                run_id,
                role.id,
                title=role.title,
                status=result.status.value,
                preview=report[:200],
            )
        except Exception as e:
            error = e
            if not isinstance(e, AgentRoundError):
                error = AgentRoundError(role.id, str(e) or type(e).__name__)
            logger.warning(
                "orchestrator_role_failed",
                run_id=run_id,
                role_id=role.id,
                error_type=type(e.__cause__ or e).__name__,
                error=str(error),
            )
            result = AgentResult(
                role_id=role.id,
                title=role.title,
                emoji=role.emoji,
                status=RoleStatus.ERROR,
                text=str(error),
                started_at=started_at,
                completed_at=datetime.now(UTC),
            )
            await self._emit(
                EventType.ROLE_ERROR,
                run_id,
                role.id,
                title=role.title,
                status=result.status.value,
                preview=str(error)[:200],
            )

        if self.metrics_collector:
            self.metrics_collector.record_node(run_id)

        logger.info(
            "orchestrator_role_finished",
            run_id=run_id,
            role_id=role.id,
            status=result.status.value,
            tasks=len(new_tasks),
        )
        return {
            "role_index": state["role_index"] + 1,
            "results": {**state["results"], role.id: result},
            "tasks": [*state["tasks"], *new_tasks],
            "tasks_created": state["tasks_created"] + created,
        }

    async def _refine(self, state: OrchestratorState) -> dict[str, Any]:
        """Let members of each small team refine their report against each other."""
        run_id = state["run_id"]
        results = state["results"]
        if len(state["roles"]) > settings.refinement_max_roles:
            logger.info("orchestrator_refinement_skipped", run_id=run_id, roles=len(state["roles"]))
            return {"refinements": 0}

        async def refine_one(reviewer: Role, others: list[Role]) -> tuple[str, str] | None:
            own = truncate(results[reviewer.id].text, settings.peer_excerpt_chars)
            formatted = SECTION_SEPARATOR.join(
                format_peer_report(o, truncate(results[o.id].text, settings.peer_excerpt_chars))
                for o in others
            )
            try:
                system, user = build_refinement_prompts(
                    reviewer, own, truncate(formatted, settings.peer_section_chars)
                )
                text = await self.llm_client.complete(
                    system,
                    user,
                    model=self.synthesis_model,
                    max_tokens=settings.refinement_max_tokens,
                    run_id=run_id,
                    agent_id=f"refine_{reviewer.id}",
                )
            except Exception as e:
                logger.warning(
                    "orchestrator_refinement_failed",
                    run_id=run_id,
                    role_id=reviewer.id,
                    error=str(e),
                )
                return None
            return reviewer.id, text

        jobs = []
        for members in state["resolver"].peer_groups().values():
            with_result = [
                m for m in members
                if m.id in results and results[m.id].status == RoleStatus.SUCCESS
            ]
            if len(with_result) < 2:
                continue
            for reviewer in with_result:
                jobs.append(refine_one(reviewer, [m for m in with_result if m.id != reviewer.id]))

        refined = dict(results)
        count = 0
        for outcome in await asyncio.gather(*jobs):
            if outcome is None:
                continue
            role_id, text = outcome
            current = refined[role_id]
            refined[role_id] = current.model_copy(
                update={"text": f"{current.text}{SECTION_SEPARATOR}{REFINEMENT_HEADER}\n{text}"}
            )
            count += 1
            await self._emit(EventType.REFINEMENT_COMPLETE, run_id, role_id, preview=text[:200])

        logger.info("orchestrator_refinement_done", run_id=run_id, refinements=count)
        return {"results": refined, "refinements": count}

    async def _strategic_plan(self, state: OrchestratorState) -> dict[str, Any]:
        run_id = state["run_id"]
        _, root_result = self._root_result(state)
        plan = None
        if root_result is None:
            logger.info("strategic_plan_skipped_no_root_result", run_id=run_id)
        else:
            try:
                plan = await self.synthesizer.strategic_plan(
                    self._planning_context(state),
                    truncate(root_result.text, settings.report_excerpt_chars),
                    run_id,
                )
            except Exception as e:
                logger.warning(
                    "strategic_plan_failed", run_id=run_id, error_type=type(e).__name__, error=str(e)
                )

        await self._emit(EventType.PLAN_SYNTHESIZED, run_id, kind="strategic", present=plan is not None)
        return {"strategic_plan": plan}

    async def _daily_plan(self, state: OrchestratorState) -> dict[str, Any]:
        run_id = state["run_id"]
        all_reports = format_reports(
            list(state["results"].values()),
            settings.report_excerpt_chars,
            settings.all_reports_chars,
        )
        plan = None
        daily_tasks: list[OrchestratorTask] = []
        created = 0
        if not all_reports:
            logger.info("daily_plan_skipped_no_reports", run_id=run_id)
        else:
            try:
                plan = await self.synthesizer.daily_plan(
                    self._plan_days(state), self._planning_context(state), all_reports, run_id
                )
            except Exception as e:
                logger.warning(
                    "daily_plan_failed", run_id=run_id, error_type=type(e).__name__, error=str(e)
                )

        if plan:
            daily_tasks = [
                task.model_copy(update={"run_id": run_id}) for task in daily_plan_to_tasks(plan)
            ]
            created = await self._persist_tasks(run_id, daily_tasks)

        await self._emit(
            EventType.PLAN_SYNTHESIZED,
            run_id,
            kind="daily",
            present=plan is not None,
            days=len(plan or []),
        )
        return {"daily_plan": plan, "daily_tasks": daily_tasks, "daily_tasks_created": created}

    async def _finalize(self, state: OrchestratorState) -> dict[str, Any]:
        """Persist the run and send the executive summary and completion notice."""
        run_id = state["run_id"]
        request = state["request"]
        results = list(state["results"].values())
        status = (
            RunStatus.PARTIAL
            if any(r.status == RoleStatus.ERROR for r in results)
            else RunStatus.COMPLETED
        )
        root_role, root_result = self._root_result(state)
        summary = root_result.text if root_result else ""

        delivery_status: dict[str, Any] = {
            "generated_at": datetime.now(UTC).isoformat(),
            "tasks_created": state["tasks_created"],
            "daily_tasks_created": state["daily_tasks_created"],
            "squad_refinement_done": state["refinements"] > 0,
        }
        if state.get("strategic_plan") is not None:
            delivery_status["strategic_plan"] = state["strategic_plan"].model_dump(mode="json")
        priority_actions: list[str] = []
        if state.get("daily_plan"):
            delivery_status["daily_plan"] = [day.model_dump(mode="json") for day in state["daily_plan"]]
            priority_actions = urgent_actions(state["daily_plan"])
            if priority_actions:
                delivery_status["urgent_actions"] = priority_actions

        if self.store is not None:
            await self.store.save_orchestrator_run(
                OrchestratorRunDetail(
                    run_id=run_id,
                    deployment_id=request.deployment_id,
                    project_id=request.project_id,
                    status=status,
                    agent_results=results,
                    summary=summary,
                    delivery_status=delivery_status,
                    created_at=state["created_at"],
                    completed_at=datetime.now(UTC),
                )
            )

        success = sum(1 for r in results if r.status == RoleStatus.SUCCESS)
        total_tasks = state["tasks_created"] + state["daily_tasks_created"]
        notice = (
            f"{success}/{len(results)} roles ran. {total_tasks} tasks created "
            f"({state['daily_tasks_created']} from daily plan). "
            f"Squad refinement: {'yes' if state['refinements'] else 'no'}"
        )
        if priority_actions:
            notice += "\n\nPriority actions:\n" + "\n".join(f"- {line}" for line in priority_actions)
        await self.delivery.send("notification", NOTIFICATION_DESTINATION, notice, run_id=run_id)
        if root_role is not None and root_role.whatsapp and root_result is not None:
            await self.delivery.send(
                "whatsapp",
                root_role.whatsapp,
                f"{root_role.emoji} {root_role.title}: executive report\n\n{summary}".strip(),
                run_id=run_id,
            )

        logger.info(
            "orchestrator_run_finalized",
            run_id=run_id,
            status=status.value,
            success=success,
            total=len(results),
            tasks_created=state["tasks_created"],
            daily_tasks_created=state["daily_tasks_created"],
        )
        return {"status": status, "summary": summary, "delivery_status": delivery_status}

    # -------------------------------------------------------------------------
    # Public entry point
    # -------------------------------------------------------------------------

    async def run(self, request: OrchestratorRunRequest, run_id: str | None = None) -> OrchestratorResult:
        """Run every role once and synthesize the results.

        Raises:
            HierarchyError: The hierarchy has a cycle or is too deep. No role has run.
        """
        run_id = run_id or f"orch_{uuid4().hex[:12]}"
        resolver = HierarchyResolver(request.roles, request.hierarchy)
        # resolve every depth up front so a bad hierarchy fails before any call
        resolver.depths()

        today = self._today or date.today()
        initial_state = OrchestratorState(
            run_id=run_id,
            request=request,
            resolver=resolver,
            roles=[],
            role_index=0,
            results={},
            view=SnapshotView(),
            today=today,
            created_at=datetime.now(UTC),
            tasks=[],
            tasks_created=0,
            refinements=0,
            strategic_plan=None,
            daily_plan=None,
            daily_tasks=[],
            daily_tasks_created=0,
            status=RunStatus.RUNNING,
            summary="",
            delivery_status={},
        )
        # one step per role plus the fixed nodes
        config = {"recursion_limit": len(request.roles) + 10}
        final_state = await self._compiled_graph.ainvoke(initial_state, config=config)

        return OrchestratorResult(
            run_id=run_id,
            status=final_state["status"],
            results=list(final_state["results"].values()),
            tasks=final_state["tasks"],
            daily_tasks=final_state["daily_tasks"],
            tasks_created=final_state["tasks_created"],
            daily_tasks_created=final_state["daily_tasks_created"],
            refinements=final_state["refinements"],
            strategic_plan=final_state.get("strategic_plan"),
            daily_plan=final_state.get("daily_plan") or [],
            summary=final_state["summary"],
            delivery_status=final_state["delivery_status"],
        )
