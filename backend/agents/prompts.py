"""Prompt templates for workflow agent nodes and orchestrator roles.

Builders here only format text; the engines decide what goes in. The role
output contract (report, delimiter line, JSON task array) is the one
protocol the scheduler parses, so TASKS_DELIMITER must stay in sync with
``agents.synthesis.split_report_and_tasks``.
"""

from datetime import date

from models.schemas import Role

TASKS_DELIMITER = "---TASKS_JSON---"

SECTION_SEPARATOR = "\n\n---\n\n"


def compose_prompt_sections(*sections: str) -> str:
    """Join non-empty sections with blank lines."""
    cleaned = [section.strip() for section in sections if section and section.strip()]
    return "\n\n".join(cleaned)


# ---------------------------------------------------------------------------
# Workflow agent nodes
# ---------------------------------------------------------------------------


def build_workflow_agent_system_prompt(agent_name: str, instructions: str) -> str:
    return compose_prompt_sections(
        f"You are {agent_name}, one step of an automated workflow.",
        instructions,
        "Answer with the result of your step only. Later steps read your output verbatim.",
    )


def build_workflow_agent_prompt(previous_context: str, template: str) -> str:
    """Frame the node's own prompt with everything produced before it."""
    if not previous_context:
        return template
    return (
        f"CONTEXT FROM PREVIOUS STEPS:\n\n{previous_context}"
        f"{SECTION_SEPARATOR}YOUR TASK NOW:\n{template}"
    )


# ---------------------------------------------------------------------------
# Orchestrator roles
# ---------------------------------------------------------------------------


def _routine_section(role: Role) -> str:
    routine = role.routine
    lines = [
        f"## Your specialty and routine (cadence: {routine.frequency or 'daily'})",
        f"Responsibilities: {'; '.join(routine.tasks) or 'Analysis and reporting for your area'}",
        f"Data sources: {', '.join(routine.data_sources) or 'Project data'}",
        f"Expected outputs: {', '.join(routine.outputs) or 'Report + tasks'}",
    ]
    if routine.autonomous_actions:
        lines.append(f"Autonomous actions: {'; '.join(routine.autonomous_actions)}")
    return "\n".join(lines)


def _rules_section(has_real_data: bool, due_date: date) -> str:
    if has_real_data:
        data_rules = (
            "- Always cite real project data: exact queries, CTRs, positions, specific pages\n"
            '- Never use placeholders such as "keyword X" or "page Y"'
        )
    else:
        data_rules = (
            "- Project data is not synced yet. Work from domain context and best practice\n"
            "- Be specific about HOW to implement each action even without history"
        )
    return (
        "## Rules\n"
        f"{data_rules}\n"
        "- Every task needs a concrete action, an owner, tools and a success metric\n"
        "- Tasks must be doable by the human team within the next 7 days\n"
        f"- Latest due date for tasks: {due_date.isoformat()}"
    )


def _output_contract(role: Role, due_date: date) -> str:
    return f"""## Required output format (follow exactly)
Write your professional report first (at most 600 words, cite real data).

[Narrative report]

{TASKS_DELIMITER}
[
  {{
    "title": "Specific action grounded in data",
    "description": "Step by step: 1) what 2) how 3) where 4) expected result",
    "category": "seo|content|links|ads|technical|strategy|analytics",
    "priority": "urgent|high|normal|low",
    "assigned_role": "{role.title}",
    "assigned_role_emoji": "{role.emoji}",
    "due_date": "{due_date.isoformat()}",
    "success_metric": "Objective, measurable metric",
    "estimated_impact": "Expected impact with numbers"
  }}
]"""


def build_role_system_prompt(
    role: Role,
    *,
    today: date,
    due_date: date,
    data_section: str,
    has_real_data: bool,
    superior: Role | None = None,
    superior_directive: str = "",
    peers_section: str = "",
) -> str:
    """System prompt for one role's round.

    ``superior_directive`` and ``peers_section`` arrive already truncated.
    """
    directive = ""
    if superior is not None and superior_directive:
        directive = (
            f"## Strategic directives from your superior ({superior.emoji} {superior.title})\n"
            f"{superior_directive}\n\n"
            "Your analysis MUST align with these priorities. "
            "State how your area contributes to each of the superior's goals."
        )
    peers = f"## Context from your teammates\n{peers_section}" if peers_section else ""

    return compose_prompt_sections(
        role.instructions,
        f"You are {role.emoji} {role.title}, a senior specialist on a professional AI team "
        f"working on the real project described below.\n"
        f"Today is {today.strftime('%A, %B %d, %Y')} ({today.isoformat()}).",
        data_section,
        _routine_section(role),
        directive,
        peers,
        _rules_section(has_real_data, due_date),
        _output_contract(role, due_date),
    )


EXECUTIVE_USER_PROMPT = """\
As the head of this digital team, using the REAL project data above, deliver:

1. **EXECUTIVE DIAGNOSIS** (100 words): current state in 3 key metrics with real numbers
2. **TOP 3 PRIORITIES OF THE WEEK** with expected impact and deadline
3. **DIRECTIVES PER AREA** (SEO, Content, Links, Ads, Technical, Analytics): specific instructions for each specialist
4. **STRATEGIC TASKS** (JSON): 3-5 high level tasks the team must execute this week

Your report is the strategic compass for every other agent. Be precise, data driven and actionable."""


def build_specialist_user_prompt(role: Role) -> str:
    return f"""\
Run your specialist analysis as {role.title} using the REAL project data above. Deliver:

1. **ANALYSIS OF YOUR AREA** (200-400 words): cite real numbers, name specific problems and opportunities
2. **TOP FINDINGS** (max 5 bullets): the most important insights with concrete data
3. **ACTION PLAN** (JSON): 3-5 very specific tasks the human team can implement NOW

Your tasks must be specific enough that anyone on the team can execute them without a further briefing."""


def format_peer_report(role: Role, text: str) -> str:
    return f"### {role.emoji} {role.title}:\n{text}".strip()


# ---------------------------------------------------------------------------
# Refinement
# ---------------------------------------------------------------------------


def build_refinement_prompts(reviewer: Role, own_report: str, others: str) -> tuple[str, str]:
    """(system, user) asking a reviewer to refine against its peers' reports."""
    system = (
        f"You are {reviewer.emoji} {reviewer.title}. Read your colleagues' reports and "
        "propose 2-3 specific refinements to your own plan. At most 200 words."
    )
    user = f"Your report:\n{own_report}\n\nColleagues:\n{others}\n\nRefinements:"
    return system, user


# ---------------------------------------------------------------------------
# Plan synthesis
# ---------------------------------------------------------------------------

STRATEGIC_PLAN_SYSTEM_PROMPT = """\
You lead a digital company. From the REAL project data and the team's reports, \
produce a strategic plan as PURE JSON (only JSON, no markdown, no text before or after):
{
  "week_theme": "Concrete theme grounded in the data",
  "top_goals": ["Goal 1 with a real number", "Goal 2 with data and deadline", "Goal 3 measurable against a baseline"],
  "daily_focus": {
    "monday": "Concrete focus with a specific action",
    "tuesday": "Focus of the day",
    "wednesday": "Focus of the day",
    "thursday": "Focus of the day",
    "friday": "Weekly wrap-up and next week planning"
  },
  "kpis_to_watch": [{"metric": "Real project metric", "target": "Concrete target", "current": "Current value"}],
  "risk_alert": "Main risk in the data this week, with evidence",
  "quick_wins": ["Concrete quick action (<1h) with real data", "Quick action 2", "Quick action 3"]
}"""


def build_strategic_plan_user_prompt(data_context: str, root_report: str) -> str:
    return compose_prompt_sections(
        data_context,
        f"Executive report:\n{root_report}",
        "Produce the strategic plan JSON now.",
    )


def build_daily_plan_system_prompt(days: list[date], day_labels: list[str]) -> str:
    first = days[0].isoformat() if days else "YYYY-MM-DD"
    first_name = days[0].strftime("%A") if days else "Monday"
    return f"""\
You are an experienced chief of staff. Produce a HYPER-SPECIFIC daily action plan for exactly these days: {', '.join(day_labels)}.

RETURN ONLY A VALID JSON ARRAY (no markdown, no text, starting with [ and ending with ]):
[
  {{
    "date": "{first}",
    "day_name": "{first_name}",
    "theme": "Focused theme grounded in data",
    "areas_covered": ["seo", "content"],
    "kpi_targets": [{{"metric": "Metric name", "target": ">4%", "area": "seo"}}],
    "actions": [
      {{
        "time": "09:00",
        "title": "Actionable, specific title",
        "description": "1) step 2) step 3) step 4) step",
        "area": "seo",
        "priority": "urgent",
        "duration_min": 30,
        "responsible": "SEO specialist",
        "success_metric": "Measurable outcome and horizon",
        "status": "scheduled",
        "tools": ["Search Console", "CMS"]
      }}
    ]
  }}
]

CRITICAL RULES:
1. Use EXACTLY these dates in order: {', '.join(d.isoformat() for d in days)}
2. Every day has between 4 and 6 actions
3. Cite real project data: queries with CTR and positions, URLs, analytics metrics
4. Times between 09:00 and 18:00, spread across the day
5. Every description has numbered steps (at least 4)
6. Never write "keyword X" or "page Y"; use real data or descriptive names
7. Include the specific tools for each action"""


def build_daily_plan_user_prompt(data_context: str, all_reports: str) -> str:
    return compose_prompt_sections(
        data_context,
        f"## Agent reports\n{all_reports}",
        "Produce the daily plan JSON array now. Only the JSON, nothing else.",
    )
