"""Project data excerpts for role prompts.

Each role sees the slice of project data that matches its domain, chosen by
keyword matching on the role title. Derived views (quick wins, low-CTR
alerts, deep URLs) are computed once per snapshot.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol

from models.schemas import ProjectSnapshot, SearchRow

NO_DATA = "No data available yet"

# Target CTR used to estimate the upside of a quick win
TARGET_CTR = 0.05


class RoleDomain(StrEnum):
    SEO = "seo"
    CONTENT = "content"
    LINKS = "links"
    ADS = "ads"
    TECHNICAL = "technical"
    ANALYTICS = "analytics"
    CONVERSION = "conversion"
    GENERAL = "general"


# First match wins, in this order. Titles may be English or Portuguese.
DOMAIN_KEYWORDS: list[tuple[RoleDomain, tuple[str, ...]]] = [
    (RoleDomain.SEO, ("seo", "organic", "orgânico", "search", "busca")),
    (RoleDomain.CONTENT, ("content", "conteúdo", "writer", "redator", "editorial", "copy")),
    (RoleDomain.LINKS, ("link", "authority", "autoridade", "backlink", "outreach")),
    (RoleDomain.ADS, ("ads", "paid", "pago", "mídia", "media buyer", "ppc")),
    (RoleDomain.TECHNICAL, ("technical", "técn", "tech", "developer", "desenvolv", "core web")),
    (RoleDomain.ANALYTICS, ("analytic", "data", "dados", "metrics", "métricas")),
    (RoleDomain.CONVERSION, ("cro", "convers", "ux")),
]


def classify_role_domain(title: str) -> RoleDomain:
    lowered = title.lower()
    for domain, keywords in DOMAIN_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return domain
    return RoleDomain.GENERAL


def _pos(row: SearchRow) -> str:
    return f"{row.position:.1f}" if row.position is not None else "?"


@dataclass
class SnapshotView:
    """Formatted lines derived from a ProjectSnapshot."""

    top_queries: list[str] = field(default_factory=list)
    top_urls: list[str] = field(default_factory=list)
    quick_wins: list[str] = field(default_factory=list)
    low_ctr_alerts: list[str] = field(default_factory=list)
    deep_urls: list[str] = field(default_factory=list)
    analytics: str = ""

    @property
    def has_real_data(self) -> bool:
        return bool(self.top_queries)

    @classmethod
    def from_snapshot(cls, snapshot: ProjectSnapshot) -> "SnapshotView":
        rows = snapshot.search_rows
        view = cls(analytics=snapshot.analytics_summary.strip())

        view.top_queries = [
            f'"{r.query}": {r.clicks} clicks, {r.impressions} imp, pos {_pos(r)}, '
            f"CTR {r.click_rate * 100:.1f}%"
            for r in rows
            if r.query and r.clicks > 0
        ][:15]
        view.top_urls = [
            f"{r.url}: {r.clicks} clicks, {r.impressions} imp, pos {_pos(r)}"
            for r in rows
            if r.url and r.clicks > 0
        ][:10]
        view.quick_wins = [
            f'"{r.query}": pos {_pos(r)}, {r.impressions} imp, only {r.clicks} clicks, '
            f"potential +{round((TARGET_CTR - r.click_rate) * r.impressions)} clicks/month from CTR"
            for r in rows
            if r.query
            and r.position is not None
            and r.impressions > 200
            and 3 < r.position <= 15
        ][:8]
        view.low_ctr_alerts = [
            f'"{r.query}": top {r.position:.0f} but CTR only {r.click_rate * 100:.1f}%, fix the snippet'
            for r in rows
            if r.query
            and r.position is not None
            and r.position <= 3
            and r.click_rate < TARGET_CTR
            and r.impressions > 50
        ][:5]
        view.deep_urls = [
            f"{r.url}: pos {_pos(r)}, possible technical issue"
            for r in rows
            if r.url and r.position is not None and r.position > 20
        ][:8]
        return view


def _lines(items: list[str], empty: str = NO_DATA) -> str:
    return "\n".join(items) if items else empty


def specialist_section(domain: RoleDomain, view: SnapshotView) -> str:
    """Markdown block of the data relevant to ``domain``."""
    analytics = view.analytics or "Analytics: not connected or not synced yet."

    match domain:
        case RoleDomain.SEO:
            return (
                "## SEO data for your analysis\n"
                f"### Organic queries by volume (last 28 days):\n{_lines(view.top_queries)}\n\n"
                "### Quick wins, positions 4-15 with high volume:\n"
                f"{_lines(view.quick_wins, 'No quick wins identified')}\n\n"
                "### Low CTR alerts (top 3 but losing clicks):\n"
                f"{_lines(view.low_ctr_alerts, 'No CTR alerts')}\n\n"
                f"### Top URLs by organic traffic:\n{_lines(view.top_urls)}"
            )
        case RoleDomain.CONTENT:
            return (
                "## Content data for your analysis\n"
                f"### Pages with the most organic traffic:\n{_lines(view.top_urls)}\n\n"
                "### Queries without dedicated content (content gaps):\n"
                f"{_lines([f'-> {q}' for q in view.quick_wins[:6]], 'No gaps identified')}\n\n"
                "### High impressions but few clicks (weak title or meta):\n"
                f"{_lines(view.low_ctr_alerts, 'No alerts')}"
            )
        case RoleDomain.LINKS:
            return (
                "## Authority data for your analysis\n"
                f"### Pages with the most link building potential:\n{_lines(view.top_urls[:8])}\n\n"
                f"### Keywords that need an authority boost:\n{_lines(view.quick_wins[:6])}"
            )
        case RoleDomain.ADS:
            return (
                "## Paid media data for your analysis\n"
                f"{analytics[:1500]}\n"
                f"### Organic channels to complement with paid:\n{_lines(view.top_queries[:8])}"
            )
        case RoleDomain.TECHNICAL:
            return (
                "## Technical data for your analysis\n"
                f"### URLs ranking beyond position 20:\n{_lines(view.deep_urls)}\n\n"
                "### High impressions without clicks (snippet or structured data):\n"
                f"{_lines(view.low_ctr_alerts, 'No alerts')}"
            )
        case RoleDomain.ANALYTICS:
            return f"## Analytics data for your analysis\n{analytics}"
        case RoleDomain.CONVERSION:
            return (
                "## Conversion data for your analysis\n"
                f"{analytics[:1500]}\n"
                f"### High traffic pages (CRO test candidates):\n{_lines(view.top_urls[:8])}"
            )
        case _:
            return general_section(view)


def general_section(view: SnapshotView) -> str:
    """Overview given to executives, managers and unmatched titles."""
    analytics = view.analytics or "Analytics: not connected or not synced yet."
    return (
        "## General project data\n"
        f"### Top queries:\n{_lines(view.top_queries[:8])}\n\n"
        f"### Top URLs:\n{_lines(view.top_urls[:5])}\n\n"
        f"### Quick wins:\n{_lines(view.quick_wins[:5], 'No quick wins identified')}\n\n"
        f"{analytics[:1200]}"
    )


def planning_section(view: SnapshotView, day_labels: list[str]) -> str:
    """Data block shared by the strategic and daily plan prompts."""
    return (
        "## Project data\n"
        f"### Days to plan: {', '.join(day_labels)}\n"
        f"### Top queries:\n{_lines(view.top_queries[:12])}\n"
        f"### Quick wins (pos 4-15, high volume):\n{_lines(view.quick_wins[:8], 'None')}\n"
        f"### Low CTR alerts:\n{_lines(view.low_ctr_alerts, 'None')}\n"
        f"### Top URLs:\n{_lines(view.top_urls[:8])}\n"
        f"{view.analytics[:800]}"
    ).strip()


class ProjectDataProvider(Protocol):
    async def snapshot(self, project_id: str) -> ProjectSnapshot: ...


class EmptyDataProvider:
    """Provider used when no project data source is wired in."""

    async def snapshot(self, project_id: str) -> ProjectSnapshot:
        return ProjectSnapshot()
