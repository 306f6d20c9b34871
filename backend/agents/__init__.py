"""Role hierarchy, prompts, LLM integration and the orchestrator graph.

This module exports the key components needed for orchestrator runs:
- Hierarchy resolution (depth, execution order, peer groups)
- Project data sections handed to roles
- Plan synthesis and task parsing
- LLM client utilities with retry logic and metrics tracking
- The LangGraph orchestrator graph
"""

from agents.data_context import (
    EmptyDataProvider,
    ProjectDataProvider,
    RoleDomain,
    SnapshotView,
    classify_role_domain,
)
from agents.hierarchy import (
    CyclicHierarchyError,
    HierarchyDepthExceededError,
    HierarchyError,
    HierarchyResolver,
)
from agents.orchestrator_graph import (
    AgentRoundError,
    OrchestratorGraph,
    OrchestratorResult,
    OrchestratorState,
)
from agents.synthesis import (
    PlanSynthesizer,
    SynthesisParseError,
    daily_plan_to_tasks,
    parse_role_tasks,
    split_report_and_tasks,
)
from agents.utils import (
    LLMClient,
    LLMError,
    LLMResponse,
    MockLLMClient,
    extract_json_array,
    extract_json_object,
)

__all__ = [
    # Hierarchy
    "CyclicHierarchyError",
    "HierarchyDepthExceededError",
    "HierarchyError",
    "HierarchyResolver",
    # Data context
    "EmptyDataProvider",
    "ProjectDataProvider",
    "RoleDomain",
    "SnapshotView",
    "classify_role_domain",
    # Synthesis
    "PlanSynthesizer",
    "SynthesisParseError",
    "daily_plan_to_tasks",
    "parse_role_tasks",
    "split_report_and_tasks",
    # Utils
    "LLMClient",
    "LLMError",
    "LLMResponse",
    "MockLLMClient",
    "extract_json_array",
    "extract_json_object",
    # Orchestrator Graph
    "AgentRoundError",
    "OrchestratorGraph",
    "OrchestratorResult",
    "OrchestratorState",
]
