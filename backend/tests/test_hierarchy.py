"""Tests for agents/hierarchy.py -- depths, execution order, peer groups."""

import pytest

from agents.hierarchy import (
    ROOT_GROUP,
    CyclicHierarchyError,
    HierarchyDepthExceededError,
    HierarchyResolver,
)
from tests.conftest import make_role


def _resolver(hierarchy: dict[str, str], *ids: str, max_depth: int = 5) -> HierarchyResolver:
    return HierarchyResolver([make_role(i) for i in ids], hierarchy, max_depth=max_depth)


class TestDepths:
    def test_chain(self) -> None:
        resolver = _resolver({"analyst": "manager", "manager": "ceo"}, "analyst", "manager", "ceo")
        assert resolver.depths() == {"analyst": 2, "manager": 1, "ceo": 0}

    def test_missing_parent_still_counts_as_a_level(self) -> None:
        resolver = _resolver({"analyst": "board"}, "analyst")
        assert resolver.depth_of("analyst") == 1

    def test_empty_parent_means_root(self) -> None:
        resolver = _resolver({"ceo": ""}, "ceo")
        assert resolver.parent_of("ceo") is None
        assert resolver.depth_of("ceo") == 0

    def test_depth_limit_is_inclusive(self) -> None:
        ids = [f"r{i}" for i in range(6)]
        hierarchy = {ids[i + 1]: ids[i] for i in range(5)}
        assert _resolver(hierarchy, *ids, max_depth=5).depth_of("r5") == 5

    def test_too_deep(self) -> None:
        ids = [f"r{i}" for i in range(7)]
        hierarchy = {ids[i + 1]: ids[i] for i in range(6)}
        with pytest.raises(HierarchyDepthExceededError) as exc_info:
            _resolver(hierarchy, *ids, max_depth=5).depths()
        assert exc_info.value.limit == 5

    def test_cycle_detected(self) -> None:
        resolver = _resolver({"a": "b", "b": "c", "c": "a"}, "a", "b", "c")
        with pytest.raises(CyclicHierarchyError) as exc_info:
            resolver.depth_of("a")
        assert exc_info.value.chain == ["a", "b", "c", "a"]

    def test_self_parent_is_a_cycle(self) -> None:
        with pytest.raises(CyclicHierarchyError):
            _resolver({"a": "a"}, "a").depths()


class TestExecutionOrder:
    def test_root_runs_before_reports(self) -> None:
        resolver = _resolver({"analyst": "manager", "manager": "ceo"}, "analyst", "manager", "ceo")
        assert [r.id for r in resolver.execution_order()] == ["ceo", "manager", "analyst"]

    def test_list_order_kept_within_a_depth(self) -> None:
        resolver = _resolver({"seo": "ceo", "ads": "ceo"}, "seo", "ceo", "ads")
        assert [r.id for r in resolver.execution_order()] == ["ceo", "seo", "ads"]


class TestPeerGroups:
    def test_peers_share_a_parent(self) -> None:
        resolver = _resolver(
            {"seo": "cmo", "ads": "cmo", "dev": "cto", "cmo": "ceo", "cto": "ceo"},
            "ceo", "cmo", "cto", "seo", "ads", "dev",
        )
        assert [r.id for r in resolver.peer_group("seo")] == ["seo", "ads"]
        assert [r.id for r in resolver.peer_group("dev")] == ["dev"]

    def test_roots_form_one_group(self) -> None:
        resolver = _resolver({}, "a", "b")
        assert resolver.root_ids() == ["a", "b"]
        assert resolver.peer_groups() == {ROOT_GROUP: resolver.roles}

    def test_groups_follow_execution_order(self) -> None:
        resolver = _resolver({"x": "ceo", "y": "ceo"}, "y", "x", "ceo")
        groups = resolver.peer_groups()
        assert list(groups) == [ROOT_GROUP, "ceo"]
        assert [r.id for r in groups["ceo"]] == ["y", "x"]
