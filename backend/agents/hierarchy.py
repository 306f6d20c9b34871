"""Role hierarchy resolution.

Turns a flat role list plus a ``child -> parent`` map into depths, a
top-down execution order and peer groups. Pure; shared by the scheduler
and the API's validation of run requests.
"""

from collections import defaultdict

from config import settings
from models.schemas import Role

ROOT_GROUP = "__root__"


class HierarchyError(Exception):
    """The reporting hierarchy cannot be scheduled."""


class CyclicHierarchyError(HierarchyError):
    def __init__(self, chain: list[str]) -> None:
        super().__init__(f"reporting cycle: {' -> '.join(chain)}")
        self.chain = chain


class HierarchyDepthExceededError(HierarchyError):
    def __init__(self, role_id: str, limit: int) -> None:
        super().__init__(f"role {role_id} is nested deeper than {limit} levels")
        self.role_id = role_id
        self.limit = limit


class HierarchyResolver:
    """Depth and peer lookups over one role set.

    A parent id that does not name a role in the list still counts as a
    level: the child sits one below it.
    """

    def __init__(
        self,
        roles: list[Role],
        hierarchy: dict[str, str],
        max_depth: int | None = None,
    ) -> None:
        self.roles = list(roles)
        # empty parent ids mean "no parent"
        self.hierarchy = {child: parent for child, parent in hierarchy.items() if parent}
        self.max_depth = max_depth if max_depth is not None else settings.max_hierarchy_depth
        self._depths: dict[str, int] = {}

    def parent_of(self, role_id: str) -> str | None:
        return self.hierarchy.get(role_id)

    def depth_of(self, role_id: str) -> int:
        """Distance from ``role_id`` to its root.

        Raises:
            CyclicHierarchyError: The parent chain loops back on itself.
            HierarchyDepthExceededError: The depth is above ``max_depth``.
        """
        return self._resolve(role_id, ())

    def _resolve(self, role_id: str, path: tuple[str, ...]) -> int:
        if role_id in self._depths:
            return self._depths[role_id]
        if role_id in path:
            start = path.index(role_id)
            raise CyclicHierarchyError([*path[start:], role_id])

        parent = self.hierarchy.get(role_id)
        depth = 0 if parent is None else self._resolve(parent, (*path, role_id)) + 1
        if depth > self.max_depth:
            raise HierarchyDepthExceededError(role_id, self.max_depth)

        self._depths[role_id] = depth
        return depth

    def depths(self) -> dict[str, int]:
        return {role.id: self.depth_of(role.id) for role in self.roles}

    def execution_order(self) -> list[Role]:
        """Roles by ascending depth; roots first, list order kept within a depth."""
        depths = self.depths()
        return sorted(self.roles, key=lambda role: depths[role.id])

    def root_ids(self) -> list[str]:
        return [role.id for role in self.roles if self.parent_of(role.id) is None]

    def group_key(self, role_id: str) -> str:
        return self.parent_of(role_id) or ROOT_GROUP

    def peer_group(self, role_id: str) -> list[Role]:
        """Roles sharing ``role_id``'s parent (all roots for a root), itself included."""
        key = self.group_key(role_id)
        return [role for role in self.roles if self.group_key(role.id) == key]

    def peer_groups(self) -> dict[str, list[Role]]:
        """Peer groups keyed by parent id (``ROOT_GROUP`` for roots), in execution order."""
        groups: dict[str, list[Role]] = defaultdict(list)
        for role in self.execution_order():
            groups[self.group_key(role.id)].append(role)
        return dict(groups)
