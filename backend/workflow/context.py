"""Per-run accumulator of node results.

Handlers read it two ways: the whole history in write order (agent, report,
merge) or only the latest write (action, condition, split).
"""

from workflow.errors import ContextWriteError

CONTEXT_SEPARATOR = "\n\n---\n\n"


class RunContext:
    """Write-once mapping of node id to produced text, in insertion order."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    def write(self, key: str, value: str) -> None:
        if key in self._values:
            raise ContextWriteError(f"context already holds a result for {key}")
        self._values[key] = value

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def all_values(self) -> list[str]:
        return list(self._values.values())

    def joined(self, separator: str = CONTEXT_SEPARATOR) -> str:
        return separator.join(self._values.values())

    def latest(self) -> str:
        """The chronologically last write, or an empty string."""
        if not self._values:
            return ""
        return next(reversed(self._values.values()))

    def snapshot(self) -> dict[str, str]:
        return dict(self._values)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)
