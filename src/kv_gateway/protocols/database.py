"""Database protocol for SQL backends."""

import re
from dataclasses import dataclass, field
from typing import Any, Protocol

NAMED_PARAM_RE = re.compile(r":(\w+)")


@dataclass
class Row:
    """Type-safe row access with attribute-style access."""

    _data: dict[str, Any] = field(repr=False)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            return object.__getattribute__(self, name)
        try:
            return self._data[name]
        except KeyError:
            raise AttributeError(f"Row has no column '{name}'") from None

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def get(self, key: str, default: Any = None) -> Any:
        """Return a column value or ``default``."""
        return self._data.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        """Convert row to dictionary."""
        return dict(self._data)


def to_positional(
    query: str,
    params: dict[str, Any] | None,
) -> tuple[str, tuple[Any, ...]]:
    """Rewrite ``:name`` placeholders as ``?`` with a matching value tuple.

    Names may repeat; each occurrence consumes its own positional slot.
    """
    if not params:
        return query, ()

    names: list[str] = []

    def replace(match: re.Match[str]) -> str:
        names.append(match.group(1))
        return "?"

    rewritten = NAMED_PARAM_RE.sub(replace, query)
    return rewritten, tuple(params[name] for name in names)


class Database(Protocol):
    """Protocol for SQL database backends (D1, SQLite).

    Every call is one self-contained statement; callers hold no
    transaction across calls.
    """

    async def execute(
        self,
        query: str,
        params: dict[str, Any] | None = None,
    ) -> list[Row]:
        """Execute a query and return result rows."""
        ...

    async def execute_write(
        self,
        query: str,
        params: dict[str, Any] | None = None,
    ) -> int:
        """Execute a data-modifying statement and return the affected row count."""
        ...

    async def execute_script(self, script: str) -> None:
        """Execute several ``;``-separated statements (schema setup)."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...
