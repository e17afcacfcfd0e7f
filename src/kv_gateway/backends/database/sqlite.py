"""SQLite database backend."""

import asyncio
import sqlite3
from pathlib import Path
from typing import Any

from kv_gateway.exceptions import RateLimitedError, StorageError
from kv_gateway.observability import get_logger
from kv_gateway.protocols.database import Row, to_positional

logger = get_logger(__name__)


def _translate_error(error: sqlite3.Error | ValueError) -> StorageError:
    """Map a sqlite3 error onto the storage error taxonomy.

    A locked or busy database is transient contention and is reported as
    rate limiting so bulk writers retry it. ValueError covers parameters
    sqlite3 cannot bind, such as strings holding lone surrogates.
    """
    message = str(error)
    if isinstance(error, sqlite3.OperationalError) and (
        "locked" in message or "busy" in message
    ):
        return RateLimitedError(f"SQLite busy: {message}")
    return StorageError(f"SQLite error: {message}")


class SQLiteDatabase:
    """SQLite database backend.

    Suitable for development and single-node deployments.
    Serializes access to one connection behind an asyncio lock.
    """

    def __init__(
        self,
        path: str | None = None,
        busy_timeout_ms: int = 5000,
        **kwargs: Any,
    ) -> None:
        """Initialize SQLite database.

        Args:
            path: Path to SQLite database file. Defaults to ./data/kv.db
                  Use ":memory:" for in-memory database.
            busy_timeout_ms: How long SQLite waits on a locked database
            **kwargs: Ignored (for compatibility with other backends)
        """
        if path == ":memory:":
            self.path: str | Path = ":memory:"
        else:
            self.path = Path(path) if path else Path("./data/kv.db")
            self.path.parent.mkdir(parents=True, exist_ok=True)

        self.busy_timeout_ms = busy_timeout_ms
        self._conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.path),
                check_same_thread=False,
                timeout=self.busy_timeout_ms / 1000,
            )
            self._conn.row_factory = sqlite3.Row
            logger.debug("Opened SQLite connection", context={"path": str(self.path)})
        return self._conn

    async def execute(
        self,
        query: str,
        params: dict[str, Any] | None = None,
    ) -> list[Row]:
        """Execute a query and return results."""
        query, values = to_positional(query, params)
        async with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(query, values)
                rows = cursor.fetchall()
                conn.commit()
            except (sqlite3.Error, ValueError) as e:
                conn.rollback()
                raise _translate_error(e) from e

        return [Row(_data=dict(row)) for row in rows]

    async def execute_write(
        self,
        query: str,
        params: dict[str, Any] | None = None,
    ) -> int:
        """Execute a data-modifying statement and return rows changed."""
        query, values = to_positional(query, params)
        async with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(query, values)
                conn.commit()
            except (sqlite3.Error, ValueError) as e:
                conn.rollback()
                raise _translate_error(e) from e

        return cursor.rowcount

    async def execute_script(self, script: str) -> None:
        """Execute a multi-statement script."""
        async with self._lock:
            conn = self._get_connection()
            try:
                conn.executescript(script)
            except (sqlite3.Error, ValueError) as e:
                raise _translate_error(e) from e

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
