"""Key-value semantics emulated on a relational table.

Records live in a single ``kv_store`` table. Expiry is enforced as a
``WHERE`` predicate on every read, so rows whose expiration has passed are
invisible whether or not they have been physically removed yet;
``cleanup_expired`` only bounds storage growth.
"""

import asyncio
import json
import time
from collections.abc import Callable
from typing import Any

from kv_gateway.observability import get_logger
from kv_gateway.protocols.database import Database
from kv_gateway.protocols.storage import ListedKey, ListResult, PutOptions, ValueWithMetadata
from kv_gateway.utils.cursor import ListCursor, resolve_offset
from kv_gateway.utils.validation import validate_list_limit

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    metadata TEXT,
    expiration INTEGER,
    created_at INTEGER NOT NULL DEFAULT (CAST(strftime('%s', 'now') AS INTEGER)),
    updated_at INTEGER NOT NULL DEFAULT (CAST(strftime('%s', 'now') AS INTEGER))
);
CREATE INDEX IF NOT EXISTS idx_kv_store_expiration
    ON kv_store(expiration) WHERE expiration IS NOT NULL;
"""

UNEXPIRED = "(expiration IS NULL OR expiration > :now)"

# D1 caps bound parameters per statement at 100
IN_CLAUSE_CHUNK = 50


def _decode_metadata(raw: str | None) -> Any:
    return json.loads(raw) if raw is not None else None


class RelationalKVStorage:
    """KVStorage implementation over any ``Database`` backend.

    Example:
        storage = RelationalKVStorage(database=SQLiteDatabase(":memory:"))
        await storage.put("user:1", "Alice", PutOptions(expiration_ttl=3600))
        await storage.get("user:1")
    """

    def __init__(
        self,
        database: Database | None = None,
        clock: Callable[[], float] = time.time,
        **kwargs: Any,
    ) -> None:
        """Initialize relational storage.

        Args:
            database: SQL backend holding the ``kv_store`` table
            clock: Returns the current epoch time in seconds
            **kwargs: Ignored (for compatibility with other backends)
        """
        if database is None:
            raise ValueError("RelationalKVStorage requires a database backend")

        self.database = database
        self._clock = clock
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    def _now(self) -> int:
        return int(self._clock())

    async def _ensure_schema(self) -> None:
        """Create the table on first use."""
        if self._schema_ready:
            return

        async with self._schema_lock:
            if self._schema_ready:
                return
            await self.database.execute_script(SCHEMA)
            self._schema_ready = True
            logger.info("kv_store schema ready")

    async def _select_many(self, keys: list[str], columns: str) -> dict[str, Any]:
        """Fetch unexpired rows for ``keys``, keyed by record key."""
        found: dict[str, Any] = {}
        unique = list(dict.fromkeys(keys))
        now = self._now()

        for start in range(0, len(unique), IN_CLAUSE_CHUNK):
            chunk = unique[start:start + IN_CLAUSE_CHUNK]
            params: dict[str, Any] = {f"k{i}": key for i, key in enumerate(chunk)}
            params["now"] = now
            placeholders = ", ".join(f":k{i}" for i in range(len(chunk)))
            rows = await self.database.execute(
                f"SELECT {columns} FROM kv_store "
                f"WHERE key IN ({placeholders}) AND {UNEXPIRED}",
                params,
            )
            for row in rows:
                found[row["key"]] = row

        return found

    async def get(self, key: str, cache_ttl: int | None = None) -> str | None:
        """Get a value by key."""
        await self._ensure_schema()
        rows = await self.database.execute(
            f"SELECT value FROM kv_store WHERE key = :key AND {UNEXPIRED}",
            {"key": key, "now": self._now()},
        )
        return rows[0]["value"] if rows else None

    async def get_many(
        self,
        keys: list[str],
        cache_ttl: int | None = None,
    ) -> dict[str, str | None]:
        """Get several values; absent keys map to None."""
        await self._ensure_schema()
        found = await self._select_many(keys, "key, value")
        return {key: found[key]["value"] if key in found else None for key in keys}

    async def get_with_metadata(
        self,
        key: str,
        cache_ttl: int | None = None,
    ) -> ValueWithMetadata:
        """Get a value and its metadata."""
        await self._ensure_schema()
        rows = await self.database.execute(
            f"SELECT value, metadata FROM kv_store WHERE key = :key AND {UNEXPIRED}",
            {"key": key, "now": self._now()},
        )
        if not rows:
            return ValueWithMetadata(value=None, metadata=None)
        return ValueWithMetadata(
            value=rows[0]["value"],
            metadata=_decode_metadata(rows[0]["metadata"]),
        )

    async def get_many_with_metadata(
        self,
        keys: list[str],
        cache_ttl: int | None = None,
    ) -> dict[str, ValueWithMetadata]:
        """Get several values with metadata; absent keys carry None."""
        await self._ensure_schema()
        found = await self._select_many(keys, "key, value, metadata")

        result: dict[str, ValueWithMetadata] = {}
        for key in keys:
            row = found.get(key)
            if row is None:
                result[key] = ValueWithMetadata(value=None, metadata=None)
            else:
                result[key] = ValueWithMetadata(
                    value=row["value"],
                    metadata=_decode_metadata(row["metadata"]),
                )
        return result

    async def put(self, key: str, value: str, options: PutOptions | None = None) -> None:
        """Create or fully replace a record."""
        await self._ensure_schema()
        options = options or PutOptions()
        now = self._now()

        expiration = options.expiration
        if expiration is None and options.expiration_ttl is not None:
            expiration = now + options.expiration_ttl

        metadata = json.dumps(options.metadata) if options.metadata is not None else None

        # created_at survives overwrites of a live record only
        await self.database.execute_write(
            "INSERT INTO kv_store (key, value, metadata, expiration, created_at, updated_at) "
            "VALUES (:key, :value, :metadata, :expiration, :now, :now) "
            "ON CONFLICT(key) DO UPDATE SET "
            "value = excluded.value, "
            "metadata = excluded.metadata, "
            "expiration = excluded.expiration, "
            "updated_at = excluded.updated_at, "
            "created_at = CASE WHEN kv_store.expiration IS NOT NULL "
            "AND kv_store.expiration <= :now "
            "THEN excluded.created_at ELSE kv_store.created_at END",
            {
                "key": key,
                "value": value,
                "metadata": metadata,
                "expiration": expiration,
                "now": now,
            },
        )

    async def delete(self, key: str) -> None:
        """Delete a key. Deleting an absent key is not an error."""
        await self._ensure_schema()
        await self.database.execute_write(
            "DELETE FROM kv_store WHERE key = :key",
            {"key": key},
        )

    async def list(
        self,
        prefix: str = "",
        limit: int | None = None,
        cursor: str | None = None,
    ) -> ListResult:
        """List unexpired keys by prefix, one page at a time.

        Reads ``limit + 1`` rows so completeness is known without a second
        query.
        """
        await self._ensure_schema()
        prefix = prefix or ""
        limit = validate_list_limit(limit)
        offset = resolve_offset(cursor, prefix)

        # substr comparison keeps the match binary; LIKE would fold ASCII case
        # and treat "_" and "%" in the prefix as wildcards
        rows = await self.database.execute(
            "SELECT key, metadata, expiration FROM kv_store "
            f"WHERE substr(key, 1, :prefix_len) = :prefix AND {UNEXPIRED} "
            "ORDER BY key LIMIT :fetch OFFSET :offset",
            {
                "prefix_len": len(prefix),
                "prefix": prefix,
                "now": self._now(),
                "fetch": limit + 1,
                "offset": offset,
            },
        )

        keys = [
            ListedKey(
                name=row["key"],
                expiration=row["expiration"],
                metadata=_decode_metadata(row["metadata"]),
            )
            for row in rows[:limit]
        ]

        if len(rows) > limit:
            return ListResult(
                keys=keys,
                list_complete=False,
                cursor=ListCursor(offset=offset + limit, prefix=prefix).encode(),
            )
        return ListResult(keys=keys, list_complete=True)

    async def cleanup_expired(self) -> int:
        """Physically delete expired rows. Returns the number removed."""
        await self._ensure_schema()
        removed = await self.database.execute_write(
            "DELETE FROM kv_store WHERE expiration IS NOT NULL AND expiration <= :now",
            {"now": self._now()},
        )
        if removed:
            logger.info("Removed expired records", context={"removed": removed})
        return removed

    async def close(self) -> None:
        """Close the underlying database."""
        await self.database.close()
