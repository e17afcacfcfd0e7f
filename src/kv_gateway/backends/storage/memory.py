"""In-memory key-value storage."""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kv_gateway.protocols.storage import ListedKey, ListResult, PutOptions, ValueWithMetadata
from kv_gateway.utils.cursor import ListCursor, resolve_offset
from kv_gateway.utils.validation import validate_list_limit


@dataclass
class MemoryRecord:
    """A stored value with optional expiration."""

    value: str
    metadata: Any = None
    expiration: int | None = None

    def is_expired(self, now: int) -> bool:
        """Check if this record has expired at ``now``."""
        return self.expiration is not None and now >= self.expiration


class MemoryKVStorage:
    """In-memory key-value storage.

    Suitable for development and testing. Data is lost on restart.
    Expired records are hidden on read and dropped by ``cleanup_expired``.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        **kwargs: Any,
    ) -> None:
        """Initialize memory storage.

        Args:
            clock: Returns the current epoch time in seconds
            **kwargs: Ignored (for compatibility with other backends)
        """
        self._data: dict[str, MemoryRecord] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    def _live(self, key: str, now: int) -> MemoryRecord | None:
        record = self._data.get(key)
        if record is None or record.is_expired(now):
            return None
        return record

    async def get(self, key: str, cache_ttl: int | None = None) -> str | None:
        """Get a value by key."""
        async with self._lock:
            record = self._live(key, self._now())
            return record.value if record else None

    async def get_many(
        self,
        keys: list[str],
        cache_ttl: int | None = None,
    ) -> dict[str, str | None]:
        """Get several values; absent keys map to None."""
        async with self._lock:
            now = self._now()
            result: dict[str, str | None] = {}
            for key in keys:
                record = self._live(key, now)
                result[key] = record.value if record else None
            return result

    async def get_with_metadata(
        self,
        key: str,
        cache_ttl: int | None = None,
    ) -> ValueWithMetadata:
        """Get a value and its metadata."""
        async with self._lock:
            record = self._live(key, self._now())
            if record is None:
                return ValueWithMetadata(value=None, metadata=None)
            return ValueWithMetadata(value=record.value, metadata=record.metadata)

    async def get_many_with_metadata(
        self,
        keys: list[str],
        cache_ttl: int | None = None,
    ) -> dict[str, ValueWithMetadata]:
        """Get several values with metadata."""
        async with self._lock:
            now = self._now()
            result: dict[str, ValueWithMetadata] = {}
            for key in keys:
                record = self._live(key, now)
                if record is None:
                    result[key] = ValueWithMetadata(value=None, metadata=None)
                else:
                    result[key] = ValueWithMetadata(value=record.value, metadata=record.metadata)
            return result

    async def put(self, key: str, value: str, options: PutOptions | None = None) -> None:
        """Create or fully replace a record."""
        options = options or PutOptions()
        now = self._now()
        expiration = options.expiration
        if expiration is None and options.expiration_ttl is not None:
            expiration = now + options.expiration_ttl

        async with self._lock:
            self._data[key] = MemoryRecord(
                value=value,
                metadata=options.metadata,
                expiration=expiration,
            )

    async def delete(self, key: str) -> None:
        """Delete a key."""
        async with self._lock:
            self._data.pop(key, None)

    async def list(
        self,
        prefix: str = "",
        limit: int | None = None,
        cursor: str | None = None,
    ) -> ListResult:
        """List unexpired keys matching a prefix."""
        prefix = prefix or ""
        limit = validate_list_limit(limit)
        offset = resolve_offset(cursor, prefix)

        async with self._lock:
            now = self._now()
            names = sorted(
                k for k, v in self._data.items()
                if k.startswith(prefix) and not v.is_expired(now)
            )
            page = names[offset:offset + limit + 1]
            keys = [
                ListedKey(
                    name=name,
                    expiration=self._data[name].expiration,
                    metadata=self._data[name].metadata,
                )
                for name in page[:limit]
            ]

        if len(page) > limit:
            return ListResult(
                keys=keys,
                list_complete=False,
                cursor=ListCursor(offset=offset + limit, prefix=prefix).encode(),
            )
        return ListResult(keys=keys, list_complete=True)

    async def cleanup_expired(self) -> int:
        """Drop expired records. Returns the number removed."""
        async with self._lock:
            now = self._now()
            expired = [k for k, v in self._data.items() if v.is_expired(now)]
            for k in expired:
                del self._data[k]
            return len(expired)

    async def clear(self) -> None:
        """Clear all data. Useful for testing."""
        async with self._lock:
            self._data.clear()

    async def close(self) -> None:
        """Nothing to release."""
