"""KVStorage protocol shared by every storage backend."""

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class PutOptions:
    """Options for a write.

    ``expiration`` is an absolute epoch timestamp in seconds,
    ``expiration_ttl`` a relative lifetime resolved at write time.
    """

    expiration: int | None = None
    expiration_ttl: int | None = None
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class ValueWithMetadata:
    """A value read together with its metadata.

    ``value`` is None when the key is absent.
    """

    value: str | None
    metadata: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"value": self.value, "metadata": self.metadata}


@dataclass(frozen=True)
class ListedKey:
    """A key returned by a listing."""

    name: str
    expiration: int | None = None
    metadata: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, omitting unset fields."""
        result: dict[str, Any] = {"name": self.name}
        if self.expiration is not None:
            result["expiration"] = self.expiration
        if self.metadata is not None:
            result["metadata"] = self.metadata
        return result


@dataclass
class ListResult:
    """One page of a listing."""

    keys: list[ListedKey] = field(default_factory=list)
    list_complete: bool = True
    cursor: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire shape (cursor only on incomplete pages)."""
        result: dict[str, Any] = {
            "keys": [k.to_dict() for k in self.keys],
            "list_complete": self.list_complete,
        }
        if not self.list_complete and self.cursor:
            result["cursor"] = self.cursor
        return result


@runtime_checkable
class KVStorage(Protocol):
    """Protocol for key-value storage backends (Workers KV, SQL emulation)."""

    async def get(self, key: str, cache_ttl: int | None = None) -> str | None:
        """Get a value by key. Returns None if absent or expired."""
        ...

    async def get_many(
        self,
        keys: list[str],
        cache_ttl: int | None = None,
    ) -> dict[str, str | None]:
        """Get several values. Every requested key is present in the result."""
        ...

    async def get_with_metadata(
        self,
        key: str,
        cache_ttl: int | None = None,
    ) -> ValueWithMetadata:
        """Get a value and its metadata."""
        ...

    async def get_many_with_metadata(
        self,
        keys: list[str],
        cache_ttl: int | None = None,
    ) -> dict[str, ValueWithMetadata]:
        """Get several values with metadata, covering every requested key."""
        ...

    async def put(self, key: str, value: str, options: PutOptions | None = None) -> None:
        """Create or fully replace a record."""
        ...

    async def delete(self, key: str) -> None:
        """Delete a key. No-op if key doesn't exist."""
        ...

    async def list(
        self,
        prefix: str = "",
        limit: int | None = None,
        cursor: str | None = None,
    ) -> ListResult:
        """List unexpired keys matching a prefix, sorted by name."""
        ...
