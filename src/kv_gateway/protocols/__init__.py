"""Protocol interfaces for pluggable backends."""

from kv_gateway.protocols.database import Database, Row
from kv_gateway.protocols.storage import (
    KVStorage,
    ListedKey,
    ListResult,
    PutOptions,
    ValueWithMetadata,
)

__all__ = [
    "Database",
    "KVStorage",
    "ListResult",
    "ListedKey",
    "PutOptions",
    "Row",
    "ValueWithMetadata",
]
