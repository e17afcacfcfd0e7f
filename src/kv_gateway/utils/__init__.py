"""Utility modules."""

from kv_gateway.utils.cursor import ListCursor, resolve_offset
from kv_gateway.utils.validation import validate_expiration, validate_key, validate_list_limit

__all__ = [
    "ListCursor",
    "resolve_offset",
    "validate_expiration",
    "validate_key",
    "validate_list_limit",
]
