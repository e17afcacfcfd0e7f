"""Input validation utilities."""

from kv_gateway.exceptions import ValidationError

MAX_KEY_LENGTH = 512

# Minimum relative expiration accepted by the hosted store
MIN_EXPIRATION_TTL = 60

MAX_BATCH_KEYS = 100
MAX_BULK_PAIRS = 10_000

DEFAULT_LIST_LIMIT = 1000
MAX_LIST_LIMIT = 1000

RESERVED_KEYS = frozenset({".", ".."})


def validate_key(key: str) -> str:
    """Validate a record key.

    Args:
        key: The key to validate

    Returns:
        The validated key

    Raises:
        ValidationError: If the key is empty, reserved or too long
    """
    if not isinstance(key, str) or not key:
        raise ValidationError("Invalid key. Key cannot be empty")

    if key in RESERVED_KEYS:
        raise ValidationError('Invalid key. Key cannot be "." or ".."')

    if len(key) > MAX_KEY_LENGTH:
        raise ValidationError(
            f"Invalid key. Key exceeds maximum length of {MAX_KEY_LENGTH} characters"
        )

    return key


def validate_expiration(
    expiration: int | None = None,
    expiration_ttl: int | None = None,
) -> None:
    """Validate write expiration options.

    At most one of the absolute and relative forms may be given, and a
    relative TTL must be at least ``MIN_EXPIRATION_TTL`` seconds.

    Raises:
        ValidationError: If the options are inconsistent or out of range
    """
    if expiration is not None and expiration_ttl is not None:
        raise ValidationError(
            "Provide either expiration or expirationTtl, not both"
        )

    if expiration_ttl is not None and expiration_ttl < MIN_EXPIRATION_TTL:
        raise ValidationError(
            f"expirationTtl must be at least {MIN_EXPIRATION_TTL} seconds"
        )

    if expiration is not None and expiration <= 0:
        raise ValidationError("expiration must be a positive epoch timestamp")


def validate_list_limit(limit: int | None) -> int:
    """Normalize a list page size, applying the default when unset."""
    if limit is None:
        return DEFAULT_LIST_LIMIT
    if limit < 1 or limit > MAX_LIST_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_LIST_LIMIT}")
    return limit
