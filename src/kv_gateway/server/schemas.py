"""Request body models for the REST routes."""

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from kv_gateway.exceptions import ValidationError
from kv_gateway.utils.validation import MAX_BATCH_KEYS, MAX_BULK_PAIRS, MIN_EXPIRATION_TTL

ValueType = Literal["text", "json"]


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class BatchRequest(_Body):
    """Body of ``POST /kv/batch`` and ``POST /kv/batch/metadata``."""

    keys: list[str] = Field(min_length=1, max_length=MAX_BATCH_KEYS)
    type: ValueType = "text"
    cache_ttl: int | None = Field(default=None, alias="cacheTtl")


class PutRequest(_Body):
    """Body of ``PUT /kv/{key}``."""

    value: Any
    expiration: int | None = None
    expiration_ttl: int | None = Field(default=None, alias="expirationTtl", ge=MIN_EXPIRATION_TTL)
    metadata: dict[str, Any] | None = None


class PostRequest(PutRequest):
    """Body of ``POST /kv``: a write that names its key."""

    key: str


class BulkWritePairModel(_Body):
    """One bulk entry. Key and TTL checks run per entry, not per request."""

    key: str
    value: Any
    expiration: int | None = None
    expiration_ttl: int | None = Field(default=None, alias="expirationTtl")
    metadata: dict[str, Any] | None = None


class BulkWriteRequest(_Body):
    """Body of ``POST /kv/bulk``."""

    pairs: list[BulkWritePairModel] = Field(min_length=1, max_length=MAX_BULK_PAIRS)


class BulkDeleteRequest(_Body):
    """Body of ``POST /kv/bulk/delete``."""

    keys: list[str] = Field(min_length=1)


def serialize_value(value: Any) -> str:
    """Strings are stored as-is; anything else is stored as its JSON text."""
    if isinstance(value, str):
        return value
    return json.dumps(value)


def parse_body(model: type[_Body], payload: Any) -> Any:
    """Validate a decoded JSON body against ``model``.

    Raises:
        ValidationError: With the first violation as the hint
    """
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        message = first["msg"]
        if location:
            message = f"{location}: {message}"
        raise ValidationError("Invalid request body", hint=message) from None
