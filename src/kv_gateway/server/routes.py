"""HTTP route handlers for the key-value REST API.

Every handler runs through ``kv_operation``, which turns gateway exceptions
into JSON error bodies of the form ``{"error": ..., "hint": ...}``.
"""

import functools
import json
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from kv_gateway import __version__
from kv_gateway.bulk import BulkWritePair
from kv_gateway.exceptions import KeyNotFoundError, RateLimitedError, StorageError, ValidationError
from kv_gateway.observability import get_logger, operation_var
from kv_gateway.protocols.storage import PutOptions
from kv_gateway.server.schemas import (
    BatchRequest,
    BulkDeleteRequest,
    BulkWriteRequest,
    PostRequest,
    PutRequest,
    parse_body,
    serialize_value,
)
from kv_gateway.utils.validation import validate_expiration, validate_key

if TYPE_CHECKING:
    from kv_gateway.gateway import KVGateway

logger = get_logger(__name__)

Handler = Callable[[Request], Awaitable[Response]]

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Maximum 1 write per second to the same key."
VALUE_TYPES = ("text", "json")


class KVJSONResponse(JSONResponse):
    """JSON response that can echo keys holding lone surrogates.

    Such characters only occur inside JSON strings, where ``backslashreplace``
    yields a valid ``\\uXXXX`` escape.
    """

    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8", "backslashreplace")


def error_response(message: str, status_code: int, hint: str | None = None) -> KVJSONResponse:
    """Build the JSON error body."""
    content: dict[str, Any] = {"error": message}
    if hint:
        content["hint"] = hint
    return KVJSONResponse(content, status_code=status_code)


def decode_value(value: str | None, value_type: str) -> Any:
    """Return a stored value as text, or parsed when ``type=json`` was asked for."""
    if value is None or value_type != "json":
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        raise ValidationError(
            "Stored value is not valid JSON",
            hint="Read it with type=text",
        ) from None


def read_options(request: Request) -> tuple[str, int | None]:
    """Parse the ``type`` and ``cacheTtl`` query parameters."""
    value_type = request.query_params.get("type", "text")
    if value_type not in VALUE_TYPES:
        raise ValidationError("type must be one of: text, json")
    return value_type, int_param(request, "cacheTtl")


def int_param(request: Request, name: str) -> int | None:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer") from None


async def json_body(request: Request) -> Any:
    try:
        return await request.json()
    except json.JSONDecodeError:
        raise ValidationError("Invalid JSON body") from None


def written(key: str) -> KVJSONResponse:
    return KVJSONResponse(
        {"success": True, "key": key, "message": "Key-value pair written successfully"},
        status_code=201,
    )


def create_routes(gateway: "KVGateway") -> list[Route]:
    """Create HTTP routes for the gateway.

    Args:
        gateway: The configured KVGateway instance

    Returns:
        List of Starlette routes, relative to the mount point
    """

    def kv_operation(name: str, single_write: bool = False) -> Callable[[Handler], Handler]:
        """Initialize the gateway, tag the operation and map errors to responses.

        Args:
            name: Operation name used in logs and metrics
            single_write: Whether rate limiting surfaces as 429
        """

        def decorator(handler: Handler) -> Handler:
            @functools.wraps(handler)
            async def wrapper(request: Request) -> Response:
                operation_var.set(name)
                try:
                    await gateway.initialize()
                    return await handler(request)
                except ValidationError as e:
                    return error_response(str(e), 400, e.hint)
                except KeyNotFoundError as e:
                    return error_response(str(e), 404)
                except RateLimitedError as e:
                    if single_write:
                        logger.warning("Single write rate limited", context={"operation": name})
                        return error_response(RATE_LIMIT_MESSAGE, 429)
                    logger.error("Storage operation failed", error=e)
                    return error_response(str(e), 500)
                except StorageError as e:
                    logger.error("Storage operation failed", error=e)
                    return error_response(str(e), 500)
                except Exception as e:
                    logger.error("Unexpected failure", context={"operation": name}, error=e)
                    return error_response(str(e) or type(e).__name__, 500)

            return wrapper

        return decorator

    async def index(request: Request) -> Response:
        """Service index."""
        return KVJSONResponse(
            {
                "message": "KV Gateway API",
                "version": __version__,
            }
        )

    async def health(request: Request) -> Response:
        """Health check endpoint."""
        return KVJSONResponse(
            {
                "status": "ok",
                "timestamp": time.time(),
            }
        )

    @kv_operation("kv.get")
    async def get_value(request: Request) -> Response:
        """Read one key as text or parsed JSON."""
        key = validate_key(request.path_params["key"])
        value_type, cache_ttl = read_options(request)

        value = await gateway.storage.get(key, cache_ttl)
        if value is None:
            raise KeyNotFoundError("Key not found")
        return KVJSONResponse({"key": key, "value": decode_value(value, value_type)})

    @kv_operation("kv.get_with_metadata")
    async def get_value_with_metadata(request: Request) -> Response:
        """Read one key together with its metadata."""
        key = validate_key(request.path_params["key"])
        value_type, cache_ttl = read_options(request)

        result = await gateway.storage.get_with_metadata(key, cache_ttl)
        if result.value is None:
            raise KeyNotFoundError("Key not found")
        return KVJSONResponse(
            {
                "key": key,
                "value": decode_value(result.value, value_type),
                "metadata": result.metadata,
            }
        )

    @kv_operation("kv.batch_get")
    async def batch_get(request: Request) -> Response:
        """Read up to 100 keys; absent keys map to null."""
        body = parse_body(BatchRequest, await json_body(request))
        values = await gateway.batch_reader.read(body.keys, body.cache_ttl)
        return KVJSONResponse(
            {"values": {key: decode_value(value, body.type) for key, value in values.items()}}
        )

    @kv_operation("kv.batch_get_with_metadata")
    async def batch_get_with_metadata(request: Request) -> Response:
        """Read up to 100 keys with their metadata."""
        body = parse_body(BatchRequest, await json_body(request))
        results = await gateway.batch_reader.read_with_metadata(body.keys, body.cache_ttl)
        return KVJSONResponse(
            {
                "values": {
                    key: {
                        "value": decode_value(result.value, body.type),
                        "metadata": result.metadata,
                    }
                    for key, result in results.items()
                }
            }
        )

    @kv_operation("kv.list")
    async def list_keys(request: Request) -> Response:
        """List keys by prefix, one page at a time."""
        result = await gateway.storage.list(
            prefix=request.query_params.get("prefix", ""),
            limit=int_param(request, "limit"),
            cursor=request.query_params.get("cursor") or None,
        )
        return KVJSONResponse(result.to_dict())

    async def write(key: str, body: PutRequest) -> Response:
        validate_key(key)
        validate_expiration(body.expiration, body.expiration_ttl)
        await gateway.storage.put(
            key,
            serialize_value(body.value),
            PutOptions(
                expiration=body.expiration,
                expiration_ttl=body.expiration_ttl,
                metadata=body.metadata,
            ),
        )
        return written(key)

    @kv_operation("kv.create", single_write=True)
    async def create_value(request: Request) -> Response:
        """Write a key named in the body."""
        body = parse_body(PostRequest, await json_body(request))
        return await write(body.key, body)

    @kv_operation("kv.put", single_write=True)
    async def put_value(request: Request) -> Response:
        """Create or replace the key named in the path."""
        body = parse_body(PutRequest, await json_body(request))
        return await write(request.path_params["key"], body)

    @kv_operation("kv.bulk_write")
    async def bulk_write(request: Request) -> Response:
        """Write up to 10,000 pairs; 207 when any entry failed."""
        body = parse_body(BulkWriteRequest, await json_body(request))
        pairs = [
            BulkWritePair(
                key=pair.key,
                value=serialize_value(pair.value),
                expiration=pair.expiration,
                expiration_ttl=pair.expiration_ttl,
                metadata=pair.metadata,
            )
            for pair in body.pairs
        ]
        result = await gateway.bulk_writer.write(pairs)
        return KVJSONResponse(result.to_dict(), status_code=201 if result.success else 207)

    @kv_operation("kv.delete")
    async def delete_value(request: Request) -> Response:
        """Delete one key. Deleting an absent key succeeds."""
        key = validate_key(request.path_params["key"])
        await gateway.storage.delete(key)
        return KVJSONResponse({"success": True, "key": key, "message": "Key deleted successfully"})

    @kv_operation("kv.bulk_delete")
    async def bulk_delete(request: Request) -> Response:
        """Delete many keys; per-key failures are reported, not raised."""
        body = parse_body(BulkDeleteRequest, await json_body(request))
        result = await gateway.bulk_deleter.delete(body.keys)
        return KVJSONResponse(result.to_dict())

    return [
        Route("/", index, methods=["GET"]),
        Route("/health", health, methods=["GET"]),
        Route("/kv", list_keys, methods=["GET"]),
        Route("/kv", create_value, methods=["POST"]),
        Route("/kv/batch", batch_get, methods=["POST"]),
        Route("/kv/batch/metadata", batch_get_with_metadata, methods=["POST"]),
        Route("/kv/bulk", bulk_write, methods=["POST"]),
        Route("/kv/bulk/delete", bulk_delete, methods=["POST"]),
        Route("/kv/{key:path}/metadata", get_value_with_metadata, methods=["GET"]),
        Route("/kv/{key:path}", get_value, methods=["GET"]),
        Route("/kv/{key:path}", put_value, methods=["PUT"]),
        Route("/kv/{key:path}", delete_value, methods=["DELETE"]),
    ]
