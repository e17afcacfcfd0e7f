"""Async HTTP client for a running kv-gateway.

Example:
    async with KVClient.from_env() as kv:
        await kv.put("user:1", {"name": "Alice"}, expiration_ttl=3600)
        item = await kv.get("user:1")
"""

import os
import time
from collections.abc import Callable, Generator
from typing import Any
from urllib.parse import quote

import httpx

from kv_gateway.auth.gate import BODYLESS_METHODS, sign_request
from kv_gateway.exceptions import KVClientError

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_BASE_PATH = "/api/v1"


class HMACAuth(httpx.Auth):
    """Sign each request with ``X-Signature`` and ``X-Timestamp``.

    The signed path is the one httpx puts on the wire, so percent-encoded
    keys sign exactly as the server sees them.
    """

    requires_request_body = True

    def __init__(self, secret_key: str, clock: Callable[[], float] = time.time) -> None:
        self._secret_key = secret_key
        self._clock = clock

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        timestamp = str(int(self._clock() * 1000))
        path = request.url.raw_path.split(b"?", 1)[0].decode("ascii")
        body = b"" if request.method in BODYLESS_METHODS else request.content
        request.headers["X-Signature"] = sign_request(
            self._secret_key, request.method, path, timestamp, body
        )
        request.headers["X-Timestamp"] = timestamp
        yield request


def _write_body(
    value: Any,
    expiration: int | None,
    expiration_ttl: int | None,
    metadata: dict[str, Any] | None,
) -> dict[str, Any]:
    body: dict[str, Any] = {"value": value}
    if expiration is not None:
        body["expiration"] = expiration
    if expiration_ttl is not None:
        body["expirationTtl"] = expiration_ttl
    if metadata is not None:
        body["metadata"] = metadata
    return body


class KVClient:
    """Client for the kv-gateway REST API.

    Authenticates with either a bearer token (server-side callers) or an
    HMAC signature derived from the shared secret.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        secret_key: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        base_path: str = DEFAULT_BASE_PATH,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Gateway origin, e.g. ``https://kv.example.com``
            token: Shared secret sent as a bearer token
            secret_key: Shared secret used to sign requests instead
            timeout_seconds: Per-request timeout
            base_path: Path the API is mounted under
            transport: Custom httpx transport (for testing)
        """
        if (token is None) == (secret_key is None):
            raise ValueError("Provide exactly one of token or secret_key")

        headers = {"Content-Type": "application/json"}
        auth: httpx.Auth | None = None
        if token is not None:
            headers["Authorization"] = f"Bearer {token}"
        else:
            auth = HMACAuth(secret_key)  # type: ignore[arg-type]

        self.timeout_seconds = timeout_seconds
        self._prefix = "/" + base_path.strip("/") if base_path.strip("/") else ""
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            auth=auth,
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_env(
        cls,
        url_key: str = "KV_API_URL",
        token_key: str = "KV_API_TOKEN",
        timeout_key: str = "KV_API_TIMEOUT",
    ) -> "KVClient":
        """Create a bearer-token client from environment variables.

        ``KV_API_TIMEOUT`` is in milliseconds and optional.

        Raises:
            ValueError: If a variable is missing or the timeout is not a number
        """
        base_url = os.environ.get(url_key)
        token = os.environ.get(token_key)
        if not base_url:
            raise ValueError(f"Environment variable {url_key} is not set")
        if not token:
            raise ValueError(f"Environment variable {token_key} is not set")

        timeout_seconds = DEFAULT_TIMEOUT_SECONDS
        raw_timeout = os.environ.get(timeout_key)
        if raw_timeout:
            try:
                timeout_seconds = int(raw_timeout) / 1000
            except ValueError:
                raise ValueError(f"Environment variable {timeout_key} must be a valid number") from None

        return cls(base_url, token=token, timeout_seconds=timeout_seconds)

    def _key_path(self, key: str, suffix: str = "") -> str:
        return f"{self._prefix}/kv/{quote(key, safe='')}{suffix}"

    async def _request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        try:
            response = await self._client.request(
                method,
                path,
                json=json,
                params={k: v for k, v in (params or {}).items() if v is not None},
            )
        except httpx.TimeoutException:
            raise KVClientError(f"Request timeout after {self.timeout_seconds}s") from None
        except httpx.HTTPError as e:
            raise KVClientError(f"Request failed: {e}") from e

        if response.is_error:
            try:
                message = response.json().get("error")
            except ValueError:
                message = None
            raise KVClientError(
                message or f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )
        return response.json()

    async def get(self, key: str, type: str = "json") -> dict[str, Any]:
        """Get ``{"key", "value"}`` for one key."""
        return await self._request("GET", self._key_path(key), params={"type": type})

    async def get_with_metadata(self, key: str, type: str = "json") -> dict[str, Any]:
        """Get ``{"key", "value", "metadata"}`` for one key."""
        return await self._request("GET", self._key_path(key, "/metadata"), params={"type": type})

    async def batch_get(
        self,
        keys: list[str],
        type: str = "text",
        cache_ttl: int | None = None,
    ) -> dict[str, Any]:
        """Get several values; absent keys map to None."""
        body: dict[str, Any] = {"keys": keys, "type": type}
        if cache_ttl is not None:
            body["cacheTtl"] = cache_ttl
        response = await self._request("POST", f"{self._prefix}/kv/batch", json=body)
        return response["values"]

    async def batch_get_with_metadata(
        self,
        keys: list[str],
        type: str = "text",
        cache_ttl: int | None = None,
    ) -> dict[str, dict[str, Any]]:
        """Get several values with their metadata."""
        body: dict[str, Any] = {"keys": keys, "type": type}
        if cache_ttl is not None:
            body["cacheTtl"] = cache_ttl
        response = await self._request("POST", f"{self._prefix}/kv/batch/metadata", json=body)
        return response["values"]

    async def put(
        self,
        key: str,
        value: Any,
        expiration: int | None = None,
        expiration_ttl: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Create or replace a key."""
        await self._request(
            "PUT",
            self._key_path(key),
            json=_write_body(value, expiration, expiration_ttl, metadata),
        )

    async def create(
        self,
        key: str,
        value: Any,
        expiration: int | None = None,
        expiration_ttl: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Write a key through ``POST /kv``."""
        body = _write_body(value, expiration, expiration_ttl, metadata)
        body["key"] = key
        await self._request("POST", f"{self._prefix}/kv", json=body)

    async def bulk_write(self, pairs: list[dict[str, Any]]) -> dict[str, Any]:
        """Write many pairs. A partial failure (207) is returned, not raised."""
        return await self._request("POST", f"{self._prefix}/kv/bulk", json={"pairs": pairs})

    async def delete(self, key: str) -> None:
        """Delete a key."""
        await self._request("DELETE", self._key_path(key))

    async def bulk_delete(self, keys: list[str]) -> dict[str, Any]:
        """Delete many keys."""
        return await self._request("POST", f"{self._prefix}/kv/bulk/delete", json={"keys": keys})

    async def health(self) -> dict[str, Any]:
        """Check that the gateway is up."""
        return await self._request("GET", f"{self._prefix}/health")

    async def list(
        self,
        prefix: str | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> dict[str, Any]:
        """List one page of keys."""
        return await self._request(
            "GET",
            f"{self._prefix}/kv",
            params={"prefix": prefix or None, "limit": limit, "cursor": cursor},
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "KVClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


def create_server_client(base_url: str, token: str, **kwargs: Any) -> KVClient:
    """Client authenticating with a bearer token."""
    return KVClient(base_url, token=token, **kwargs)


def create_browser_client(base_url: str, secret_key: str, **kwargs: Any) -> KVClient:
    """Client signing every request with HMAC."""
    return KVClient(base_url, secret_key=secret_key, **kwargs)
