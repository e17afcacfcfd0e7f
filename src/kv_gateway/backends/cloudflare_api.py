"""Thin async client for the Cloudflare v4 REST API.

Shared by the Workers KV and D1 backends. Translates HTTP failures into
the storage error taxonomy; it never retries.
"""

from typing import Any

import httpx

from kv_gateway.exceptions import RateLimitedError, StorageError
from kv_gateway.observability import get_logger

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.cloudflare.com/client/v4"


def error_message(response: httpx.Response) -> str:
    """Extract the first API error message from a response."""
    try:
        errors = response.json().get("errors") or [{}]
        message = errors[0].get("message")
    except (ValueError, AttributeError, IndexError):
        message = None
    return message or f"HTTP {response.status_code}"


class CloudflareAPI:
    """Account-scoped Cloudflare API client."""

    def __init__(
        self,
        account_id: str,
        api_token: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            account_id: Cloudflare account ID
            api_token: API token with the required scopes
            base_url: API root, overridable for tests
            timeout_seconds: Per-request timeout
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.account_id = account_id
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/accounts/{account_id}",
            headers={"Authorization": f"Bearer {api_token}"},
            timeout=timeout_seconds,
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
            transport=transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        allow_not_found: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and raise on failure.

        Args:
            method: HTTP method
            path: Path relative to the account root
            allow_not_found: Return 404 responses instead of raising
            **kwargs: Passed to ``httpx.AsyncClient.request``

        Raises:
            RateLimitedError: On HTTP 429
            StorageError: On transport errors or any other non-2xx response
        """
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(
                "Cloudflare API request failed",
                context={"method": method, "path": path},
                error=e,
            )
            raise StorageError(f"Cloudflare API unreachable: {e}") from e

        if response.status_code == 404 and allow_not_found:
            return response

        if response.status_code == 429:
            raise RateLimitedError(f"429 Too Many Requests: {error_message(response)}")

        if response.is_error:
            raise StorageError(
                f"Cloudflare API error ({response.status_code}): {error_message(response)}"
            )

        return response

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
