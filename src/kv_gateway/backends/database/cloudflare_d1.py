"""Cloudflare D1 database backend."""

from typing import Any

import httpx

from kv_gateway.backends.cloudflare_api import DEFAULT_BASE_URL, CloudflareAPI
from kv_gateway.exceptions import StorageError
from kv_gateway.protocols.database import Row, to_positional


class CloudflareD1Database:
    """Cloudflare D1 database backend.

    Uses the D1 REST query endpoint. Each call is one HTTP round trip and
    one implicitly committed statement.
    """

    def __init__(
        self,
        account_id: str | None = None,
        database_id: str | None = None,
        api_token: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize D1 database.

        Args:
            account_id: Cloudflare account ID
            database_id: D1 database ID
            api_token: Cloudflare API token
            base_url: API root
            timeout_seconds: Per-request timeout
            transport: Optional httpx transport (tests)
            **kwargs: Ignored
        """
        if not account_id or not database_id or not api_token:
            raise ValueError(
                "CloudflareD1Database requires account_id, database_id and api_token. "
                "Use 'sqlite' backend for development."
            )

        self.database_id = database_id
        self._api = CloudflareAPI(
            account_id=account_id,
            api_token=api_token,
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            transport=transport,
        )

    async def _query(self, sql: str, values: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        """Run SQL and return the per-statement result objects."""
        response = await self._api.request(
            "POST",
            f"/d1/database/{self.database_id}/query",
            json={"sql": sql, "params": list(values)},
        )
        payload = response.json()
        if not payload.get("success", False):
            errors = payload.get("errors") or [{}]
            raise StorageError(f"D1 query failed: {errors[0].get('message', 'unknown error')}")
        return payload.get("result") or []

    async def execute(
        self,
        query: str,
        params: dict[str, Any] | None = None,
    ) -> list[Row]:
        """Execute a query and return results."""
        sql, values = to_positional(query, params)
        results = await self._query(sql, values)
        if not results:
            return []
        return [Row(_data=row) for row in results[0].get("results") or []]

    async def execute_write(
        self,
        query: str,
        params: dict[str, Any] | None = None,
    ) -> int:
        """Execute a data-modifying statement and return rows changed."""
        sql, values = to_positional(query, params)
        results = await self._query(sql, values)
        if not results:
            return 0
        return int((results[0].get("meta") or {}).get("changes", 0))

    async def execute_script(self, script: str) -> None:
        """Execute several statements in one request."""
        await self._query(script)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._api.close()
