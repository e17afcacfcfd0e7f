"""Cloudflare Workers KV storage backend."""

import json
from typing import Any
from urllib.parse import quote

import httpx

from kv_gateway.backends.cloudflare_api import DEFAULT_BASE_URL, CloudflareAPI
from kv_gateway.protocols.storage import ListedKey, ListResult, PutOptions, ValueWithMetadata
from kv_gateway.utils.validation import validate_list_limit

# Workers KV bulk reads accept at most 100 keys per request
BULK_GET_MAX_KEYS = 100


class CloudflareKVStorage:
    """Cloudflare Workers KV storage backend.

    Uses the Workers KV REST API. Expiry, consistency and per-key write
    rate limits are enforced by Cloudflare; 429 responses surface as
    ``RateLimitedError``. ``cache_ttl`` is an edge-cache hint that the REST
    API does not expose and is accepted only for contract compatibility.
    """

    def __init__(
        self,
        account_id: str | None = None,
        namespace_id: str | None = None,
        api_token: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize Cloudflare KV storage.

        Args:
            account_id: Cloudflare account ID
            namespace_id: KV namespace ID
            api_token: Cloudflare API token
            base_url: API root
            timeout_seconds: Per-request timeout
            transport: Optional httpx transport (tests)
            **kwargs: Ignored
        """
        if not account_id or not namespace_id or not api_token:
            raise ValueError(
                "CloudflareKVStorage requires account_id, namespace_id and api_token. "
                "Use 'memory' or 'relational' backend for development."
            )

        self.namespace_id = namespace_id
        self._api = CloudflareAPI(
            account_id=account_id,
            api_token=api_token,
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            transport=transport,
        )
        self._prefix = f"/storage/kv/namespaces/{namespace_id}"

    def _value_path(self, key: str) -> str:
        return f"{self._prefix}/values/{quote(key, safe='')}"

    async def _bulk_get(self, keys: list[str], with_metadata: bool) -> dict[str, Any]:
        """Call the bulk read endpoint in chunks; returns raw per-key entries."""
        found: dict[str, Any] = {}
        unique = list(dict.fromkeys(keys))
        for start in range(0, len(unique), BULK_GET_MAX_KEYS):
            chunk = unique[start:start + BULK_GET_MAX_KEYS]
            response = await self._api.request(
                "POST",
                f"{self._prefix}/bulk/get",
                json={"keys": chunk, "type": "text", "withMetadata": with_metadata},
            )
            values = (response.json().get("result") or {}).get("values") or {}
            found.update(values)
        return found

    async def get(self, key: str, cache_ttl: int | None = None) -> str | None:
        """Get a value by key."""
        response = await self._api.request("GET", self._value_path(key), allow_not_found=True)
        if response.status_code == 404:
            return None
        return response.text

    async def get_many(
        self,
        keys: list[str],
        cache_ttl: int | None = None,
    ) -> dict[str, str | None]:
        """Get several values; absent keys map to None."""
        found = await self._bulk_get(keys, with_metadata=False)
        return {key: found.get(key) for key in keys}

    async def get_with_metadata(
        self,
        key: str,
        cache_ttl: int | None = None,
    ) -> ValueWithMetadata:
        """Get a value and its metadata in one bulk round trip."""
        result = await self.get_many_with_metadata([key], cache_ttl)
        return result[key]

    async def get_many_with_metadata(
        self,
        keys: list[str],
        cache_ttl: int | None = None,
    ) -> dict[str, ValueWithMetadata]:
        """Get several values with metadata."""
        found = await self._bulk_get(keys, with_metadata=True)
        result: dict[str, ValueWithMetadata] = {}
        for key in keys:
            entry = found.get(key)
            if entry is None:
                result[key] = ValueWithMetadata(value=None, metadata=None)
            else:
                result[key] = ValueWithMetadata(
                    value=entry.get("value"),
                    metadata=entry.get("metadata"),
                )
        return result

    async def put(self, key: str, value: str, options: PutOptions | None = None) -> None:
        """Create or fully replace a record."""
        options = options or PutOptions()
        params: dict[str, int] = {}
        if options.expiration is not None:
            params["expiration"] = options.expiration
        if options.expiration_ttl is not None:
            params["expiration_ttl"] = options.expiration_ttl

        # Multipart so value and metadata are replaced together
        form: dict[str, tuple[None, str]] = {"value": (None, value)}
        if options.metadata is not None:
            form["metadata"] = (None, json.dumps(options.metadata))

        await self._api.request("PUT", self._value_path(key), params=params, files=form)

    async def delete(self, key: str) -> None:
        """Delete a key. Workers KV treats missing keys as deleted."""
        await self._api.request("DELETE", self._value_path(key), allow_not_found=True)

    async def list(
        self,
        prefix: str = "",
        limit: int | None = None,
        cursor: str | None = None,
    ) -> ListResult:
        """List keys with the namespace's native cursor."""
        params: dict[str, str | int] = {"limit": validate_list_limit(limit)}
        if prefix:
            params["prefix"] = prefix
        if cursor:
            params["cursor"] = cursor

        response = await self._api.request("GET", f"{self._prefix}/keys", params=params)
        payload = response.json()

        keys = [
            ListedKey(
                name=item["name"],
                expiration=item.get("expiration"),
                metadata=item.get("metadata"),
            )
            for item in payload.get("result") or []
        ]
        next_cursor = (payload.get("result_info") or {}).get("cursor") or None

        return ListResult(
            keys=keys,
            list_complete=next_cursor is None,
            cursor=next_cursor,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._api.close()
