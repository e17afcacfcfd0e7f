"""Tests for server routes."""

import asyncio
import json
import time

import pytest
from starlette.testclient import TestClient

from kv_gateway import __version__
from kv_gateway.auth.gate import sign_request
from kv_gateway.backends.database.sqlite import SQLiteDatabase
from kv_gateway.backends.storage.relational import RelationalKVStorage
from kv_gateway.exceptions import RateLimitedError, StorageError
from kv_gateway.gateway import KVGateway
from kv_gateway.protocols import PutOptions
from kv_gateway.server.app import create_app

SECRET = "routes-secret"
BASE = "/api/v1"


@pytest.fixture
def gateway(memory_storage, sleep) -> KVGateway:
    """Gateway over in-memory storage on the fake clock."""
    return KVGateway.from_dict(
        {"auth": {"secret_key": SECRET}},
        storage=memory_storage,
        sleep=sleep,
    )


@pytest.fixture
def client(gateway: KVGateway):
    """Authenticated test client with the app lifespan running."""
    with TestClient(create_app(gateway), headers={"Authorization": f"Bearer {SECRET}"}) as client:
        yield client


class TestIndexAndHealth:
    """Tests for the public endpoints."""

    def test_health_is_public(self, gateway: KVGateway) -> None:
        """Health needs no credentials."""
        response = TestClient(create_app(gateway)).get(f"{BASE}/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert "timestamp" in response.json()

    def test_index_is_public(self, gateway: KVGateway) -> None:
        """The index describes the service."""
        response = TestClient(create_app(gateway)).get(f"{BASE}/")

        assert response.status_code == 200
        assert response.json()["version"] == __version__

    def test_kv_requires_auth(self, gateway: KVGateway) -> None:
        """Everything else requires credentials."""
        response = TestClient(create_app(gateway)).get(f"{BASE}/kv/a")
        assert response.status_code == 401

    def test_custom_base_path(self, memory_storage) -> None:
        """Routes follow the configured base path."""
        gateway = KVGateway.from_dict(
            {"auth": {"secret_key": SECRET}, "server": {"base_path": "/kv-api"}},
            storage=memory_storage,
        )
        client = TestClient(create_app(gateway))

        assert client.get("/kv-api/health").status_code == 200
        assert client.get(f"{BASE}/health").status_code == 401


class TestSingleKey:
    """Tests for single-key reads, writes and deletes."""

    def test_put_get_delete_cycle(self, client: TestClient) -> None:
        """Write, read as JSON, delete, then 404."""
        response = client.put(f"{BASE}/kv/user:1", json={"value": {"name": "Alice"}})
        assert response.status_code == 201
        assert response.json() == {
            "success": True,
            "key": "user:1",
            "message": "Key-value pair written successfully",
        }

        response = client.get(f"{BASE}/kv/user:1", params={"type": "json"})
        assert response.status_code == 200
        assert response.json() == {"key": "user:1", "value": {"name": "Alice"}}

        response = client.delete(f"{BASE}/kv/user:1")
        assert response.status_code == 200
        assert response.json()["message"] == "Key deleted successfully"

        response = client.get(f"{BASE}/kv/user:1")
        assert response.status_code == 404
        assert response.json() == {"error": "Key not found"}

    def test_text_read_returns_stored_string(self, client: TestClient) -> None:
        """Non-string values are stored as their JSON text."""
        client.put(f"{BASE}/kv/n", json={"value": 42})
        client.put(f"{BASE}/kv/s", json={"value": "plain"})

        assert client.get(f"{BASE}/kv/n").json()["value"] == "42"
        assert client.get(f"{BASE}/kv/s").json()["value"] == "plain"

    def test_json_read_of_non_json_value(self, client: TestClient) -> None:
        """type=json on a plain string is a 400."""
        client.put(f"{BASE}/kv/s", json={"value": "not json"})

        response = client.get(f"{BASE}/kv/s", params={"type": "json"})
        assert response.status_code == 400
        assert response.json()["error"] == "Stored value is not valid JSON"

    def test_invalid_type_param(self, client: TestClient) -> None:
        """Only text and json are accepted."""
        client.put(f"{BASE}/kv/s", json={"value": "x"})
        assert client.get(f"{BASE}/kv/s", params={"type": "xml"}).status_code == 400

    def test_encoded_key(self, client: TestClient) -> None:
        """Percent-encoded keys are decoded."""
        client.put(f"{BASE}/kv/a%2Fb", json={"value": "slash"})
        assert client.get(f"{BASE}/kv/a/b").json()["value"] == "slash"

    def test_metadata_endpoint(self, client: TestClient) -> None:
        """Metadata is returned alongside the value."""
        client.put(f"{BASE}/kv/k", json={"value": {"a": 1}, "metadata": {"owner": "me"}})

        response = client.get(f"{BASE}/kv/k/metadata", params={"type": "json"})
        assert response.json() == {"key": "k", "value": {"a": 1}, "metadata": {"owner": "me"}}

    def test_metadata_endpoint_absent(self, client: TestClient) -> None:
        """Absent keys are a 404 on the metadata endpoint too."""
        assert client.get(f"{BASE}/kv/nope/metadata").status_code == 404

    def test_post_create(self, client: TestClient) -> None:
        """POST /kv names the key in the body."""
        response = client.post(f"{BASE}/kv", json={"key": "k", "value": "v", "expirationTtl": 60})

        assert response.status_code == 201
        assert client.get(f"{BASE}/kv/k").json()["value"] == "v"

    def test_post_reserved_key(self, client: TestClient) -> None:
        """Reserved keys are rejected."""
        response = client.post(f"{BASE}/kv", json={"key": "..", "value": "v"})

        assert response.status_code == 400
        assert response.json()["error"] == 'Invalid key. Key cannot be "." or ".."'

    def test_ttl_expiry(self, client: TestClient, clock) -> None:
        """A written TTL hides the key once it passes."""
        client.put(f"{BASE}/kv/session", json={"value": "x", "expirationTtl": 60})
        clock.advance(60)

        assert client.get(f"{BASE}/kv/session").status_code == 404

    def test_short_ttl_rejected(self, client: TestClient) -> None:
        """TTLs below 60 seconds fail schema validation with a hint."""
        response = client.put(f"{BASE}/kv/k", json={"value": "x", "expirationTtl": 30})

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request body"
        assert response.json()["hint"].startswith("expirationTtl")

    def test_both_expirations_rejected(self, client: TestClient) -> None:
        """expiration and expirationTtl together are a 400."""
        response = client.put(
            f"{BASE}/kv/k",
            json={"value": "x", "expiration": 1900000000, "expirationTtl": 120},
        )
        assert response.status_code == 400

    def test_missing_value(self, client: TestClient) -> None:
        """value is required."""
        assert client.put(f"{BASE}/kv/k", json={}).status_code == 400

    def test_invalid_json_body(self, client: TestClient) -> None:
        """Malformed JSON is a 400."""
        response = client.put(
            f"{BASE}/kv/k",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid JSON body"}

    def test_single_write_rate_limited(self, client: TestClient, memory_storage, monkeypatch) -> None:
        """Rate limiting on a single write is a 429."""
        async def limited(*args, **kwargs):
            raise RateLimitedError("429 Too Many Requests")

        monkeypatch.setattr(memory_storage, "put", limited)
        response = client.put(f"{BASE}/kv/hot", json={"value": "x"})

        assert response.status_code == 429
        assert response.json() == {
            "error": "Rate limit exceeded. Maximum 1 write per second to the same key."
        }

    def test_unexpected_failure_is_json(self, client: TestClient, memory_storage, monkeypatch) -> None:
        """Errors outside the storage taxonomy still produce the JSON error body."""
        async def exploding(*args, **kwargs):
            raise RuntimeError("driver crashed")

        monkeypatch.setattr(memory_storage, "put", exploding)
        response = client.put(f"{BASE}/kv/k", json={"value": "x"})

        assert response.status_code == 500
        assert response.json() == {"error": "driver crashed"}

    def test_storage_failure(self, client: TestClient, memory_storage, monkeypatch) -> None:
        """Backend failures are a 500 with the backend message."""
        async def broken(*args, **kwargs):
            raise StorageError("backend down")

        monkeypatch.setattr(memory_storage, "get", broken)
        response = client.get(f"{BASE}/kv/a")

        assert response.status_code == 500
        assert response.json() == {"error": "backend down"}


class TestBatch:
    """Tests for batch reads."""

    def test_batch_get(self, client: TestClient) -> None:
        """Every requested key appears; absent ones are null."""
        client.put(f"{BASE}/kv/a", json={"value": {"n": 1}})

        response = client.post(f"{BASE}/kv/batch", json={"keys": ["a", "b"], "type": "json"})
        assert response.status_code == 200
        assert response.json() == {"values": {"a": {"n": 1}, "b": None}}

    def test_batch_get_with_metadata(self, client: TestClient) -> None:
        """Metadata batches wrap each entry."""
        client.put(f"{BASE}/kv/a", json={"value": "x", "metadata": {"m": True}})

        response = client.post(f"{BASE}/kv/batch/metadata", json={"keys": ["a", "b"]})
        assert response.json() == {
            "values": {
                "a": {"value": "x", "metadata": {"m": True}},
                "b": {"value": None, "metadata": None},
            }
        }

    def test_batch_limits(self, client: TestClient) -> None:
        """Between 1 and 100 keys."""
        assert client.post(f"{BASE}/kv/batch", json={"keys": []}).status_code == 400
        too_many = {"keys": [f"k{i}" for i in range(101)]}
        assert client.post(f"{BASE}/kv/batch", json=too_many).status_code == 400


class TestList:
    """Tests for listing."""

    def test_list_with_pagination(self, client: TestClient) -> None:
        """Cursors walk the listing; the last page omits the cursor."""
        for i in range(3):
            client.put(f"{BASE}/kv/user:{i}", json={"value": i})
        client.put(f"{BASE}/kv/other", json={"value": 0})

        first = client.get(f"{BASE}/kv", params={"prefix": "user:", "limit": 2}).json()
        assert [k["name"] for k in first["keys"]] == ["user:0", "user:1"]
        assert first["list_complete"] is False

        second = client.get(
            f"{BASE}/kv",
            params={"prefix": "user:", "limit": 2, "cursor": first["cursor"]},
        ).json()
        assert second == {"keys": [{"name": "user:2"}], "list_complete": True}

    def test_bad_limit(self, client: TestClient) -> None:
        """Non-numeric or out of range limits are a 400."""
        assert client.get(f"{BASE}/kv", params={"limit": "ten"}).status_code == 400
        assert client.get(f"{BASE}/kv", params={"limit": 0}).status_code == 400

    def test_bad_cursor(self, client: TestClient) -> None:
        """Garbage cursors are a 400."""
        response = client.get(f"{BASE}/kv", params={"cursor": "garbage"})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid cursor"


class TestBulk:
    """Tests for bulk writes and deletes."""

    def test_bulk_write_all_succeed(self, client: TestClient) -> None:
        """A fully successful batch is a 201."""
        response = client.post(
            f"{BASE}/kv/bulk",
            json={"pairs": [{"key": "a", "value": 1}, {"key": "b", "value": {"x": 1}}]},
        )

        assert response.status_code == 201
        assert response.json()["successful"] == 2
        assert client.get(f"{BASE}/kv/b", params={"type": "json"}).json()["value"] == {"x": 1}

    def test_bulk_write_partial_failure(self, client: TestClient) -> None:
        """One bad entry yields a 207 with per-key results."""
        response = client.post(
            f"{BASE}/kv/bulk",
            json={"pairs": [
                {"key": "a", "value": "1"},
                {"key": ".", "value": "2"},
                {"key": "c", "value": "3", "expirationTtl": 60},
            ]},
        )

        assert response.status_code == 207
        body = response.json()
        assert (body["success"], body["total"], body["successful"], body["failed"]) == (False, 3, 2, 1)
        assert body["results"][1]["key"] == "."
        assert body["results"][1]["success"] is False

    def test_bulk_write_retries_rate_limits(self, client: TestClient, memory_storage, sleep, monkeypatch) -> None:
        """Rate-limited entries are retried with backoff."""
        original_put = memory_storage.put
        calls = {"n": 0}

        async def flaky_put(key, value, options=None):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RateLimitedError("429 Too Many Requests")
            await original_put(key, value, options)

        monkeypatch.setattr(memory_storage, "put", flaky_put)
        response = client.post(f"{BASE}/kv/bulk", json={"pairs": [{"key": "a", "value": "1"}]})

        assert response.status_code == 201
        assert sleep.delays == [1.0]

    def test_bulk_write_empty(self, client: TestClient) -> None:
        """At least one pair is required."""
        assert client.post(f"{BASE}/kv/bulk", json={"pairs": []}).status_code == 400

    def test_bulk_delete(self, client: TestClient) -> None:
        """Bulk delete reports per-key results with a 200."""
        client.put(f"{BASE}/kv/a", json={"value": "1"})

        response = client.post(f"{BASE}/kv/bulk/delete", json={"keys": ["a", "missing", ".."]})

        assert response.status_code == 200
        body = response.json()
        assert (body["total"], body["successful"], body["failed"]) == (3, 2, 1)
        assert client.get(f"{BASE}/kv/a").status_code == 404


class TestRelationalBackend:
    """The REST contract over the SQLite-backed relational store."""

    @pytest.fixture
    def sql_client(self, clock, sleep):
        storage = RelationalKVStorage(SQLiteDatabase(":memory:"), clock=clock)
        gateway = KVGateway.from_dict({"auth": {"secret_key": SECRET}}, storage=storage, sleep=sleep)
        with TestClient(create_app(gateway), headers={"Authorization": f"Bearer {SECRET}"}) as client:
            yield client

    def test_round_trip(self, sql_client: TestClient) -> None:
        """Write, read, page, delete and miss through SQLite."""
        for i in range(3):
            response = sql_client.put(f"{BASE}/kv/user:{i}", json={"value": {"n": i}})
            assert response.status_code == 201

        response = sql_client.get(f"{BASE}/kv/user:1", params={"type": "json"})
        assert response.json() == {"key": "user:1", "value": {"n": 1}}

        first = sql_client.get(f"{BASE}/kv", params={"prefix": "user:", "limit": 2}).json()
        assert [k["name"] for k in first["keys"]] == ["user:0", "user:1"]
        assert first["list_complete"] is False
        second = sql_client.get(
            f"{BASE}/kv",
            params={"prefix": "user:", "limit": 2, "cursor": first["cursor"]},
        ).json()
        assert second == {"keys": [{"name": "user:2"}], "list_complete": True}

        assert sql_client.delete(f"{BASE}/kv/user:1").status_code == 200
        response = sql_client.get(f"{BASE}/kv/user:1")
        assert response.status_code == 404
        assert response.json() == {"error": "Key not found"}

    def test_ttl_and_metadata(self, sql_client: TestClient, clock) -> None:
        sql_client.put(f"{BASE}/kv/s", json={"value": "x", "expirationTtl": 60, "metadata": {"a": 1}})

        response = sql_client.get(f"{BASE}/kv/s/metadata")
        assert response.json() == {"key": "s", "value": "x", "metadata": {"a": 1}}

        clock.advance(60)
        assert sql_client.get(f"{BASE}/kv/s").status_code == 404

    def test_bulk_with_unbindable_key(self, sql_client: TestClient) -> None:
        """A key SQLite cannot store fails alone with a 207."""
        response = sql_client.post(
            f"{BASE}/kv/bulk",
            content=b'{"pairs": [{"key": "ok", "value": "1"}, {"key": "\\ud800", "value": "x"}]}',
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 207
        body = response.json()
        assert (body["total"], body["successful"], body["failed"]) == (2, 1, 1)
        assert body["results"][1]["key"] == "\ud800"
        assert sql_client.get(f"{BASE}/kv/ok").json()["value"] == "1"


class TestSignedRequests:
    """End-to-end HMAC authentication through the real routes."""

    def _signed(self, method: str, path: str, body: bytes = b"") -> dict[str, str]:
        timestamp = str(int(time.time() * 1000))
        return {
            "X-Signature": sign_request(SECRET, method, path, timestamp, body),
            "X-Timestamp": timestamp,
        }

    def test_signed_create_then_read(self, gateway: KVGateway) -> None:
        """A signed POST is admitted and its body reaches the handler."""
        client = TestClient(create_app(gateway))
        body = json.dumps({"key": "test", "value": "data"}).encode()

        response = client.post(
            f"{BASE}/kv",
            content=body,
            headers={"Content-Type": "application/json", **self._signed("POST", f"{BASE}/kv", body)},
        )
        assert response.status_code == 201

        path = f"{BASE}/kv/test"
        response = client.get(path, headers=self._signed("GET", path))
        assert response.json()["value"] == "data"

    def test_signature_over_other_body_rejected(self, gateway: KVGateway) -> None:
        """Changing the body invalidates the signature."""
        client = TestClient(create_app(gateway))
        signed_body = b'{"key":"a","value":"1"}'

        response = client.post(
            f"{BASE}/kv",
            content=b'{"key":"a","value":"2"}',
            headers={"Content-Type": "application/json", **self._signed("POST", f"{BASE}/kv", signed_body)},
        )
        assert response.status_code == 401


class TestLifespan:
    """Tests for startup and shutdown."""

    def test_preloaded_records_visible(self, gateway: KVGateway, memory_storage) -> None:
        """Records written before startup are served."""
        asyncio.run(memory_storage.put("seeded", "yes", PutOptions()))
        with TestClient(create_app(gateway), headers={"Authorization": f"Bearer {SECRET}"}) as client:
            assert client.get(f"{BASE}/kv/seeded").json()["value"] == "yes"
