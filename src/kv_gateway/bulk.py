"""Batch reads and bulk writes/deletes over a KVStorage backend.

Each bulk entry is an independent single-key operation. Entries run
concurrently and each produces its own ``BulkItemResult``; results are
merged after every entry has finished, in input order.
"""

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager, nullcontext
from dataclasses import dataclass, field
from typing import Any

from kv_gateway.exceptions import RateLimitedError, StorageError, ValidationError
from kv_gateway.observability import Timer, emit_counter, emit_timer, get_logger
from kv_gateway.protocols.storage import KVStorage, PutOptions, ValueWithMetadata
from kv_gateway.utils.validation import (
    MAX_BATCH_KEYS,
    MAX_BULK_PAIRS,
    validate_expiration,
    validate_key,
)

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for rate-limited writes.

    ``max_attempts`` counts the first try. The wait before retry ``n``
    (1-based) is ``delays[n - 1]``, clamped to the last entry.
    """

    max_attempts: int = 3
    delays: tuple[float, ...] = (1.0, 2.0, 4.0)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not self.delays:
            raise ValueError("delays must not be empty")

    def delay_for(self, retry: int) -> float:
        """Seconds to wait before the given retry."""
        return self.delays[min(retry, len(self.delays)) - 1]


@dataclass(frozen=True)
class BulkWritePair:
    """One entry of a bulk write."""

    key: str
    value: str
    expiration: int | None = None
    expiration_ttl: int | None = None
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class BulkItemResult:
    """Outcome for a single key."""

    key: str
    success: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, omitting ``error`` on success."""
        result: dict[str, Any] = {"key": self.key, "success": self.success}
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class BulkResult:
    """Aggregate outcome of a bulk operation."""

    results: list[BulkItemResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return self.total - self.successful

    @property
    def success(self) -> bool:
        """True only when every entry succeeded."""
        return self.failed == 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire shape."""
        return {
            "success": self.success,
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


class _Fanout:
    """Optional bound on in-flight storage calls."""

    def __init__(self, max_concurrency: int | None) -> None:
        self._semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None

    def slot(self) -> AbstractAsyncContextManager[Any]:
        if self._semaphore is None:
            return nullcontext()
        return self._semaphore


class BulkWriteOrchestrator:
    """Apply up to ``MAX_BULK_PAIRS`` independent writes.

    Only ``RateLimitedError`` is retried, per entry, following the
    ``RetryPolicy``. A backoff wait suspends only its own entry.

    Example:
        orchestrator = BulkWriteOrchestrator(storage)
        result = await orchestrator.write([BulkWritePair("a", "1")])
        status = 201 if result.success else 207
    """

    def __init__(
        self,
        storage: KVStorage,
        policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        max_concurrency: int | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            storage: Backend to write to
            policy: Retry policy (defaults to 3 attempts, 1s/2s/4s)
            sleep: Awaitable sleep, injectable for tests
            max_concurrency: Bound on concurrent storage calls (None = unbounded)
        """
        self.storage = storage
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._fanout = _Fanout(max_concurrency)

    async def write(self, pairs: list[BulkWritePair]) -> BulkResult:
        """Write every pair and aggregate per-key outcomes.

        Raises:
            ValidationError: If the batch is empty or larger than the limit
        """
        if not pairs:
            raise ValidationError("pairs must contain at least one entry")
        if len(pairs) > MAX_BULK_PAIRS:
            raise ValidationError(f"pairs must contain at most {MAX_BULK_PAIRS} entries")

        with Timer() as timer:
            items = await asyncio.gather(*(self._write_one(pair) for pair in pairs))
        result = BulkResult(results=list(items))

        logger.info(
            "Bulk write finished",
            context={
                "total": result.total,
                "successful": result.successful,
                "failed": result.failed,
            },
            duration_ms=timer.duration_ms,
        )
        emit_timer("kv.bulk_write.duration", timer.duration_ms)
        emit_counter("kv.bulk_write.failed", value=result.failed)
        return result

    async def _write_one(self, pair: BulkWritePair) -> BulkItemResult:
        """Validate then write one entry, retrying on rate limiting."""
        try:
            validate_key(pair.key)
            validate_expiration(pair.expiration, pair.expiration_ttl)
        except ValidationError as e:
            return BulkItemResult(key=pair.key, success=False, error=str(e))

        options = PutOptions(
            expiration=pair.expiration,
            expiration_ttl=pair.expiration_ttl,
            metadata=pair.metadata,
        )

        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._fanout.slot():
                    await self.storage.put(pair.key, pair.value, options)
                return BulkItemResult(key=pair.key, success=True)
            except RateLimitedError as e:
                if attempt >= self.policy.max_attempts:
                    logger.warning(
                        "Bulk write retries exhausted",
                        context={"key": pair.key, "attempts": attempt},
                    )
                    return BulkItemResult(key=pair.key, success=False, error=str(e))
                delay = self.policy.delay_for(attempt)
                emit_counter("kv.bulk_write.retry")
                logger.debug(
                    "Rate limited, backing off",
                    context={"key": pair.key, "attempt": attempt, "delay_s": delay},
                )
                await self._sleep(delay)
            except Exception as e:
                if not isinstance(e, StorageError):
                    logger.error("Unexpected bulk write failure", context={"key": pair.key}, error=e)
                return BulkItemResult(key=pair.key, success=False, error=str(e))


class BatchReadAggregator:
    """Read up to ``MAX_BATCH_KEYS`` keys with one batched backend call.

    The returned map always contains every requested key; missing or
    expired keys map to None.
    """

    def __init__(self, storage: KVStorage) -> None:
        self.storage = storage

    @staticmethod
    def _check(keys: list[str]) -> None:
        if not keys:
            raise ValidationError("keys must contain at least one key")
        if len(keys) > MAX_BATCH_KEYS:
            raise ValidationError(f"keys must contain at most {MAX_BATCH_KEYS} keys")
        for key in keys:
            validate_key(key)

    async def read(
        self,
        keys: list[str],
        cache_ttl: int | None = None,
    ) -> dict[str, str | None]:
        """Read values for ``keys``."""
        self._check(keys)
        found = await self.storage.get_many(keys, cache_ttl)
        return {key: found.get(key) for key in keys}

    async def read_with_metadata(
        self,
        keys: list[str],
        cache_ttl: int | None = None,
    ) -> dict[str, ValueWithMetadata]:
        """Read values and metadata for ``keys``."""
        self._check(keys)
        found = await self.storage.get_many_with_metadata(keys, cache_ttl)
        missing = ValueWithMetadata(value=None, metadata=None)
        return {key: found.get(key, missing) for key in keys}


class BulkDeleteAggregator:
    """Delete any number of keys concurrently, without retry."""

    def __init__(self, storage: KVStorage, max_concurrency: int | None = None) -> None:
        self.storage = storage
        self._fanout = _Fanout(max_concurrency)

    async def delete(self, keys: list[str]) -> BulkResult:
        """Delete every key and aggregate per-key outcomes.

        Raises:
            ValidationError: If no keys were given
        """
        if not keys:
            raise ValidationError("keys must contain at least one key")

        items = await asyncio.gather(*(self._delete_one(key) for key in keys))
        result = BulkResult(results=list(items))
        logger.info(
            "Bulk delete finished",
            context={"total": result.total, "failed": result.failed},
        )
        return result

    async def _delete_one(self, key: str) -> BulkItemResult:
        try:
            validate_key(key)
        except ValidationError as e:
            return BulkItemResult(key=key, success=False, error=str(e))

        try:
            async with self._fanout.slot():
                await self.storage.delete(key)
        except Exception as e:
            if not isinstance(e, StorageError):
                logger.error("Unexpected bulk delete failure", context={"key": key}, error=e)
            return BulkItemResult(key=key, success=False, error=str(e))
        return BulkItemResult(key=key, success=True)
