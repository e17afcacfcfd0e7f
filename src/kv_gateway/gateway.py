"""KVGateway: wires configuration, storage backend and bulk operators."""

import asyncio
from pathlib import Path
from typing import Any

from kv_gateway.auth.gate import AuthGate
from kv_gateway.bulk import (
    BatchReadAggregator,
    BulkDeleteAggregator,
    BulkWriteOrchestrator,
    RetryPolicy,
    Sleep,
)
from kv_gateway.cleanup import ExpiredRecordSweeper, SupportsCleanup
from kv_gateway.config import Config
from kv_gateway.observability import Timer, configure_logging, emit_timer, get_logger
from kv_gateway.plugins import create_database, create_storage
from kv_gateway.protocols import KVStorage

logger = get_logger(__name__)


class KVGateway:
    """Key-value REST gateway.

    The storage backend is chosen once, from configuration, the first time
    the gateway is used.

    Example usage:
        gateway = KVGateway.from_config("config.yaml")
        gateway.serve(port=8787)

        # Or programmatically
        async with KVGateway.from_dict({"storage": {"backend": "memory"}}) as gw:
            await gw.storage.put("user:1", "Alice")
    """

    def __init__(
        self,
        config: Config,
        storage: KVStorage | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the gateway.

        Args:
            config: Gateway configuration
            storage: Pre-built storage backend (skips backend discovery)
            sleep: Backoff sleep used by the bulk writer
        """
        self.config = config
        self.gate = AuthGate(
            secret=config.auth.secret_key,
            timestamp_tolerance_ms=config.auth.timestamp_tolerance_ms,
        )
        self._storage = storage
        self._sleep = sleep
        self._batch_reader: BatchReadAggregator | None = None
        self._bulk_writer: BulkWriteOrchestrator | None = None
        self._bulk_deleter: BulkDeleteAggregator | None = None
        self._sweeper: ExpiredRecordSweeper | None = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, path: str | Path) -> "KVGateway":
        """Create a gateway from a YAML or JSON configuration file."""
        return cls(Config.from_file(path))

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any], **kwargs: Any) -> "KVGateway":
        """Create a gateway from a configuration dictionary."""
        return cls(Config.from_dict(config_dict), **kwargs)

    async def initialize(self) -> None:
        """Build the backend and operators on first use."""
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return
            self._do_initialize()

    def _do_initialize(self) -> None:
        """Perform actual initialization (called under lock)."""
        with Timer() as timer:
            if self._storage is None:
                self._storage = self._build_storage()

            bulk = self.config.bulk
            self._batch_reader = BatchReadAggregator(self._storage)
            self._bulk_writer = BulkWriteOrchestrator(
                self._storage,
                policy=RetryPolicy(
                    max_attempts=bulk.max_attempts,
                    delays=tuple(bulk.retry_delays_seconds),
                ),
                sleep=self._sleep,
                max_concurrency=bulk.max_concurrency,
            )
            self._bulk_deleter = BulkDeleteAggregator(
                self._storage,
                max_concurrency=bulk.max_concurrency,
            )
            self._initialized = True

        logger.info(
            "Gateway initialized",
            context={"backend": type(self._storage).__name__},
            duration_ms=timer.duration_ms,
        )
        emit_timer("gateway.init", timer.duration_ms)

    def _build_storage(self) -> KVStorage:
        """Create the configured storage backend."""
        storage_config = self.config.storage
        cloudflare = storage_config.cloudflare

        if storage_config.backend == "relational":
            db_config = storage_config.database
            database = create_database(
                db_config.backend,
                path=db_config.path,
                account_id=cloudflare.account_id,
                database_id=db_config.database_id,
                api_token=cloudflare.api_token,
                base_url=cloudflare.base_url,
                timeout_seconds=cloudflare.timeout_seconds,
            )
            return create_storage("relational", database=database)

        return create_storage(
            storage_config.backend,
            account_id=cloudflare.account_id,
            namespace_id=cloudflare.namespace_id,
            api_token=cloudflare.api_token,
            base_url=cloudflare.base_url,
            timeout_seconds=cloudflare.timeout_seconds,
        )

    def _require(self, value: Any) -> Any:
        if value is None:
            raise RuntimeError("Gateway not initialized. Call initialize() or use async context manager.")
        return value

    @property
    def storage(self) -> KVStorage:
        """Get the storage backend."""
        return self._require(self._storage)

    @property
    def batch_reader(self) -> BatchReadAggregator:
        return self._require(self._batch_reader)

    @property
    def bulk_writer(self) -> BulkWriteOrchestrator:
        return self._require(self._bulk_writer)

    @property
    def bulk_deleter(self) -> BulkDeleteAggregator:
        return self._require(self._bulk_deleter)

    async def start(self) -> None:
        """Initialize and start background maintenance, if configured."""
        await self.initialize()

        interval = self.config.storage.cleanup_interval_seconds
        if interval and isinstance(self._storage, SupportsCleanup) and self._sweeper is None:
            self._sweeper = ExpiredRecordSweeper(self._storage, interval)
            self._sweeper.start()

    async def close(self) -> None:
        """Stop background work and release backend connections."""
        if self._sweeper is not None:
            await self._sweeper.stop()
            self._sweeper = None

        close = getattr(self._storage, "close", None)
        if close is not None:
            await close()

    def serve(
        self,
        host: str | None = None,
        port: int | None = None,
    ) -> None:
        """Start the HTTP server.

        Args:
            host: Host to bind to (defaults to config value)
            port: Port to bind to (defaults to config value)
        """
        import uvicorn

        from kv_gateway.server.app import create_app

        configure_logging(self.config.logging.level, self.config.logging.format)
        app = create_app(self)
        uvicorn.run(
            app,
            host=host or self.config.server.host,
            port=port or self.config.server.port,
            log_config=None,
        )

    async def __aenter__(self) -> "KVGateway":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
