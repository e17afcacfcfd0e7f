"""kv-gateway - An authenticated REST gateway over a key-value store."""

__version__ = "0.1.0"

from kv_gateway.auth import AuthGate, AuthMode, sign_request
from kv_gateway.bulk import (
    BatchReadAggregator,
    BulkDeleteAggregator,
    BulkItemResult,
    BulkResult,
    BulkWriteOrchestrator,
    BulkWritePair,
    RetryPolicy,
)
from kv_gateway.client import KVClient, create_browser_client, create_server_client
from kv_gateway.config import Config
from kv_gateway.gateway import KVGateway
from kv_gateway.observability import (
    LogLevel,
    RequestContext,
    StructuredLogger,
    Timer,
    configure_logging,
    emit_counter,
    emit_metric,
    emit_timer,
    get_logger,
    register_metric_callback,
)

__all__ = [
    # Core
    "Config",
    "KVGateway",
    # Auth
    "AuthGate",
    "AuthMode",
    "sign_request",
    # Bulk operations
    "BatchReadAggregator",
    "BulkDeleteAggregator",
    "BulkItemResult",
    "BulkResult",
    "BulkWriteOrchestrator",
    "BulkWritePair",
    "RetryPolicy",
    # Client
    "KVClient",
    "create_browser_client",
    "create_server_client",
    # Observability
    "LogLevel",
    "RequestContext",
    "StructuredLogger",
    "Timer",
    "configure_logging",
    "emit_counter",
    "emit_metric",
    "emit_timer",
    "get_logger",
    "register_metric_callback",
]
