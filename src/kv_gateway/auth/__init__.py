"""Request authentication."""

from kv_gateway.auth.gate import (
    DEFAULT_TIMESTAMP_TOLERANCE_MS,
    SIGNATURE_HINT,
    AuthGate,
    AuthMode,
    sign_request,
)

__all__ = [
    "DEFAULT_TIMESTAMP_TOLERANCE_MS",
    "SIGNATURE_HINT",
    "AuthGate",
    "AuthMode",
    "sign_request",
]
