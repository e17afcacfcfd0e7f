"""HTTP Server module."""

from kv_gateway.server.app import create_app
from kv_gateway.server.middleware import AuthGateMiddleware, RequestLoggingMiddleware
from kv_gateway.server.routes import create_routes

__all__ = [
    "AuthGateMiddleware",
    "RequestLoggingMiddleware",
    "create_app",
    "create_routes",
]
