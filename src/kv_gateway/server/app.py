"""ASGI application for standalone deployment."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import Mount

from kv_gateway.server.middleware import AuthGateMiddleware, RequestLoggingMiddleware

if TYPE_CHECKING:
    from kv_gateway.gateway import KVGateway


def public_paths_for(gateway: "KVGateway") -> list[str]:
    """Paths reachable without credentials: the index, health and configured extras."""
    base = gateway.config.server.base_path
    paths = [base or "/", f"{base}/", f"{base}/health"]
    return paths + list(gateway.config.auth.public_paths)


def create_app(gateway: "KVGateway") -> Starlette:
    """Create the ASGI application.

    Args:
        gateway: The configured KVGateway instance

    Returns:
        Starlette application
    """
    from kv_gateway.server.routes import create_routes

    routes = create_routes(gateway)
    base_path = gateway.config.server.base_path

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await gateway.start()
        try:
            yield
        finally:
            await gateway.close()

    # Middleware stack (order matters - first entry is outermost)
    # So: Logging -> CORS -> Auth -> Route handler
    middleware = [
        Middleware(RequestLoggingMiddleware),
        Middleware(
            CORSMiddleware,
            allow_origins=gateway.config.server.cors_origins or ["*"],
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=["X-Request-ID"],
        ),
        Middleware(
            AuthGateMiddleware,
            gate=gateway.gate,
            public_paths=public_paths_for(gateway),
        ),
    ]

    return Starlette(
        routes=[Mount(base_path, routes=routes)] if base_path else routes,
        middleware=middleware,
        lifespan=lifespan,
    )
