"""Authentication and request logging middleware for the HTTP server."""

import uuid
from typing import Any, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from kv_gateway.auth.gate import BODYLESS_METHODS, SIGNATURE_HEADER, SIGNATURE_HINT, AuthGate
from kv_gateway.exceptions import AuthError, AuthNotConfiguredError, InvalidSignatureError
from kv_gateway.observability import (
    RequestContext,
    Timer,
    auth_mode_var,
    emit_counter,
    emit_timer,
    get_logger,
)

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def wire_path(request: Request) -> str:
    """Path as sent by the client: percent-encoding kept, query dropped."""
    raw_path = request.scope.get("raw_path")
    if raw_path:
        return raw_path.split(b"?", 1)[0].decode("latin-1")
    return request.url.path


class AuthGateMiddleware(BaseHTTPMiddleware):
    """Admit requests carrying the shared secret as a bearer token or HMAC signature.

    Adds ``auth_mode`` to request state. Allowlisted paths skip the check.
    """

    def __init__(
        self,
        app: Any,
        gate: AuthGate,
        public_paths: list[str] | None = None,
    ) -> None:
        """Initialize auth middleware.

        Args:
            app: The ASGI application
            gate: Credential checker holding the shared secret
            public_paths: Paths that don't require authentication
        """
        super().__init__(app)
        self.gate = gate
        self.public_paths = set(public_paths or [])

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Any],
    ) -> Response:
        """Check credentials before handing the request on.

        Args:
            request: The incoming request
            call_next: Next middleware/handler in chain

        Returns:
            Response from handler, 401 for rejected credentials, or 500 when
            no secret is configured
        """
        if request.method == "OPTIONS" or request.url.path in self.public_paths:
            return await call_next(request)

        # Only signed requests need the body; reading it is cached for the handler
        body = b""
        if SIGNATURE_HEADER in request.headers and request.method not in BODYLESS_METHODS:
            body = await request.body()

        try:
            mode = self.gate.authenticate(
                request.method,
                wire_path(request),
                request.headers,
                body,
            )
        except AuthNotConfiguredError as e:
            logger.error("Authentication rejected: no secret configured")
            return JSONResponse({"error": str(e)}, status_code=500)
        except AuthError as e:
            emit_counter("http.auth.rejected", {"reason": type(e).__name__})
            logger.info("Authentication rejected", context={"reason": str(e)})
            content: dict[str, Any] = {"error": str(e)}
            if isinstance(e, InvalidSignatureError):
                content["hint"] = SIGNATURE_HINT
            return JSONResponse(content, status_code=401)

        request.state.auth_mode = mode.value
        auth_mode_var.set(mode.value)
        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with an ID and log its outcome.

    The ID is taken from ``X-Request-ID`` when the client sends one and is
    echoed on the response.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Any],
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id

        with RequestContext(request_id=request_id, operation=f"{request.method} {request.url.path}"):
            with Timer() as timer:
                response = await call_next(request)

            labels = {"method": request.method, "status": response.status_code}
            logger.info(
                "Request completed",
                context={
                    **labels,
                    "path": request.url.path,
                    "auth_mode": getattr(request.state, "auth_mode", None),
                },
                duration_ms=timer.duration_ms,
            )
            emit_timer("http.request.duration", timer.duration_ms, labels)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
