"""Shared-secret request authentication.

Two credential shapes are accepted:

- ``Authorization: Bearer <secret>``
- ``X-Signature`` + ``X-Timestamp``, where the signature is the hex
  HMAC-SHA256 of ``METHOD + PATH + TIMESTAMP + BODY`` keyed with the secret
  and the timestamp is a millisecond epoch within the replay window.
"""

import hmac
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import hmac as crypto_hmac

from kv_gateway.exceptions import (
    AuthNotConfiguredError,
    InvalidAuthMethodError,
    InvalidSignatureError,
    InvalidTokenError,
    MissingCredentialsError,
    TimestampExpiredError,
)

DEFAULT_TIMESTAMP_TOLERANCE_MS = 300_000

# Methods whose body is never part of the signed message
BODYLESS_METHODS = frozenset({"GET", "HEAD", "DELETE"})

SIGNATURE_HINT = "Signature should be HMAC-SHA256 of: METHOD + PATH + TIMESTAMP + BODY"

AUTHORIZATION_HEADER = "authorization"
SIGNATURE_HEADER = "x-signature"
TIMESTAMP_HEADER = "x-timestamp"


class AuthMode(str, Enum):
    """How a request was admitted."""

    BEARER = "bearer"
    SIGNATURE = "signature"


def sign_request(
    secret: str,
    method: str,
    path: str,
    timestamp: str | int,
    body: str | bytes = b"",
) -> str:
    """Compute the hex HMAC-SHA256 signature for a request.

    Args:
        secret: Shared secret
        method: HTTP method, upper case
        path: Request path as sent on the wire, without query string
        timestamp: Millisecond epoch timestamp
        body: Raw request body ("" for bodyless methods)

    Returns:
        Lower-case hex digest
    """
    if isinstance(body, str):
        body = body.encode()
    message = f"{method}{path}{timestamp}".encode() + body

    mac = crypto_hmac.HMAC(secret.encode(), hashes.SHA256())
    mac.update(message)
    return mac.finalize().hex()


@dataclass(frozen=True)
class AuthGate:
    """Per-request credential check against one configured secret.

    Holds no state between requests.

    Example:
        gate = AuthGate(secret="s3cret")
        mode = gate.authenticate("GET", "/api/v1/kv/a", headers)
    """

    secret: str | None
    timestamp_tolerance_ms: int = DEFAULT_TIMESTAMP_TOLERANCE_MS
    clock: Callable[[], float] = field(default=time.time, compare=False)

    def authenticate(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        body: bytes = b"",
    ) -> AuthMode:
        """Admit or reject a request.

        Args:
            method: HTTP method
            path: Wire path (percent-encoding preserved, no query)
            headers: Request headers
            body: Raw request body

        Returns:
            The credential shape that admitted the request

        Raises:
            MissingCredentialsError: No credentials of either shape
            AuthNotConfiguredError: No secret configured server-side
            InvalidTokenError: Bearer token mismatch
            TimestampExpiredError: Timestamp unparsable or outside the window
            InvalidSignatureError: Signature mismatch
            InvalidAuthMethodError: Credentials of an unrecognised shape
        """
        normalized = {k.lower(): v for k, v in headers.items()}
        auth_header = normalized.get(AUTHORIZATION_HEADER)
        signature = normalized.get(SIGNATURE_HEADER)
        timestamp = normalized.get(TIMESTAMP_HEADER)

        if not auth_header and not signature:
            raise MissingCredentialsError(
                "Missing authentication. Provide either Authorization header "
                "or X-Signature + X-Timestamp headers."
            )

        if not self.secret:
            raise AuthNotConfiguredError("Server authentication not configured")

        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header[len("Bearer "):]
            if hmac.compare_digest(token.encode(), self.secret.encode()):
                return AuthMode.BEARER
            raise InvalidTokenError("Invalid authentication token")

        if signature and timestamp:
            self._check_timestamp(timestamp)

            signed_body = b"" if method.upper() in BODYLESS_METHODS else body
            expected = sign_request(self.secret, method.upper(), path, timestamp, signed_body)
            if hmac.compare_digest(signature.strip().lower().encode(), expected.encode()):
                return AuthMode.SIGNATURE
            raise InvalidSignatureError("Invalid HMAC signature")

        raise InvalidAuthMethodError("Invalid authentication method")

    def _check_timestamp(self, timestamp: str) -> None:
        """Reject stale, future or malformed timestamps before any signature work."""
        try:
            request_ms = int(timestamp)
        except ValueError:
            raise TimestampExpiredError(
                "Invalid request timestamp. Use milliseconds since the Unix epoch."
            ) from None

        now_ms = int(self.clock() * 1000)
        if abs(now_ms - request_ms) > self.timestamp_tolerance_ms:
            raise TimestampExpiredError(
                "Request timestamp expired. Ensure your clock is synchronized."
            )
