"""kv-gateway exceptions."""


class KVGatewayError(Exception):
    """Base exception for kv-gateway."""

    pass


class ConfigError(KVGatewayError):
    """Configuration error."""

    pass


class ValidationError(KVGatewayError, ValueError):
    """Caller supplied a malformed key, option or request body."""

    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class AuthError(KVGatewayError):
    """Authentication error."""

    pass


class MissingCredentialsError(AuthError):
    """Request carried neither a bearer token nor a signature."""

    pass


class InvalidTokenError(AuthError):
    """Bearer token does not match the configured secret."""

    pass


class InvalidAuthMethodError(AuthError):
    """Credential headers are present but of no recognised shape."""

    pass


class TimestampExpiredError(AuthError):
    """Signed request timestamp is outside the accepted window."""

    pass


class InvalidSignatureError(AuthError):
    """HMAC signature does not match the request."""

    pass


class AuthNotConfiguredError(KVGatewayError):
    """Server has no shared secret configured."""

    pass


class NotFoundError(KVGatewayError):
    """Resource not found."""

    pass


class KeyNotFoundError(NotFoundError):
    """Key does not exist or has expired."""

    pass


class StorageError(KVGatewayError):
    """Storage backend failure (connectivity, constraint violation, ...)."""

    pass


class RateLimitedError(StorageError):
    """Storage backend rejected the operation as rate limited."""

    pass


class KVClientError(KVGatewayError):
    """The gateway answered a client call with an error status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
