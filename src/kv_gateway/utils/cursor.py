"""Opaque pagination cursors for offset-based listings."""

import binascii
import json
from base64 import urlsafe_b64decode, urlsafe_b64encode
from dataclasses import dataclass

from kv_gateway.exceptions import ValidationError


@dataclass(frozen=True)
class ListCursor:
    """Resumption position for a prefix listing.

    The prefix is carried inside the token so a cursor cannot be replayed
    against a different listing.
    """

    offset: int
    prefix: str = ""

    def encode(self) -> str:
        """Serialize to a URL-safe token."""
        payload = json.dumps({"o": self.offset, "p": self.prefix}, separators=(",", ":"))
        return urlsafe_b64encode(payload.encode()).decode().rstrip("=")

    @classmethod
    def decode(cls, token: str) -> "ListCursor":
        """Parse a token produced by ``encode``.

        Raises:
            ValidationError: If the token is not a cursor
        """
        padded = token + "=" * (-len(token) % 4)
        try:
            data = json.loads(urlsafe_b64decode(padded.encode()))
            offset = data["o"]
            prefix = data["p"]
        except (binascii.Error, ValueError, TypeError, KeyError):
            raise ValidationError("Invalid cursor") from None

        if not isinstance(offset, int) or offset < 0 or not isinstance(prefix, str):
            raise ValidationError("Invalid cursor")

        return cls(offset=offset, prefix=prefix)


def resolve_offset(cursor: str | None, prefix: str) -> int:
    """Return the offset a cursor resumes at for ``prefix``.

    Raises:
        ValidationError: If the cursor is malformed or belongs to another prefix
    """
    if not cursor:
        return 0

    decoded = ListCursor.decode(cursor)
    if decoded.prefix != prefix:
        raise ValidationError(
            "Cursor does not match prefix",
            hint="Reuse the prefix from the request that returned this cursor",
        )
    return decoded.offset
