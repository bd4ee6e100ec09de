"""Error taxonomy shared by the client, the monitor and the repository."""

from datetime import datetime

from .models import ErrorKind


class CatalogError(Exception):
    """Base class for every failure that can reach a feed state."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, status: int | None = None, headers: dict | None = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.headers = dict(headers or {})


class NetworkError(CatalogError):
    """I/O failure, DNS failure, timeout or a 5xx from GitHub."""

    kind = ErrorKind.TRANSIENT


class RateLimitedError(CatalogError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        reset_at: datetime | None = None,
        status: int | None = None,
        headers: dict | None = None,
    ):
        super().__init__(message, status=status, headers=headers)
        self.reset_at = reset_at


class AuthError(CatalogError):
    kind = ErrorKind.AUTH_ERROR


class NotFoundError(CatalogError):
    kind = ErrorKind.NOT_FOUND


class DecodeError(CatalogError):
    """A payload could not be turned into model objects."""

    kind = ErrorKind.DECODE_ERROR


class CacheError(Exception):
    """Persisted cache could not be read or written. Never reaches a feed state."""
