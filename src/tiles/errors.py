"""Error taxonomy for the tile cache.

Expected misses are never reported through exceptions at the public
surface; these classes describe why a fetch or read did not produce a
valid payload.
"""

from __future__ import annotations


class TileCacheError(Exception):
    """Base class for all tile cache errors."""


class FetchError(TileCacheError):
    """A single item could not be fetched or stored."""

    retryable = False

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class NetworkFailure(FetchError):
    """Connection error or timeout."""

    retryable = True


class RemoteRejection(FetchError):
    """Unexpected status code or unusable body from the origin."""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message, url=url)
        self.status = status


class IntegrityError(FetchError):
    """Size mismatch, placeholder payload or malformed sidecar."""


class StorageError(FetchError):
    """Disk read or write failed; the whole store may be unusable."""


class ExhaustedRetriesError(FetchError):
    """All attempts failed; carries the last underlying error."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        attempts: int = 0,
        last_error: Exception | None = None,
    ) -> None:
        super().__init__(message, url=url)
        self.attempts = attempts
        self.last_error = last_error
