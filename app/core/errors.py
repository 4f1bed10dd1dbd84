"""Error taxonomy for the enrichment pipeline.

Components raise these; the per-link chain in
``app.services.enrichment.service`` converts them into an
``EnrichmentOutcome`` so that nothing escapes a batch except
``PersistenceError``.
"""

from __future__ import annotations

from enum import Enum
from typing import ClassVar


class ErrorKind(str, Enum):
    INVALID_URL = "invalid_url"
    TOO_MANY_REDIRECTS = "too_many_redirects"
    UNREACHABLE_HOST = "unreachable_host"
    FETCH_FAILED = "fetch_failed"
    UNSUPPORTED_REPOSITORY_HOST = "unsupported_repository_host"
    REPOSITORY_NOT_FOUND = "repository_not_found"
    RATE_LIMITED = "rate_limited"
    NETWORK_ERROR = "network_error"
    PERSISTENCE_ERROR = "persistence_error"
    INTERNAL = "internal"


class EnrichmentError(Exception):
    """Base class for every recoverable, per-link pipeline error."""

    kind: ClassVar[ErrorKind] = ErrorKind.INTERNAL


class InvalidUrl(EnrichmentError):
    kind = ErrorKind.INVALID_URL


class TooManyRedirects(EnrichmentError):
    kind = ErrorKind.TOO_MANY_REDIRECTS


class UnreachableHost(EnrichmentError):
    kind = ErrorKind.UNREACHABLE_HOST


class FetchFailed(EnrichmentError):
    kind = ErrorKind.FETCH_FAILED

    def __init__(self, status: int, url: str) -> None:
        super().__init__(f"GET {url} returned HTTP {status}")
        self.status = status
        self.url = url


class UnsupportedRepositoryHost(EnrichmentError):
    kind = ErrorKind.UNSUPPORTED_REPOSITORY_HOST


class RepositoryNotFound(EnrichmentError):
    kind = ErrorKind.REPOSITORY_NOT_FOUND


class RateLimited(EnrichmentError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, retry_after: float | None, message: str = "") -> None:
        super().__init__(message or f"Rate limited, retry after {retry_after}s")
        self.retry_after = retry_after


class NetworkError(EnrichmentError):
    kind = ErrorKind.NETWORK_ERROR


#: Errors raised before any content was fetched; they count towards a link's
#: consecutive-failure threshold.
FETCH_ERRORS = (InvalidUrl, TooManyRedirects, UnreachableHost, FetchFailed)


class PersistenceError(RuntimeError):
    """Raised by the Link / Organization stores when MongoDB is unusable.

    The only error class that aborts a scheduled run.
    """

    kind: ClassVar[ErrorKind] = ErrorKind.PERSISTENCE_ERROR


class LinkNotFound(LookupError):
    """Raised by ``LinkRepository.get`` for an unknown link id."""
