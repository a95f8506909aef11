"""Error taxonomy shared by the enrichment stages and the HTTP layer.

Stages absorb their own failures and degrade to partial output. Only the
route handlers turn ``InvalidInputError``, ``OperationTimeoutError`` and
``NotFoundError`` into error responses.
"""

from __future__ import annotations

from enum import Enum


class FetchErrorType(str, Enum):
    """Classification of upstream failures for retry strategy."""

    TIMEOUT = "timeout"  # Retriable
    HTTP_4XX = "http_4xx"  # Not retriable
    HTTP_5XX = "http_5xx"  # Retriable
    CONNECTION_RESET = "connection_reset"  # Retriable
    CONNECTION_ERROR = "connection_error"  # Not retriable (DNS, refused)
    MALFORMED = "malformed"  # Not retriable


RETRIABLE_ERRORS = {
    FetchErrorType.TIMEOUT,
    FetchErrorType.HTTP_5XX,
    FetchErrorType.CONNECTION_RESET,
}


class EnrichmentError(Exception):
    """Base class for every error raised by linkvault."""


class InvalidInputError(EnrichmentError):
    """Bad URL or request parameters. User-correctable."""


class NotFoundError(EnrichmentError):
    """Requested link, note or task does not exist."""


class OperationTimeoutError(EnrichmentError, TimeoutError):
    """An operation exceeded its time budget."""

    def __init__(self, message: str, seconds: float | None = None):
        super().__init__(message)
        self.seconds = seconds


class UpstreamError(EnrichmentError):
    """A remote fetch or API call failed or returned an unusable payload."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        error_type: FetchErrorType | None = None,
    ):
        super().__init__(message)
        self.status = status
        if error_type is None and status is not None:
            error_type = FetchErrorType.HTTP_5XX if status >= 500 else FetchErrorType.HTTP_4XX
        self.error_type = error_type

    @property
    def retriable(self) -> bool:
        return self.error_type in RETRIABLE_ERRORS if self.error_type else False


class EmbeddingError(UpstreamError):
    """Error from an embedding provider."""

    def __init__(
        self,
        message: str,
        provider: str,
        retriable: bool = False,
        status: int | None = None,
    ):
        super().__init__(message, status=status)
        self.provider = provider
        self._retriable = retriable

    @property
    def retriable(self) -> bool:
        return self._retriable


class ParseError(EnrichmentError):
    """HTML could not be parsed. Logged and absorbed by the extractor."""
