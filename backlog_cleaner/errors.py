"""Exception hierarchy shared by the backlog cleaner components."""

from __future__ import annotations


class BacklogCleanerError(Exception):
    """Base class for every error the backlog cleaner raises on purpose."""


class ConfigError(BacklogCleanerError):
    """Raised when required configuration is missing or invalid."""


class TrackerError(BacklogCleanerError):
    """Raised when the Jira REST API rejects a request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderError(BacklogCleanerError):
    """Raised when an embedding or classification provider call fails.

    ``status_code`` is the HTTP status (None for transport/parse failures) and
    ``retry_after`` the provider's Retry-After hint in seconds, when sent.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        """Only rate limiting (429) and server errors (5xx) are worth retrying."""
        if self.status_code is None:
            return False
        return self.status_code == 429 or 500 <= self.status_code < 600


class RetryExhaustedError(BacklogCleanerError):
    """Raised when every retry attempt failed; wraps the last failure."""

    def __init__(self, message: str, last_error: BaseException | None = None):
        super().__init__(message)
        self.last_error = last_error


class VectorIndexError(BacklogCleanerError):
    """Raised when the vector index rejects an operation."""

    def __init__(self, message: str, batch_index: int | None = None):
        super().__init__(message)
        self.batch_index = batch_index


class SuggestionFormatError(BacklogCleanerError):
    """Raised when a classification response holds no parseable JSON object."""


class SuggestionValidationError(BacklogCleanerError):
    """Raised when a suggestion violates the per-action field contract."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class ResolutionError(BacklogCleanerError):
    """Raised when a resolution action cannot be applied."""


class IndexingInProgressError(BacklogCleanerError):
    """Raised when an indexing run is requested while another is processing."""
