"""Error taxonomy for connector synchronization.

Every failure the engine raises or records is one of these types. The split
between transient and permanent failures drives retry decisions:

- TransientNetworkError: connection failures and 5xx -- retried with backoff
- RateLimitError: 429 -- retried, honoring Retry-After when present
- PermanentClientError: any other 4xx -- never retried
- TransformError: one bad record -- isolated, never aborts a batch
- PersistenceError: one failed write batch -- rolled back, later batches continue
- ConfigurationError: missing credentials or mappings -- surfaced immediately
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all connector sync errors."""


class TransientNetworkError(SyncError):
    """Connection-level failure or 5xx response that may succeed on retry."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(TransientNetworkError):
    """429 response from the vendor API.

    Args:
        message: Human-readable error text.
        retry_after: Seconds the vendor asked us to wait, if it said.
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class PermanentClientError(SyncError):
    """4xx response (other than 429). Retrying a malformed request cannot help."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransformError(SyncError):
    """A single raw record could not be mapped to the normalized schema."""

    def __init__(self, message: str, record_id: str | None = None) -> None:
        super().__init__(message)
        self.record_id = record_id


class PersistenceError(SyncError):
    """A write batch failed and was rolled back."""

    def __init__(self, message: str, batch_index: int | None = None) -> None:
        super().__init__(message)
        self.batch_index = batch_index


class ConfigurationError(SyncError):
    """Missing or invalid credentials, or unmapped required fields."""


# Errors that stop a paginated walk immediately instead of counting toward
# the consecutive-error limit.
NON_RETRYABLE_ERRORS: tuple[type[SyncError], ...] = (
    PermanentClientError,
    ConfigurationError,
)
