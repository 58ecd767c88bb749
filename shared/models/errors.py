"""Error taxonomy of the indexing pipeline.

Transient  : timeouts, connection resets, 429/5xx. Retried with backoff.
Capacity   : payload too large. Handled by splitting the batch.
Validation : bad data (empty text, malformed record, wrong vector size). Never retried.
Fatal      : everything else, or transient errors that exhausted their retries.
"""


class IndexingError(Exception):
    """Base class for all pipeline errors.

    Args:
        message (str): Human-readable description.
        stage (str | None): Pipeline stage that raised the error (e.g. "embedding").
        status_code (int | None): HTTP status code, if the error came from a response.
    """

    def __init__(self, message: str, stage: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.stage = stage
        self.status_code = status_code


class TransientError(IndexingError):
    """A failure that may succeed when retried."""


class CapacityError(IndexingError):
    """The request payload exceeded the backend's size limit (HTTP 413)."""


class DocumentValidationError(IndexingError):
    """The input data is invalid and retrying cannot fix it."""


class DimensionMismatchError(DocumentValidationError):
    """An embedding vector does not have the configured collection size."""

    def __init__(self, expected: int, actual: int, stage: str | None = "embedding") -> None:
        super().__init__(f"Embedding dimension mismatch: expected {expected}, got {actual}.", stage=stage)
        self.expected = expected
        self.actual = actual


class FatalIndexingError(IndexingError):
    """A non-retryable failure for the current unit of work."""


class SourceUnavailableError(IndexingError):
    """The document source cannot be opened. Aborts the run at startup."""
