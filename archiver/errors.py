"""Error taxonomy for the archiver.

Every failure surfaced by the pipeline is one of these types so the retry
orchestrator and the callers consuming ``ProcessResult.error`` can decide
remediation without string matching.
"""

from typing import Optional


class ArchiverError(Exception):
    """Base class for archiver failures.

    Args:
        message: Human-readable description.
        partition: Identity of the partition being processed, if any.
        stage: Pipeline stage where the error originated, if known.
    """

    def __init__(
        self,
        message: str,
        partition: Optional[str] = None,
        stage: Optional[str] = None,
    ):
        super().__init__(message)
        self.partition = partition
        self.stage = stage

    def __str__(self):
        message = super().__str__()
        context = []
        if self.partition:
            context.append(f"partition={self.partition}")
        if self.stage:
            context.append(f"stage={self.stage}")
        if context:
            return f"{message} ({', '.join(context)})"
        return message


class ConfigurationError(ArchiverError):
    """Raised for invalid configuration. Never retried."""


class TransientError(ArchiverError):
    """Raised for failures that are expected to succeed on retry."""


class PermanentError(ArchiverError):
    """Raised for failures that will not go away by retrying."""


class TableNotFoundError(PermanentError):
    """Raised when a table does not exist or exposes no columns."""


class IntegrityError(ArchiverError):
    """Raised when an uploaded object does not match the staged artifact."""


class CancellationError(ArchiverError):
    """Raised when the shared cancellation signal stops an attempt."""


class RetryExhaustedError(ArchiverError):
    """Raised when every retry attempt failed with a retryable error.

    Args:
        message: Human-readable description.
        attempts: Number of attempts made.
        last_error: The error raised by the final attempt.
    """

    def __init__(self, message: str, attempts: int, last_error: BaseException, **kwargs):
        super().__init__(message, **kwargs)
        self.attempts = attempts
        self.last_error = last_error


class FormatError(PermanentError):
    """Raised when an archived object cannot be decoded."""
