"""Retry with exponential backoff around a whole pipeline attempt.

The operation passed to ``run_with_retry`` is a zero-argument callable that
performs one complete attempt (open the cursor, stream every chunk, stage
the file). A failure anywhere inside it, including mid-iteration, restarts
the attempt from scratch.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from sqlalchemy.exc import DBAPIError, OperationalError

from archiver.errors import (
    CancellationError,
    ConfigurationError,
    IntegrityError,
    PermanentError,
    RetryExhaustedError,
    TransientError,
)

log = logging.getLogger(__name__)

T = TypeVar("T")

PERMANENT_S3_CODES = {
    "AccessDenied",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "NoSuchBucket",
    "InvalidBucketName",
    "AllAccessDisabled",
    "AccountProblem",
}

RETRYABLE_S3_CODES = {
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "TooManyRequests",
    "InternalError",
    "ServiceUnavailable",
}

# SQLSTATE classes: 22 data exception, 28 invalid authorization, 42 syntax
# error or access rule violation
PERMANENT_SQLSTATE_CLASSES = ("22", "28", "42")

_PERMANENT_DB_MESSAGES = (
    "password authentication failed",
    "permission denied",
    "does not exist",
)


@dataclass
class RetryPolicy:
    """Exponential backoff settings.

    Attributes:
        max_attempts: Total attempts including the first one.
        initial_delay: Delay in seconds after the first failure.
        max_delay: Upper bound for any single delay.
        multiplier: Growth factor between consecutive delays.
    """

    max_attempts: int = 3
    initial_delay: float = 5.0
    max_delay: float = 60.0
    multiplier: float = 2.0

    @classmethod
    def from_config(cls, retry_config) -> "RetryPolicy":
        return cls(
            max_attempts=retry_config.max_attempts,
            initial_delay=retry_config.initial_delay,
            max_delay=retry_config.max_delay,
            multiplier=retry_config.multiplier,
        )

    def delay(self, attempt: int) -> float:
        """Return the delay to wait after failed attempt number *attempt*."""
        return min(self.initial_delay * (self.multiplier ** (attempt - 1)), self.max_delay)


def _sqlstate(exc: DBAPIError) -> str:
    orig = getattr(exc, "orig", None)
    return str(getattr(orig, "pgcode", None) or "")


def classify_error(exc: BaseException) -> str:
    """Classify *exc* as ``"retryable"``, ``"permanent"`` or ``"cancelled"``."""
    if isinstance(exc, CancellationError):
        return "cancelled"
    if isinstance(exc, (ConfigurationError, PermanentError, RetryExhaustedError)):
        return "permanent"
    if isinstance(exc, (TransientError, IntegrityError)):
        return "retryable"

    if isinstance(exc, DBAPIError):
        sqlstate = _sqlstate(exc)
        message = str(exc).lower()
        if sqlstate == "42501" or sqlstate.startswith(PERMANENT_SQLSTATE_CLASSES):
            return "permanent"
        if isinstance(exc, OperationalError) or exc.connection_invalidated:
            if "password authentication failed" in message:
                return "permanent"
            return "retryable"
        if any(text in message for text in _PERMANENT_DB_MESSAGES):
            return "permanent"
        return "retryable"

    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = str(error.get("Code", ""))
        status = int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)
        if code in PERMANENT_S3_CODES:
            return "permanent"
        if code in RETRYABLE_S3_CODES or status >= 500 or status in (408, 429):
            return "retryable"
        if 400 <= status < 500:
            return "permanent"
        return "retryable"

    if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, ConnectionClosedError)):
        return "retryable"
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return "retryable"

    return "retryable"


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc) == "retryable"


def run_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    cancel_event: Optional[threading.Event] = None,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Optional[Callable[[float], None]] = None,
    description: str = "operation",
) -> T:
    """Run *operation* until it succeeds, fails permanently or runs out of attempts.

    Args:
        operation: Zero-argument callable performing one whole attempt.
        policy: Backoff settings.
        cancel_event: Shared cancellation signal; also used to wait between
            attempts so cancellation interrupts the backoff.
        on_retry: Called as ``on_retry(attempt, exc, delay)`` before waiting.
        sleep: Replaces the wait between attempts (tests).
        description: Label used in log messages.

    Returns:
        The value returned by the successful attempt.

    Raises:
        CancellationError: If cancelled before or between attempts.
        RetryExhaustedError: If every attempt failed with a retryable error.
        Exception: The original error when it is permanent.
    """
    attempt = 0
    while True:
        attempt += 1
        if cancel_event is not None and cancel_event.is_set():
            raise CancellationError(f"{description} cancelled before attempt {attempt}")
        try:
            return operation()
        except Exception as exc:
            category = classify_error(exc)
            if category != "retryable":
                raise
            if attempt >= policy.max_attempts:
                log.error("%s failed after %d attempts: %s", description, attempt, exc)
                raise RetryExhaustedError(
                    f"{description} failed after {attempt} attempts: {exc}",
                    attempts=attempt,
                    last_error=exc,
                    partition=getattr(exc, "partition", None),
                    stage=getattr(exc, "stage", None),
                ) from exc

            delay = policy.delay(attempt)
            log.warning(
                "%s attempt %d/%d failed (%s), retrying in %.1fs",
                description, attempt, policy.max_attempts, exc, delay,
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay)

            if sleep is not None:
                sleep(delay)
            elif cancel_event is not None:
                if cancel_event.wait(delay):
                    raise CancellationError(f"{description} cancelled during backoff") from exc
            else:
                time.sleep(delay)
