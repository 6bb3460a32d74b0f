"""Tests for the retry orchestrator."""

import threading
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import EndpointConnectionError
from sqlalchemy.exc import OperationalError, ProgrammingError

from archiver.errors import (
    CancellationError,
    ConfigurationError,
    RetryExhaustedError,
    TableNotFoundError,
    TransientError,
)
from archiver.extraction.extractor import ChunkedExtractor
from archiver.extraction.retry import RetryPolicy, classify_error, run_with_retry
from archiver.formats import JSONLFormat
from archiver.compression import NoneCompressor
from conftest import FakeStream, make_client_error


class FakePgError(Exception):
    def __init__(self, message, pgcode=None):
        super().__init__(message)
        self.pgcode = pgcode


def operational_error(message="server closed the connection unexpectedly", pgcode=None):
    return OperationalError("SELECT 1", {}, FakePgError(message, pgcode))


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_defaults(self):
        policy = RetryPolicy()
        assert (policy.max_attempts, policy.initial_delay, policy.max_delay, policy.multiplier) == (3, 5.0, 60.0, 2.0)

    def test_exponential_delay_capped(self):
        policy = RetryPolicy(initial_delay=5, max_delay=60, multiplier=2)
        assert [policy.delay(n) for n in range(1, 6)] == [5, 10, 20, 40, 60]


class TestClassifyError:
    """Tests for classify_error."""

    @pytest.mark.parametrize("exc", [
        ConfigurationError("bad"),
        TableNotFoundError("gone"),
        operational_error("FATAL: password authentication failed for user x"),
        operational_error("auth", pgcode="28P01"),
        ProgrammingError("SELECT", {}, FakePgError("permission denied for table events", "42501")),
        make_client_error("AccessDenied", 403, "PutObject"),
        make_client_error("InvalidAccessKeyId", 403, "PutObject"),
        make_client_error("SignatureDoesNotMatch", 403, "PutObject"),
        make_client_error("NoSuchBucket", 404, "PutObject"),
        make_client_error("InvalidArgument", 400, "PutObject"),
    ])
    def test_permanent(self, exc):
        assert classify_error(exc) == "permanent"

    @pytest.mark.parametrize("exc", [
        TransientError("flaky"),
        operational_error(),
        operational_error("canceling statement due to statement timeout", pgcode="57014"),
        make_client_error("SlowDown", 503, "PutObject"),
        make_client_error("InternalError", 500, "PutObject"),
        make_client_error("RequestTimeout", 400, "PutObject"),
        EndpointConnectionError(endpoint_url="http://localhost:9000"),
        ConnectionResetError("reset by peer"),
        TimeoutError("timed out"),
        RuntimeError("something unexpected"),
    ])
    def test_retryable(self, exc):
        assert classify_error(exc) == "retryable"

    def test_cancellation(self):
        assert classify_error(CancellationError("stop")) == "cancelled"


class TestRunWithRetry:
    """Tests for run_with_retry."""

    def test_returns_first_success(self):
        operation = MagicMock(side_effect=[TransientError("once"), "ok"])
        sleep = MagicMock()

        assert run_with_retry(operation, RetryPolicy(initial_delay=1), sleep=sleep) == "ok"
        assert operation.call_count == 2
        sleep.assert_called_once_with(1)

    def test_exhaustion_chains_last_error(self):
        last = TransientError("third")
        operation = MagicMock(side_effect=[TransientError("first"), TransientError("second"), last])
        on_retry = MagicMock()

        with pytest.raises(RetryExhaustedError) as exc_info:
            run_with_retry(operation, RetryPolicy(max_attempts=3), on_retry=on_retry, sleep=lambda d: None)

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error is last
        assert exc_info.value.__cause__ is last
        assert on_retry.call_count == 2
        assert [c[0][0] for c in on_retry.call_args_list] == [1, 2]

    def test_permanent_error_not_retried(self):
        operation = MagicMock(side_effect=ConfigurationError("bad table"))

        with pytest.raises(ConfigurationError):
            run_with_retry(operation, RetryPolicy(max_attempts=5), sleep=lambda d: None)

        assert operation.call_count == 1

    def test_cancel_during_backoff(self):
        cancel = threading.Event()

        def operation():
            cancel.set()
            raise TransientError("flaky")

        with pytest.raises(CancellationError, match="during backoff"):
            run_with_retry(operation, RetryPolicy(initial_delay=30), cancel_event=cancel)

    def test_cancelled_before_first_attempt(self):
        cancel = threading.Event()
        cancel.set()
        operation = MagicMock()

        with pytest.raises(CancellationError):
            run_with_retry(operation, RetryPolicy(), cancel_event=cancel)

        operation.assert_not_called()


class TestRetryScope:
    """A failure in the middle of row iteration restarts the whole attempt."""

    def _extractor(self, tmp_path):
        return ChunkedExtractor(
            MagicMock(), JSONLFormat(), NoneCompressor(), chunk_size=100, temp_dir=str(tmp_path),
        )

    def test_mid_iteration_failure_retried_to_max_attempts(self, tmp_path, daily_partition, sample_schema):
        rows = [{"id": i} for i in range(250)]
        stream = FakeStream(rows, fail_after=100, error=operational_error())
        extractor = self._extractor(tmp_path)

        with patch("archiver.extraction.extractor.stream_query", stream):
            with pytest.raises(RetryExhaustedError) as exc_info:
                run_with_retry(
                    lambda: extractor.extract(daily_partition, sample_schema),
                    RetryPolicy(max_attempts=3),
                    sleep=lambda d: None,
                )

        assert len(stream.calls) == 3
        assert exc_info.value.attempts == 3
        assert list(tmp_path.iterdir()) == []

    def test_recovers_after_transient_failure(self, tmp_path, daily_partition, sample_schema):
        rows = [{"id": i} for i in range(250)]
        stream = FakeStream(rows, fail_after=200, error=operational_error(), fail_times=1)
        extractor = self._extractor(tmp_path)

        with patch("archiver.extraction.extractor.stream_query", stream):
            artifact = run_with_retry(
                lambda: extractor.extract(daily_partition, sample_schema),
                RetryPolicy(max_attempts=3),
                sleep=lambda d: None,
            )

        assert len(stream.calls) == 2
        assert artifact.row_count == 250
        artifact.discard()

    def test_permanent_error_aborts_after_one_attempt(self, tmp_path, daily_partition, sample_schema):
        rows = [{"id": i} for i in range(250)]
        error = operational_error("FATAL: password authentication failed for user archiver")
        stream = FakeStream(rows, fail_after=0, error=error)
        extractor = self._extractor(tmp_path)

        with patch("archiver.extraction.extractor.stream_query", stream):
            with pytest.raises(OperationalError):
                run_with_retry(
                    lambda: extractor.extract(daily_partition, sample_schema),
                    RetryPolicy(max_attempts=3),
                    sleep=lambda d: None,
                )

        assert len(stream.calls) == 1
        assert list(tmp_path.iterdir()) == []
