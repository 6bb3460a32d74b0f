"""Pytest configuration and shared fixtures for archiver tests."""

import hashlib
import os
import sys
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

# Ensure the archiver package is importable without installation
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from archiver.config.archiver_config import ArchiverConfig, DatabaseConfig, RetryConfig, S3Config  # noqa: E402
from archiver.models import ColumnSchema, PartitionInfo, TableSchema  # noqa: E402

FROZEN_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_client_error(code, status, operation="HeadObject"):
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class FakeS3Client:
    """In-memory stand-in for the subset of the boto3 S3 client we use."""

    def __init__(self):
        self.objects = {}
        self.put_calls = 0
        self.head_calls = 0
        self.part_calls = 0
        self.aborted = []
        self._uploads = {}
        self.corrupt_next_uploads = 0

    def _store(self, key, data, etag):
        if self.corrupt_next_uploads:
            self.corrupt_next_uploads -= 1
            etag = "0" * 32
        self.objects[key] = {"data": data, "etag": etag}

    def put_object(self, Bucket, Key, Body, ContentType=None):
        self.put_calls += 1
        data = Body.read() if hasattr(Body, "read") else Body
        etag = hashlib.md5(data).hexdigest()
        self._store(Key, data, etag)
        return {"ETag": f'"{etag}"'}

    def head_object(self, Bucket, Key):
        self.head_calls += 1
        if Key not in self.objects:
            raise make_client_error("404", 404)
        obj = self.objects[Key]
        return {"ContentLength": len(obj["data"]), "ETag": f'"{obj["etag"]}"'}

    def create_multipart_upload(self, Bucket, Key, ContentType=None):
        upload_id = f"upload-{len(self._uploads) + 1}"
        self._uploads[upload_id] = {}
        return {"UploadId": upload_id}

    def upload_part(self, Bucket, Key, PartNumber, UploadId, Body):
        self.part_calls += 1
        self._uploads[UploadId][PartNumber] = Body
        return {"ETag": f'"{hashlib.md5(Body).hexdigest()}"'}

    def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        self.put_calls += 1
        parts = self._uploads.pop(UploadId)
        numbers = [p["PartNumber"] for p in MultipartUpload["Parts"]]
        data = b"".join(parts[n] for n in numbers)
        digests = b"".join(hashlib.md5(parts[n]).digest() for n in numbers)
        etag = f"{hashlib.md5(digests).hexdigest()}-{len(numbers)}"
        self._store(Key, data, etag)
        return {"ETag": f'"{etag}"'}

    def abort_multipart_upload(self, Bucket, Key, UploadId):
        self.aborted.append(UploadId)
        self._uploads.pop(UploadId, None)


class FakeResult:
    """Mapping result whose rows are handed out through ``fetchmany``.

    ``fail_after`` raises ``error`` once that many rows have been fetched.
    """

    def __init__(self, rows, fail_after=None, error=None):
        self._rows = list(rows)
        self._pos = 0
        self._fail_after = fail_after
        self._error = error

    def fetchmany(self, size):
        if self._fail_after is not None and self._pos >= self._fail_after:
            raise self._error
        batch = self._rows[self._pos:self._pos + size]
        self._pos += len(batch)
        return batch


class FakeStream:
    """Replacement for ``stream_query`` that records every query it serves."""

    def __init__(self, rows, fail_after=None, error=None, fail_times=None):
        self.rows = rows
        self.fail_after = fail_after
        self.error = error
        self.fail_times = fail_times
        self.calls = []

    @contextmanager
    def __call__(self, sql, engine, params=None):
        self.calls.append((sql, params))
        failing = self.error is not None and (self.fail_times is None or len(self.calls) <= self.fail_times)
        if failing:
            yield FakeResult(self.rows, fail_after=self.fail_after, error=self.error)
        else:
            yield FakeResult(self.rows)


@pytest.fixture
def sample_schema():
    """Column list of the ``events`` table."""
    return TableSchema(
        table="events",
        columns=[
            ColumnSchema("id", "int8", "bigint"),
            ColumnSchema("name", "text", "text"),
            ColumnSchema("amount", "numeric", "numeric"),
            ColumnSchema("created_at", "timestamp", "timestamp without time zone"),
            ColumnSchema("active", "bool", "boolean"),
            ColumnSchema("note", "text", "text"),
        ],
    )


@pytest.fixture
def sample_rows():
    """25 rows of the ``events`` table with some NULLs."""
    base = datetime(2024, 1, 15, 0, 0, 0)
    rows = []
    for i in range(25):
        rows.append({
            "id": i + 1,
            "name": f"event-{i + 1}",
            "amount": Decimal(f"{i}.50"),
            "created_at": base + timedelta(minutes=i * 7),
            "active": i % 2 == 0,
            "note": None if i % 3 == 0 else f"note {i}",
        })
    return rows


@pytest.fixture
def frozen_clock():
    return lambda: FROZEN_NOW


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def mock_boto3_client():
    """Patch ``boto3.client`` so no real client is created."""
    with patch("boto3.client") as mock_client_fn:
        client = MagicMock()
        mock_client_fn.return_value = client
        yield client


@pytest.fixture
def postgres_env():
    """Set PostgreSQL environment variables for testing."""
    env_vars = {
        "POSTGRES_USER": "test-user",
        "POSTGRES_PASSWORD": "test-password",
        "POSTGRES_HOST": "localhost",
        "POSTGRES_PORT": "5432",
        "POSTGRES_DB": "test-db",
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


@pytest.fixture
def archiver_config(tmp_path):
    """A valid config archiving ``events`` as zstd JSONL into a temp cache."""
    temp_dir = tmp_path / "staging"
    temp_dir.mkdir()
    return ArchiverConfig(
        table="events",
        start_date="2024-01-01",
        end_date="2024-01-31",
        output_duration="daily",
        output_format="jsonl",
        compression="zstd",
        chunk_size=100,
        workers=2,
        cache_dir=str(tmp_path / "cache"),
        temp_dir=str(temp_dir),
        database=DatabaseConfig(host="db", port=5432, user="archiver", password="secret", name="app"),
        s3=S3Config(
            endpoint_url="http://localhost:9000",
            bucket="archive",
            access_key="key",
            secret_key="secret",
            region="us-east-1",
            path_template="export/{table}/{YYYY}/{MM}",
        ),
        retry=RetryConfig(max_attempts=3, initial_delay=0.0, max_delay=0.0),
    )


@pytest.fixture
def daily_partition():
    return PartitionInfo(
        table_name="events_20240115",
        coverage_start=datetime(2024, 1, 15),
        coverage_end=datetime(2024, 1, 16),
        base_table="events",
    )
