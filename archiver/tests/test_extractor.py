"""Tests for the chunked extractor and chunk buffer."""

import hashlib
import json
import threading
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import zstandard

from archiver.compression import NoneCompressor, ZstdCompressor
from archiver.errors import CancellationError
from archiver.extraction.chunk_buffer import ChunkBuffer
from archiver.extraction.extractor import ChunkedExtractor, StagedArtifact, build_extract_query
from archiver.formats import JSONLFormat, ParquetFormat
from archiver.models import PartitionInfo
from conftest import FakeStream


class TestChunkBuffer:
    """Tests for ChunkBuffer."""

    def test_capacity_is_clamped(self):
        assert ChunkBuffer(1).capacity == 100
        assert ChunkBuffer(5_000_000).capacity == 1_000_000
        assert ChunkBuffer().capacity == 10_000

    def test_fill_and_reset_keeps_slots(self):
        buffer = ChunkBuffer(100)
        slots = buffer._slots
        buffer.extend({"i": i} for i in range(100))

        assert buffer.is_full()
        assert len(buffer) == 100
        assert buffer[99] == {"i": 99}
        assert buffer[-1] == {"i": 99}

        buffer.reset()

        assert len(buffer) == 0
        assert buffer._slots is slots
        assert len(buffer._slots) == 100
        assert all(slot is None for slot in buffer._slots)

    def test_sequence_view_only_sees_filled_slots(self):
        buffer = ChunkBuffer(100)
        buffer.extend([{"a": 1}, {"a": 2}])
        assert list(buffer) == [{"a": 1}, {"a": 2}]
        assert buffer[0:5] == [{"a": 1}, {"a": 2}]
        with pytest.raises(IndexError):
            buffer[2]

    def test_overflow(self):
        buffer = ChunkBuffer(100)
        buffer.extend({} for _ in range(100))
        with pytest.raises(OverflowError):
            buffer.append({})


class TestBuildExtractQuery:
    """Tests for build_extract_query."""

    def test_whole_partition(self, daily_partition):
        sql, params = build_extract_query(daily_partition, "public")
        assert sql == 'SELECT * FROM "public"."events_20240115"'
        assert params == {}

    def test_window_filter(self):
        window = PartitionInfo("events", datetime(2024, 1, 1), datetime(2024, 1, 2), date_column="created_at")
        sql, params = build_extract_query(window, "sales")
        assert 'FROM "sales"."events"' in sql
        assert '"created_at" >= :start AND "created_at" < :end' in sql
        assert params == {"start": datetime(2024, 1, 1), "end": datetime(2024, 1, 2)}


class TestChunkedExtractor:
    """Tests for ChunkedExtractor.extract."""

    def _rows(self, n=250):
        return [{"id": i, "name": f"row-{i}"} for i in range(n)]

    def test_stages_compressed_file_with_hashes(self, tmp_path, daily_partition, sample_schema):
        stream = FakeStream(self._rows())
        progress = MagicMock()
        extractor = ChunkedExtractor(
            MagicMock(), JSONLFormat(), ZstdCompressor(), chunk_size=100, part_size=1024,
            temp_dir=str(tmp_path), progress=progress,
        )

        with patch("archiver.extraction.extractor.stream_query", stream):
            artifact = extractor.extract(daily_partition, sample_schema)

        data = Path(artifact.temp_path).read_bytes()
        plain = zstandard.ZstdDecompressor().decompressobj().decompress(data)
        lines = plain.decode("utf-8").splitlines()

        assert artifact.row_count == 250
        assert len(lines) == 250
        assert json.loads(lines[0]) == {"id": 0, "name": "row-0"}
        assert artifact.final_size == len(data)
        assert artifact.uncompressed_size == len(plain)
        assert artifact.content_hash == hashlib.md5(data).hexdigest()
        assert artifact.part_count == -(-len(data) // 1024)
        assert progress.call_count == 3
        assert progress.call_args[0][0].rows == 250
        artifact.discard()
        artifact.discard()
        assert list(tmp_path.iterdir()) == []

    def test_parquet_bypasses_external_compressor(self, tmp_path, daily_partition, sample_schema):
        compressor = MagicMock()
        extractor = ChunkedExtractor(
            MagicMock(), ParquetFormat(), compressor, chunk_size=100, temp_dir=str(tmp_path),
        )
        rows = [{"id": i, "name": "x", "amount": None, "created_at": None, "active": True, "note": None}
                for i in range(10)]

        with patch("archiver.extraction.extractor.stream_query", FakeStream(rows)):
            artifact = extractor.extract(daily_partition, sample_schema)

        compressor.new_writer.assert_not_called()
        assert Path(artifact.temp_path).read_bytes()[:4] == b"PAR1"
        artifact.discard()

    def test_failure_removes_temp_file(self, tmp_path, daily_partition, sample_schema):
        stream = FakeStream(self._rows(), fail_after=100, error=IOError("disk gone"))
        extractor = ChunkedExtractor(
            MagicMock(), JSONLFormat(), NoneCompressor(), chunk_size=100, temp_dir=str(tmp_path),
        )

        with patch("archiver.extraction.extractor.stream_query", stream):
            with pytest.raises(IOError, match="disk gone"):
                extractor.extract(daily_partition, sample_schema)

        assert list(tmp_path.iterdir()) == []

    def test_cancellation_at_chunk_boundary_removes_temp_file(self, tmp_path, daily_partition, sample_schema):
        cancel = threading.Event()
        extractor = ChunkedExtractor(
            MagicMock(), JSONLFormat(), NoneCompressor(), chunk_size=100, temp_dir=str(tmp_path),
            cancel_event=cancel, progress=lambda event: cancel.set(),
        )

        with patch("archiver.extraction.extractor.stream_query", FakeStream(self._rows())):
            with pytest.raises(CancellationError) as exc_info:
                extractor.extract(daily_partition, sample_schema)

        assert exc_info.value.stage == "extract"
        assert list(tmp_path.iterdir()) == []

    def test_empty_partition(self, tmp_path, daily_partition, sample_schema):
        extractor = ChunkedExtractor(
            MagicMock(), JSONLFormat(), NoneCompressor(), chunk_size=100, temp_dir=str(tmp_path),
        )

        with patch("archiver.extraction.extractor.stream_query", FakeStream([])):
            artifact = extractor.extract(daily_partition, sample_schema)

        assert artifact.row_count == 0
        assert artifact.final_size == 0
        assert artifact.content_hash == hashlib.md5(b"").hexdigest()
        artifact.discard()


class TestStagedArtifact:
    """Tests for StagedArtifact."""

    def test_expected_etag(self, tmp_path):
        artifact = StagedArtifact(str(tmp_path / "x"), 150, "plain", 300, "multi-2", 2, 10)
        assert artifact.expected_etag(threshold=100) == "multi-2"
        assert artifact.expected_etag(threshold=200) == "plain"
