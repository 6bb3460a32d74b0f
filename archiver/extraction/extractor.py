"""Chunked streaming extraction of one partition into a staged temp file.

Rows are read from a server-side cursor in chunks, serialized, compressed
and written to a temp file while the integrity hashes are computed from the
same byte stream. Memory stays bounded by one chunk plus the compressor's
and serializer's internal buffers regardless of partition size.
"""

import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.engine import Engine

from archiver.errors import CancellationError
from archiver.extraction.chunk_buffer import DEFAULT_CAPACITY, ChunkBuffer
from archiver.extraction.integrity import (
    DEFAULT_PART_SIZE,
    MULTIPART_THRESHOLD,
    ContentHasher,
    CountingWriter,
    FanOutWriter,
    expected_etag,
)
from archiver.models import PartitionInfo, ProgressEvent, TableSchema
from archiver.utils.postgres_client import stream_query

log = logging.getLogger(__name__)


@dataclass
class StagedArtifact:
    """A finished, fully hashed temp file awaiting upload."""

    temp_path: str
    final_size: int
    content_hash: str
    uncompressed_size: int
    multipart_etag: str
    part_count: int
    row_count: int

    def expected_etag(self, threshold: int = MULTIPART_THRESHOLD) -> str:
        return expected_etag(self.final_size, self.content_hash, self.multipart_etag, threshold)

    def discard(self) -> None:
        """Delete the temp file; safe to call more than once."""
        try:
            os.unlink(self.temp_path)
        except FileNotFoundError:
            pass


def build_extract_query(partition: PartitionInfo, schema: str) -> Tuple[str, Dict]:
    """Return the SELECT for *partition* and its bind parameters."""
    sql = f'SELECT * FROM "{schema}"."{partition.source_table}"'
    params: Dict = {}
    if partition.date_column:
        column = f'"{partition.date_column}"'
        sql += f" WHERE {column} >= :start AND {column} < :end ORDER BY {column}"
        params = {"start": partition.coverage_start, "end": partition.coverage_end}
    return sql, params


class ChunkedExtractor:
    """Streams one partition through serializer and compressor into a temp file.

    Args:
        engine: SQLAlchemy engine for the source database.
        formatter: Serializer (see ``archiver.formats``).
        compressor: Compressor (see ``archiver.compression``); bypassed when
            the formatter compresses internally.
        schema: Source schema name.
        compression_level: Requested level, normalized by the compressor.
        chunk_size: Rows per chunk.
        part_size: Part size for the multipart checksum.
        temp_dir: Directory for temp files (system default if None).
        cancel_event: Checked at every chunk boundary.
        progress: Called with a ProgressEvent after every chunk.
    """

    def __init__(
        self,
        engine: Engine,
        formatter,
        compressor,
        schema: str = "public",
        compression_level: int = 0,
        chunk_size: int = DEFAULT_CAPACITY,
        part_size: int = DEFAULT_PART_SIZE,
        temp_dir: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[Callable[[ProgressEvent], None]] = None,
    ):
        self.engine = engine
        self.formatter = formatter
        self.compressor = compressor
        self.schema = schema
        self.compression_level = compression_level
        self.chunk_size = chunk_size
        self.part_size = part_size
        self.temp_dir = temp_dir
        self.cancel_event = cancel_event
        self.progress = progress

    def _check_cancelled(self, partition: PartitionInfo) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise CancellationError("extraction cancelled", partition=partition.cache_key, stage="extract")

    def _emit(self, partition: PartitionInfo, rows: int, uncompressed: int) -> None:
        if self.progress is not None:
            self.progress(ProgressEvent(
                partition=partition.cache_key,
                stage="extract",
                rows=rows,
                total_rows=partition.row_count,
                bytes_written=uncompressed,
            ))

    def extract(self, partition: PartitionInfo, table_schema: TableSchema) -> StagedArtifact:
        """Extract *partition* into a staged temp file.

        Args:
            partition: Partition to read.
            table_schema: Column list used by the serializer.

        Returns:
            StagedArtifact describing the finished temp file.

        Raises:
            CancellationError: If the cancel event is set at a chunk boundary.
            Exception: Any database or I/O error; the temp file is removed
                before it propagates.
        """
        self._check_cancelled(partition)
        sql, params = build_extract_query(partition, self.schema)
        fd, temp_path = tempfile.mkstemp(prefix=f"{partition.table_name}_", suffix=".part", dir=self.temp_dir)
        log.debug("Extracting %s into %s", partition.cache_key, temp_path)

        try:
            with os.fdopen(fd, "wb") as temp_file:
                hasher = ContentHasher(self.part_size)
                staged = FanOutWriter(temp_file, hasher)
                compressor_writer = None
                if not self.formatter.uses_internal_compression:
                    compressor_writer = self.compressor.new_writer(staged, self.compression_level)
                counter = CountingWriter(compressor_writer if compressor_writer is not None else staged)
                writer = self.formatter.new_writer(counter, table_schema)

                buffer = ChunkBuffer(self.chunk_size)
                rows = 0
                with stream_query(sql, self.engine, params) as result:
                    while True:
                        self._check_cancelled(partition)
                        batch = result.fetchmany(buffer.remaining())
                        if not batch:
                            break
                        buffer.extend(batch)
                        if buffer.is_full():
                            writer.write_chunk(buffer)
                            rows += len(buffer)
                            buffer.reset()
                            self._emit(partition, rows, counter.count)
                    if len(buffer):
                        writer.write_chunk(buffer)
                        rows += len(buffer)
                        buffer.reset()
                        self._emit(partition, rows, counter.count)

                writer.close()
                if compressor_writer is not None:
                    compressor_writer.close()
                temp_file.flush()
        except BaseException:
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass
            raise

        digests = hasher.part_digests()
        artifact = StagedArtifact(
            temp_path=temp_path,
            final_size=hasher.size,
            content_hash=hasher.hexdigest(),
            uncompressed_size=counter.count,
            multipart_etag=hasher.multipart_etag(),
            part_count=len(digests),
            row_count=rows,
        )
        log.info(
            "Extracted %s: %d rows, %d bytes uncompressed, %d bytes staged",
            partition.cache_key, rows, artifact.uncompressed_size, artifact.final_size,
        )
        return artifact
