"""Partition archiving pipeline.

Modules:
    schema_inspector: Read column names and types of a source relation.
    partition_discovery: Find leaf partitions or synthesize time windows.
    path_template: Object keys, filenames and window arithmetic.
    chunk_buffer: Reusable fixed-capacity row buffer.
    extractor: Stream one partition into a hashed, staged temp file.
    integrity: Fan-out sinks, content hashing and upload verification.
    retry: Exponential backoff around whole attempts.
    partition_cache: Persistent skip/resume metadata.
    partition_archiver: Per-partition pipeline and worker pool.
    archive_reader: Read archived objects back into rows.
"""

from .archive_reader import detect_encoding, open_archive, read_archive
from .chunk_buffer import ChunkBuffer
from .extractor import ChunkedExtractor, StagedArtifact, build_extract_query
from .integrity import (
    ContentHasher,
    CountingWriter,
    FanOutWriter,
    compute_file_checksum,
    compute_multipart_etag_for_file,
    multipart_etag,
    verify_upload,
)
from .partition_archiver import PartitionArchiver, ProcessResult, archive_table, summarize_results
from .partition_cache import CacheEntry, CacheScope, PartitionCacheStore
from .partition_discovery import (
    discover_partitions,
    find_leaf_partitions,
    parse_partition_coverage,
    synthesize_windows,
    with_row_counts,
)
from .path_template import build_filename, build_object_key, render_path, split_range
from .retry import RetryPolicy, classify_error, run_with_retry
from .schema_inspector import inspect_table_schema

__all__ = [
    # Buffers and extraction
    "ChunkBuffer",
    "ChunkedExtractor",
    "StagedArtifact",
    "build_extract_query",
    # Integrity
    "ContentHasher",
    "CountingWriter",
    "FanOutWriter",
    "compute_file_checksum",
    "compute_multipart_etag_for_file",
    "multipart_etag",
    "verify_upload",
    # Pipeline
    "PartitionArchiver",
    "ProcessResult",
    "archive_table",
    "summarize_results",
    # Cache
    "CacheEntry",
    "CacheScope",
    "PartitionCacheStore",
    # Discovery
    "discover_partitions",
    "find_leaf_partitions",
    "parse_partition_coverage",
    "synthesize_windows",
    "with_row_counts",
    # Paths
    "build_filename",
    "build_object_key",
    "render_path",
    "split_range",
    # Reading archives
    "detect_encoding",
    "open_archive",
    "read_archive",
    # Retry
    "RetryPolicy",
    "classify_error",
    "run_with_retry",
    # Schema
    "inspect_table_schema",
]
