"""Per-partition archive pipeline and the worker pool that drives it.

For every partition the cheapest sufficient check decides how much work is
done:

1. Cached metadata says the object was uploaded and the destination still
   reports the same size and ETag: nothing is extracted or uploaded.
2. After extraction, the staged file already matches the destination: the
   upload is skipped and the metadata is recorded.
3. Otherwise the staged file is uploaded, verified and recorded.

Usage:
    from archiver.extraction import archive_table, summarize_results

    results = archive_table(load_config("archiver.yaml"), cancel_event=stop)
    print(summarize_results(results))
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from archiver.compression import get_compressor
from archiver.errors import ArchiverError, CancellationError, ConfigurationError, IntegrityError
from archiver.extraction.extractor import ChunkedExtractor, StagedArtifact
from archiver.extraction.integrity import expected_etag, matches_destination, verify_upload
from archiver.extraction.partition_cache import PartitionCacheStore, utc_now
from archiver.extraction.partition_discovery import discover_partitions, with_row_counts
from archiver.extraction.path_template import build_object_key
from archiver.extraction.retry import RetryPolicy, run_with_retry
from archiver.extraction.schema_inspector import inspect_table_schema
from archiver.formats import get_formatter
from archiver.models import PartitionInfo, ProgressEvent, TableSchema
from archiver.utils.logging_config import get_logger, partition_logging_context
from archiver.utils.postgres_client import get_postgres_connection
from archiver.utils.s3_client import client_from_config
from archiver.utils.storage import ObjectStorageUploader

log = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """Outcome of processing one partition."""

    partition: PartitionInfo
    success: bool = False
    skipped: bool = False
    skip_reason: str = ""
    bytes_written: int = 0
    uncompressed_bytes: int = 0
    content_hash: str = ""
    duration: float = 0.0
    error: Optional[BaseException] = None
    stage: str = ""
    object_key: str = ""
    uploaded: bool = False
    row_count: int = -1
    attempts: int = 0

    @property
    def cancelled(self) -> bool:
        return self.stage == "cancelled"


class PartitionArchiver:
    """Runs the archive pipeline for the partitions of one table.

    Args:
        config: ArchiverConfig for the run.
        engine: SQLAlchemy engine for the source database.
        uploader: ObjectStorageUploader bound to the destination bucket.
        cache_store: Skip-decision store for this table and destination.
        cancel_event: Shared cancellation signal.
        progress: Optional callback receiving ProgressEvents.
        sleep: Replaces the backoff wait between retries (tests).
    """

    def __init__(
        self,
        config,
        engine,
        uploader: ObjectStorageUploader,
        cache_store: PartitionCacheStore,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[Callable[[ProgressEvent], None]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.config = config
        self.uploader = uploader
        self.cache = cache_store
        self.cancel_event = cancel_event or threading.Event()
        self.progress = progress
        self.sleep = sleep
        self.policy = RetryPolicy.from_config(config.retry)
        self.threshold = config.s3.multipart_threshold

        self.formatter = get_formatter(config.output_format, config.compression)
        compression = "none" if self.formatter.uses_internal_compression else config.compression
        self.compressor = get_compressor(compression, config.workers)
        self.extractor = ChunkedExtractor(
            engine,
            self.formatter,
            self.compressor,
            schema=config.schema,
            compression_level=config.compression_level,
            chunk_size=config.chunk_size,
            part_size=config.s3.part_size,
            temp_dir=config.temp_dir,
            cancel_event=self.cancel_event,
            progress=progress,
        )

    def object_key(self, partition: PartitionInfo) -> str:
        return build_object_key(
            self.config.s3.path_template,
            partition,
            self.config.output_duration,
            self.formatter.extension(),
            self.compressor.extension(),
        )

    @property
    def content_type(self) -> str:
        if self.compressor.name == "none":
            return self.formatter.mime_type()
        return self.compressor.mime_type

    def _emit(self, result: ProcessResult, stage: str) -> None:
        if self.progress is not None:
            self.progress(ProgressEvent(
                partition=result.partition.cache_key,
                stage=stage,
                rows=max(result.row_count, 0),
                total_rows=result.partition.row_count,
                bytes_written=result.uncompressed_bytes,
            ))

    def _retry(self, operation, description: str):
        return run_with_retry(
            operation,
            self.policy,
            cancel_event=self.cancel_event,
            sleep=self.sleep,
            description=description,
        )

    def _check_cancelled(self, partition: PartitionInfo, stage: str) -> None:
        if self.cancel_event.is_set():
            raise CancellationError("archive cancelled", partition=partition.cache_key, stage=stage)

    def _extract(self, partition: PartitionInfo, table_schema: TableSchema, result: ProcessResult) -> StagedArtifact:
        def attempt():
            result.attempts += 1
            return self.extractor.extract(partition, table_schema)

        def on_retry(attempt_number, exc, delay):
            # The extractor has already removed the failed attempt's temp file
            log.info("Discarded attempt %d of %s after: %s", attempt_number, partition.cache_key, exc)

        return run_with_retry(
            attempt,
            self.policy,
            cancel_event=self.cancel_event,
            on_retry=on_retry,
            sleep=self.sleep,
            description=f"extract {partition.cache_key}",
        )

    def _upload_verified(self, key: str, artifact: StagedArtifact, etag: str) -> None:
        """Upload *artifact* and verify it, re-uploading on a checksum mismatch."""
        max_verifications = self.config.max_upload_verifications
        for verification in range(1, max_verifications + 1):
            self._retry(
                lambda: self.uploader.upload_file(
                    artifact.temp_path, key, self.content_type, artifact.final_size, self.cancel_event
                ),
                f"upload {key}",
            )
            info = self._retry(lambda: self.uploader.head_object(key), f"head {key}")
            try:
                verify_upload(key, artifact.final_size, etag, info)
                return
            except IntegrityError:
                if verification >= max_verifications:
                    raise
                log.warning("Verification %d/%d of %s failed, re-uploading", verification, max_verifications, key)

    def process_partition(self, partition: PartitionInfo, table_schema: TableSchema) -> ProcessResult:
        """Archive one partition.

        Never raises; failures and cancellation are reported through the
        returned ProcessResult.
        """
        started = time.monotonic()
        key = self.object_key(partition)
        result = ProcessResult(partition=partition, object_key=key, row_count=partition.row_count)
        plog = get_logger(__name__, table=partition.base_table, partition=partition.cache_key)
        artifact: Optional[StagedArtifact] = None

        with self.cache.key_lock(partition.cache_key):
            try:
                self._check_cancelled(partition, "queued")

                result.stage = "cache"
                cached = self.cache.get_file_metadata(partition, key)
                if cached is not None and cached.uploaded and not self.config.dry_run:
                    cached_etag = expected_etag(
                        cached.compressed_size, cached.content_hash, cached.multipart_etag, self.threshold
                    )
                    info = self._retry(lambda: self.uploader.head_object(key), f"head {key}")
                    if matches_destination(cached.compressed_size, cached_etag, info):
                        result.stage = "skipped"
                        result.success = True
                        result.skipped = True
                        result.skip_reason = "cached metadata matches destination object"
                        result.bytes_written = cached.compressed_size
                        result.uncompressed_bytes = cached.uncompressed_size
                        result.content_hash = cached.content_hash
                        if cached.row_count >= 0:
                            result.row_count = cached.row_count
                        plog.info("Skipping %s: %s", key, result.skip_reason)
                        return result
                    plog.info("Cached metadata for %s no longer matches the destination", key)

                result.stage = "extract"
                artifact = self._extract(partition, table_schema, result)
                result.row_count = artifact.row_count
                result.bytes_written = artifact.final_size
                result.uncompressed_bytes = artifact.uncompressed_size
                result.content_hash = artifact.content_hash
                etag = artifact.expected_etag(self.threshold)

                if self.config.dry_run:
                    result.stage = "dry_run"
                    self.cache.record_success(
                        partition, key, artifact.uncompressed_size, artifact.final_size,
                        artifact.content_hash, artifact.multipart_etag,
                        uploaded=False, row_count=artifact.row_count,
                    )
                    result.success = True
                    plog.info("Dry run: %s would be uploaded to %s (%d bytes)", partition.cache_key, key,
                              artifact.final_size)
                    return result

                result.stage = "compare"
                self._check_cancelled(partition, "compare")
                info = self._retry(lambda: self.uploader.head_object(key), f"head {key}")
                if matches_destination(artifact.final_size, etag, info):
                    result.skipped = True
                    result.skip_reason = "destination object matches extracted data"
                    plog.info("Skipping upload of %s: %s", key, result.skip_reason)
                else:
                    result.stage = "upload"
                    self._emit(result, "upload")
                    self._upload_verified(key, artifact, etag)
                    result.uploaded = True
                    plog.info("Archived %s to %s (%d rows, %d bytes)", partition.cache_key, key,
                              artifact.row_count, artifact.final_size)

                self.cache.record_success(
                    partition, key, artifact.uncompressed_size, artifact.final_size,
                    artifact.content_hash, artifact.multipart_etag,
                    uploaded=True, row_count=artifact.row_count,
                )
                result.stage = "done"
                result.success = True
            except CancellationError as exc:
                result.stage = "cancelled"
                result.error = exc
                plog.info("Cancelled %s", partition.cache_key)
            except Exception as exc:
                if isinstance(exc, ArchiverError):
                    exc.partition = exc.partition or partition.cache_key
                    exc.stage = exc.stage or result.stage
                result.error = exc
                plog.error("Failed to archive %s at stage %s: %s", partition.cache_key, result.stage, exc)
                self.cache.record_error(partition, str(exc))
            finally:
                if artifact is not None:
                    artifact.discard()
                result.duration = time.monotonic() - started
                self._emit(result, result.stage or "done")

        return result

    def _process_or_cancel(self, partition: PartitionInfo, table_schema: TableSchema) -> ProcessResult:
        if self.cancel_event.is_set():
            return ProcessResult(
                partition=partition,
                object_key=self.object_key(partition),
                stage="cancelled",
                error=CancellationError("archive cancelled", partition=partition.cache_key, stage="queued"),
            )
        return self.process_partition(partition, table_schema)

    def check_unique_keys(self, partitions: List[PartitionInfo]) -> None:
        """Raise ConfigurationError if two partitions map to the same object key."""
        owners: Dict[str, str] = {}
        for partition in partitions:
            key = self.object_key(partition)
            owner = owners.setdefault(key, partition.cache_key)
            if owner != partition.cache_key:
                raise ConfigurationError(
                    f"partitions {owner} and {partition.cache_key} both map to object key '{key}'; "
                    f"add {{DD}} or {{HH}} to the path template or choose a finer output duration"
                )

    def run(self, partitions: List[PartitionInfo], table_schema: TableSchema) -> List[ProcessResult]:
        """Process *partitions* on a bounded worker pool.

        Returns:
            One ProcessResult per partition, in input order.

        Raises:
            ConfigurationError: If two partitions would overwrite each other.
        """
        if not partitions:
            return []
        self.check_unique_keys(partitions)
        workers = max(1, min(self.config.workers, len(partitions)))
        log.info("Archiving %d partitions with %d workers", len(partitions), workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="archiver") as executor:
            futures = [executor.submit(self._process_or_cancel, p, table_schema) for p in partitions]
            return [future.result() for future in futures]


def archive_table(
    config,
    engine=None,
    s3_client=None,
    cancel_event: Optional[threading.Event] = None,
    progress: Optional[Callable[[ProgressEvent], None]] = None,
    clock: Callable = utc_now,
    sleep: Optional[Callable[[float], None]] = None,
) -> List[ProcessResult]:
    """Discover, inspect, count and archive every partition of ``config.table``.

    Args:
        config: Validated ArchiverConfig.
        engine: SQLAlchemy engine; built from ``config.database`` if None.
        s3_client: boto3 S3 client; built from ``config.s3`` if None.
        cancel_event: Shared cancellation signal.
        progress: Optional ProgressEvent callback.
        clock: Returns the current aware UTC time for cache decisions.
        sleep: Replaces the backoff wait between retries (tests).

    Returns:
        One ProcessResult per discovered partition.
    """
    config.validate()
    if engine is None:
        engine = get_postgres_connection(
            config.database.connection_string,
            statement_timeout=config.database.statement_timeout,
            pool_size=config.workers,
        )
    if s3_client is None:
        s3_client = client_from_config(config.s3, config.workers)

    uploader = ObjectStorageUploader(
        s3_client,
        config.s3.bucket,
        part_size=config.s3.part_size,
        threshold=config.s3.multipart_threshold,
    )
    cache_store = PartitionCacheStore(config.cache_scope(), config.cache_dir, clock=clock)
    policy = RetryPolicy.from_config(config.retry)

    with partition_logging_context(config.table):
        partitions = run_with_retry(
            lambda: discover_partitions(config, engine),
            policy,
            cancel_event=cancel_event,
            sleep=sleep,
            description=f"discover {config.table}",
        )
        if not partitions:
            log.info("No partitions of %s.%s fall in the requested range", config.schema, config.table)
            return []

        table_schema = run_with_retry(
            lambda: inspect_table_schema(config.table, config.schema, engine),
            policy,
            cancel_event=cancel_event,
            sleep=sleep,
            description=f"inspect {config.table}",
        )
        partitions = with_row_counts(
            partitions, config, engine, cache_store, cancel_event=cancel_event, sleep=sleep
        )

        archiver = PartitionArchiver(config, engine, uploader, cache_store, cancel_event, progress, sleep)
        results = archiver.run(partitions, table_schema)

    summary = summarize_results(results)
    log.info(
        "Archive of %s finished: %d succeeded (%d skipped), %d failed, %d cancelled",
        config.table, summary["succeeded"], summary["skipped"], summary["failed"], summary["cancelled"],
    )
    return results


def summarize_results(results: List[ProcessResult]) -> Dict[str, Any]:
    """Aggregate results into plain counts and byte totals."""
    return {
        "total": len(results),
        "succeeded": sum(1 for r in results if r.success),
        "skipped": sum(1 for r in results if r.skipped),
        "uploaded": sum(1 for r in results if r.uploaded),
        "failed": sum(1 for r in results if not r.success and not r.cancelled),
        "cancelled": sum(1 for r in results if r.cancelled),
        "rows": sum(max(r.row_count, 0) for r in results),
        "bytes_written": sum(r.bytes_written for r in results),
        "uncompressed_bytes": sum(r.uncompressed_bytes for r in results),
        "duration": sum(r.duration for r in results),
        "errors": {r.partition.cache_key: str(r.error) for r in results if r.error and not r.cancelled},
    }
