"""Persistent per-partition cache that drives skip and resume decisions.

One JSON document per (command, table, destination path) holds, for every
partition, a row-count tier (expires after 24 hours) and a file-metadata
tier (kept until the object key changes or the partition is still open).
Documents are replaced atomically, so a crash leaves either the previous
or the new version on disk.
"""

import hashlib
import json
import logging
import os
import tempfile
import threading
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

log = logging.getLogger(__name__)

CACHE_VERSION = 1
ROW_COUNT_TTL = timedelta(hours=24)
ERROR_TTL = timedelta(days=7)

_TIMESTAMP_FIELDS = ("row_count_fetched_at", "uploaded_at", "last_error_at", "file_time")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheScope:
    """Identifies one cache document."""

    command: str
    table: str
    output_path: str

    @property
    def path_hash(self) -> str:
        return hashlib.sha1(self.output_path.encode("utf-8")).hexdigest()[:16]

    @property
    def filename(self) -> str:
        return f"{self.command}_{self.table}_{self.path_hash}_metadata.json"


@dataclass
class CacheEntry:
    row_count: int = -1
    row_count_fetched_at: Optional[datetime] = None
    uncompressed_size: int = 0
    compressed_size: int = 0
    content_hash: str = ""
    multipart_etag: str = ""
    object_key: str = ""
    uploaded: bool = False
    uploaded_at: Optional[datetime] = None
    last_error: str = ""
    last_error_at: Optional[datetime] = None
    file_time: Optional[datetime] = None

    @property
    def has_file_metadata(self) -> bool:
        return bool(self.content_hash and self.object_key)

    @property
    def is_empty(self) -> bool:
        return self.row_count < 0 and not self.has_file_metadata and not self.last_error

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in _TIMESTAMP_FIELDS:
            if data[name] is not None:
                data[name] = data[name].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for name in _TIMESTAMP_FIELDS:
            if values.get(name):
                values[name] = datetime.fromisoformat(values[name])
            else:
                values[name] = None
        return cls(**values)


class PartitionCacheStore:
    """Skip-decision store shared by every worker of one archive run.

    Args:
        scope: Document identity.
        cache_dir: Directory holding cache documents.
        clock: Returns the current time as an aware UTC datetime.
    """

    def __init__(self, scope: CacheScope, cache_dir: str, clock: Callable[[], datetime] = utc_now):
        self.scope = scope
        self.cache_dir = Path(cache_dir).expanduser()
        self.path = self.cache_dir / scope.filename
        self.clock = clock
        self._lock = threading.RLock()
        self._key_locks: Dict[str, Any] = {}
        self._entries: Dict[str, CacheEntry] = self._load()

    def _load(self) -> Dict[str, CacheEntry]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r") as f:
                document = json.load(f)
            if document.get("version") != CACHE_VERSION:
                log.warning("Ignoring cache %s with unsupported version %s", self.path, document.get("version"))
                return {}
            entries = {key: CacheEntry.from_dict(value) for key, value in document.get("entries", {}).items()}
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            log.warning("Cache file %s is unreadable, starting with an empty cache: %s", self.path, exc)
            return {}
        log.debug("Loaded %d cache entries from %s", len(entries), self.path)
        return entries

    def _save(self) -> None:
        """Write the document atomically with owner-only permissions."""
        document = {
            "version": CACHE_VERSION,
            "command": self.scope.command,
            "table": self.scope.table,
            "output_path": self.scope.output_path,
            "updated_at": self.clock().isoformat(),
            "entries": {key: entry.to_dict() for key, entry in sorted(self._entries.items())},
        }
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".tmp_", suffix=".json", dir=str(self.cache_dir))
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(document, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def key_lock(self, key: str):
        """Return the lock serializing work on one partition key."""
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.RLock()
            return lock

    def get(self, partition) -> Optional[CacheEntry]:
        """Return a copy of the entry for *partition*, if any."""
        with self._lock:
            entry = self._entries.get(partition.cache_key)
            return CacheEntry.from_dict(entry.to_dict()) if entry is not None else None

    def _update(self, key: str, mutate: Callable[[CacheEntry], None]) -> None:
        with self.key_lock(key):
            with self._lock:
                entry = self._entries.setdefault(key, CacheEntry())
                mutate(entry)
                self._save()

    def get_row_count(self, partition) -> Optional[int]:
        """Return the cached row count, or None if absent, stale or the window is open."""
        if partition.is_current(self.clock()):
            return None
        entry = self.get(partition)
        if entry is None or entry.row_count < 0 or entry.row_count_fetched_at is None:
            return None
        if self.clock() - entry.row_count_fetched_at > ROW_COUNT_TTL:
            return None
        return entry.row_count

    def set_row_count(self, partition, row_count: int) -> None:
        now = self.clock()

        def mutate(entry: CacheEntry):
            entry.row_count = row_count
            entry.row_count_fetched_at = now

        self._update(partition.cache_key, mutate)

    def set_row_counts(self, counts: Iterable[Tuple[Any, int]]) -> int:
        """Store many row counts with a single write of the document.

        Args:
            counts: ``(partition, row_count)`` pairs.

        Returns:
            Number of counts stored.
        """
        now = self.clock()
        stored = 0
        with self._lock:
            for partition, row_count in counts:
                entry = self._entries.setdefault(partition.cache_key, CacheEntry())
                entry.row_count = row_count
                entry.row_count_fetched_at = now
                stored += 1
            if stored:
                self._save()
        return stored

    def get_file_metadata(self, partition, object_key: str) -> Optional[CacheEntry]:
        """Return cached file metadata if it is still valid for *object_key*.

        Metadata of an open window, or recorded for a different object key,
        is invalidated and None is returned.
        """
        entry = self.get(partition)
        if entry is None or not entry.has_file_metadata:
            return None
        if partition.is_current(self.clock()):
            log.debug("Ignoring cached metadata for open window %s", partition.cache_key)
            self.invalidate(partition)
            return None
        if entry.object_key != object_key:
            log.info("Object key changed for %s (%s -> %s), invalidating cache",
                     partition.cache_key, entry.object_key, object_key)
            self.invalidate(partition)
            return None
        return entry

    def record_success(
        self,
        partition,
        object_key: str,
        uncompressed_size: int,
        compressed_size: int,
        content_hash: str,
        multipart_etag: str,
        uploaded: bool = True,
        row_count: Optional[int] = None,
    ) -> None:
        """Persist file metadata after a partition's terminal successful outcome."""
        now = self.clock()

        def mutate(entry: CacheEntry):
            entry.object_key = object_key
            entry.uncompressed_size = uncompressed_size
            entry.compressed_size = compressed_size
            entry.content_hash = content_hash
            entry.multipart_etag = multipart_etag
            entry.file_time = now
            entry.uploaded = uploaded
            entry.uploaded_at = now if uploaded else None
            entry.last_error = ""
            entry.last_error_at = None
            if row_count is not None and row_count >= 0:
                entry.row_count = row_count
                entry.row_count_fetched_at = now

        self._update(partition.cache_key, mutate)

    def record_error(self, partition, message: str) -> None:
        now = self.clock()

        def mutate(entry: CacheEntry):
            entry.last_error = message
            entry.last_error_at = now

        self._update(partition.cache_key, mutate)

    def invalidate(self, partition) -> None:
        """Drop the file-metadata tier of *partition*, keeping its row count.

        The document is only rewritten when there was metadata to drop.
        """
        key = partition.cache_key
        with self.key_lock(key):
            with self._lock:
                entry = self._entries.get(key)
                if entry is None or not (entry.has_file_metadata or entry.uploaded):
                    return
                entry.uncompressed_size = 0
                entry.compressed_size = 0
                entry.content_hash = ""
                entry.multipart_etag = ""
                entry.object_key = ""
                entry.uploaded = False
                entry.uploaded_at = None
                entry.file_time = None
                self._save()

    def clean_expired(self) -> int:
        """Drop expired row counts and errors, then entries left empty.

        Returns:
            Number of entries removed.
        """
        now = self.clock()
        with self._lock:
            for entry in self._entries.values():
                if entry.row_count_fetched_at is not None and now - entry.row_count_fetched_at > ROW_COUNT_TTL:
                    entry.row_count = -1
                    entry.row_count_fetched_at = None
                if entry.last_error_at is not None and now - entry.last_error_at > ERROR_TTL:
                    entry.last_error = ""
                    entry.last_error_at = None
            empty = [key for key, entry in self._entries.items() if entry.is_empty]
            for key in empty:
                del self._entries[key]
            self._save()
        if empty:
            log.info("Removed %d expired cache entries from %s", len(empty), self.path)
        return len(empty)
