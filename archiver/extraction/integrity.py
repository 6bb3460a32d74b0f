"""Incremental integrity hashing and verification.

Bytes written to the staged temp file pass through a ``FanOutWriter`` that
also feeds a ``ContentHasher``, so the whole-object MD5 and the per-part
MD5s needed for the multipart ETag are ready when the file is closed,
without a second read pass.
"""

import hashlib
import logging
from typing import BinaryIO, List, Optional

from archiver.errors import IntegrityError

log = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024
DEFAULT_PART_SIZE = 5 * 1024 * 1024


class FanOutWriter:
    """Writes every buffer to each of *sinks*, in order."""

    def __init__(self, *sinks):
        self.sinks = sinks

    def write(self, data) -> int:
        for sink in self.sinks:
            sink.write(data)
        return len(data)

    def flush(self) -> None:
        for sink in self.sinks:
            flush = getattr(sink, "flush", None)
            if flush is not None:
                flush()


class CountingWriter:
    """Forwards writes to an optional sink and counts the bytes."""

    def __init__(self, sink: Optional[BinaryIO] = None):
        self.sink = sink
        self.count = 0

    def write(self, data) -> int:
        self.count += len(data)
        if self.sink is not None:
            self.sink.write(data)
        return len(data)

    def flush(self) -> None:
        if self.sink is not None and hasattr(self.sink, "flush"):
            self.sink.flush()


class ContentHasher:
    """Running MD5 of a byte stream plus one MD5 per ``part_size`` bytes."""

    def __init__(self, part_size: int = DEFAULT_PART_SIZE):
        self.part_size = part_size
        self.size = 0
        self._whole = hashlib.md5()
        self._part = None
        self._part_filled = 0
        self._part_digests: List[bytes] = []

    def write(self, data) -> int:
        view = memoryview(data)
        self._whole.update(view)
        self.size += len(view)
        offset = 0
        while offset < len(view):
            if self._part is None:
                self._part = hashlib.md5()
                self._part_filled = 0
            take = min(self.part_size - self._part_filled, len(view) - offset)
            self._part.update(view[offset:offset + take])
            self._part_filled += take
            offset += take
            if self._part_filled == self.part_size:
                self._part_digests.append(self._part.digest())
                self._part = None
        return len(view)

    def hexdigest(self) -> str:
        return self._whole.hexdigest()

    def part_digests(self) -> List[bytes]:
        digests = list(self._part_digests)
        if self._part is not None:
            digests.append(self._part.digest())
        return digests

    def multipart_etag(self) -> str:
        return multipart_etag(self.part_digests())


def multipart_etag(part_digests: List[bytes]) -> str:
    """Return the S3 multipart ETag for the given raw part MD5 digests.

    The ETag is the hex MD5 of the concatenated raw digests, a dash, and the
    part count.
    """
    combined = hashlib.md5(b"".join(part_digests)).hexdigest()
    return f"{combined}-{len(part_digests)}"


def compute_file_checksum(file_path: str, algorithm: str = "md5") -> str:
    """Compute a hex-digest checksum for a file.

    Args:
        file_path: Path to the file.
        algorithm: Hash algorithm (``md5`` or ``sha256``).

    Returns:
        Hex-encoded checksum string.
    """
    h = hashlib.new(algorithm)
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def compute_multipart_etag_for_file(file_path: str, part_size: int = DEFAULT_PART_SIZE) -> str:
    """Compute the multipart ETag a file would get when uploaded in *part_size* parts."""
    hasher = ContentHasher(part_size)
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            hasher.write(chunk)
    return hasher.multipart_etag()


def expected_etag(size: int, content_hash: str, multipart: str, threshold: int = MULTIPART_THRESHOLD) -> str:
    """Return the ETag the store reports for an object uploaded by this archiver."""
    return multipart if size >= threshold else content_hash


def matches_destination(size: int, etag: str, object_info) -> bool:
    """Return True if *object_info* reports the given size and ETag."""
    if object_info is None:
        return False
    return object_info.size == size and object_info.etag == etag.lower()


def verify_upload(key: str, size: int, etag: str, object_info) -> None:
    """Check that the uploaded object matches the staged artifact.

    Raises:
        IntegrityError: On a missing object or a size/ETag mismatch.
    """
    if object_info is None:
        raise IntegrityError(f"uploaded object {key} not found", stage="verify")
    if object_info.size != size:
        raise IntegrityError(
            f"size mismatch for {key}: expected {size} bytes, destination reports {object_info.size}",
            stage="verify",
        )
    if object_info.etag != etag.lower():
        raise IntegrityError(
            f"checksum mismatch for {key}: expected {etag}, destination reports {object_info.etag}",
            stage="verify",
        )
    log.debug("Verified %s (%d bytes, etag %s)", key, size, etag)
