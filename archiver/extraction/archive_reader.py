"""Read archived objects back into rows.

The format and compression are taken from the object's extensions unless
given explicitly, so a downloaded ``events-2024-01-15.jsonl.zst`` opens
without any configuration.

Usage:
    with open_archive("events-2024-01-15.jsonl.zst") as reader:
        for row in reader:
            ...

    for chunk in read_archive("events-2024-01.parquet", chunk_size=5000):
        load(chunk)
"""

import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from archiver.compression import get_compressor
from archiver.errors import ConfigurationError
from archiver.formats import get_formatter
from archiver.formats.base import StreamReader

log = logging.getLogger(__name__)

FORMAT_EXTENSIONS = {
    ".jsonl": "jsonl",
    ".csv": "csv",
    ".parquet": "parquet",
}

COMPRESSION_EXTENSIONS = {
    ".zst": "zstd",
    ".lz4": "lz4",
    ".gz": "gzip",
}


def detect_encoding(name: str) -> Tuple[str, str]:
    """Return ``(format, compression)`` named by the extensions of *name*.

    Raises:
        ConfigurationError: If the format extension is not recognized.
    """
    stem = os.path.basename(name)
    compression = "none"
    for extension, codec in COMPRESSION_EXTENSIONS.items():
        if stem.endswith(extension):
            compression = codec
            stem = stem[:-len(extension)]
            break
    for extension, output_format in FORMAT_EXTENSIONS.items():
        if stem.endswith(extension):
            return output_format, compression
    raise ConfigurationError(f"cannot tell the format of '{name}' from its extension")


@contextmanager
def open_archive(
    path: str,
    output_format: Optional[str] = None,
    compression: Optional[str] = None,
) -> Iterator[StreamReader]:
    """Open an archived file for reading.

    Args:
        path: Local path of the archived object.
        output_format: ``jsonl``, ``csv`` or ``parquet``; detected when None.
        compression: ``zstd``, ``lz4``, ``gzip`` or ``none``; detected when
            None. Ignored for Parquet, which compresses internally.

    Yields:
        A StreamReader over the decoded rows.
    """
    if output_format is None or compression is None:
        detected_format, detected_compression = detect_encoding(path)
        output_format = output_format or detected_format
        compression = compression or detected_compression

    formatter = get_formatter(output_format)
    compressor = get_compressor("none" if formatter.uses_internal_compression else compression)
    log.debug("Opening %s as %s/%s", path, formatter.name, compressor.name)

    with open(path, "rb") as source:
        stream = compressor.new_reader(source)
        try:
            reader = formatter.new_reader(stream)
            try:
                yield reader
            finally:
                reader.close()
        finally:
            if stream is not source:
                stream.close()


def read_archive(
    path: str,
    output_format: Optional[str] = None,
    compression: Optional[str] = None,
    chunk_size: int = 10_000,
) -> Iterator[List[Dict[str, Any]]]:
    """Yield the rows of an archived file in chunks of at most *chunk_size*."""
    with open_archive(path, output_format, compression) as reader:
        while True:
            chunk = reader.read_chunk(chunk_size)
            if not chunk:
                return
            yield chunk
