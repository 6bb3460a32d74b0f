"""Gzip streaming compressor."""

import gzip
from typing import BinaryIO

from archiver.compression.base import LevelRangeMixin


class GzipCompressor(LevelRangeMixin):
    """Gzip compressor (levels 1-9, default 6).

    The header carries no file name and a zero mtime so output depends only
    on the input bytes.
    """

    name = "gzip"
    mime_type = "application/gzip"
    min_level = 1
    max_level = 9
    default = 6

    def new_writer(self, sink: BinaryIO, level: int = 0) -> gzip.GzipFile:
        # GzipFile.close() leaves a caller-supplied fileobj open
        return gzip.GzipFile(
            filename="",
            mode="wb",
            compresslevel=self.normalize_level(level),
            fileobj=sink,
            mtime=0,
        )

    def new_reader(self, source: BinaryIO) -> gzip.GzipFile:
        return gzip.GzipFile(fileobj=source, mode="rb")

    def extension(self) -> str:
        return ".gz"
