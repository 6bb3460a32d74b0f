"""Zstandard streaming compressor."""

from typing import BinaryIO

import zstandard

from archiver.compression.base import LevelRangeMixin


class ZstdCompressor(LevelRangeMixin):
    """Zstandard compressor (levels 1-22, default 3).

    Args:
        threads: Worker threads used by the encoder; 0 encodes on the
            calling thread.
    """

    name = "zstd"
    mime_type = "application/zstd"
    min_level = 1
    max_level = 22
    default = 3

    def __init__(self, threads: int = 0):
        self.threads = max(0, threads)

    def new_writer(self, sink: BinaryIO, level: int = 0):
        cctx = zstandard.ZstdCompressor(level=self.normalize_level(level), threads=self.threads)
        return cctx.stream_writer(sink, closefd=False)

    def new_reader(self, source: BinaryIO):
        return zstandard.ZstdDecompressor().stream_reader(source, closefd=False)

    def extension(self) -> str:
        return ".zst"
