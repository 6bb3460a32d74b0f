"""LZ4 frame streaming compressor."""

from typing import BinaryIO

import lz4.frame

from archiver.compression.base import LevelRangeMixin


class LZ4FrameWriter:
    """Writes a single LZ4 frame to *sink*; the frame is ended on close."""

    def __init__(self, sink: BinaryIO, level: int):
        self._sink = sink
        self._compressor = lz4.frame.LZ4FrameCompressor(compression_level=level, auto_flush=False)
        self._sink.write(self._compressor.begin())
        self._closed = False

    def write(self, data: bytes) -> int:
        out = self._compressor.compress(data)
        if out:
            self._sink.write(out)
        return len(data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._sink.write(self._compressor.flush())


class LZ4Compressor(LevelRangeMixin):
    """LZ4 frame compressor (levels 1-9, default 1)."""

    name = "lz4"
    mime_type = "application/x-lz4"
    min_level = 1
    max_level = 9
    default = 1

    def new_writer(self, sink: BinaryIO, level: int = 0) -> LZ4FrameWriter:
        return LZ4FrameWriter(sink, self.normalize_level(level))

    def new_reader(self, source: BinaryIO) -> lz4.frame.LZ4FrameFile:
        return lz4.frame.LZ4FrameFile(source, mode="rb")

    def extension(self) -> str:
        return ".lz4"
