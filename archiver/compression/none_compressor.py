"""Pass-through compressor."""

from typing import BinaryIO

from archiver.compression.base import LevelRangeMixin


class PassThroughWriter:
    """Forwards bytes to the sink unchanged."""

    def __init__(self, sink: BinaryIO):
        self._sink = sink

    def write(self, data: bytes) -> int:
        self._sink.write(data)
        return len(data)

    def close(self) -> None:
        pass


class NoneCompressor(LevelRangeMixin):
    name = "none"
    mime_type = "application/octet-stream"

    def new_writer(self, sink: BinaryIO, level: int = 0) -> PassThroughWriter:
        return PassThroughWriter(sink)

    def new_reader(self, source: BinaryIO) -> BinaryIO:
        return source

    def extension(self) -> str:
        return ""
