"""Capability set shared by every streaming compressor."""

import io
from typing import BinaryIO, Protocol


class CompressorWriter(Protocol):
    """Write side of a streaming compressor. ``close`` never closes the sink."""

    def write(self, data: bytes) -> int:
        ...

    def close(self) -> None:
        ...


class Compressor(Protocol):
    """Streaming codec. Readers returned by ``new_reader`` leave the source open on close."""

    name: str
    mime_type: str

    def new_writer(self, sink: BinaryIO, level: int = 0) -> CompressorWriter:
        ...

    def new_reader(self, source: BinaryIO) -> BinaryIO:
        ...

    def compress(self, data: bytes, level: int = 0) -> bytes:
        ...

    def extension(self) -> str:
        ...

    def default_level(self) -> int:
        ...

    def normalize_level(self, level: int) -> int:
        ...


class LevelRangeMixin:
    """Level handling for compressors with an inclusive level range.

    Subclasses set ``min_level``, ``max_level`` and ``default``.
    """

    min_level = 0
    max_level = 0
    default = 0

    def default_level(self) -> int:
        return self.default

    def normalize_level(self, level: int) -> int:
        """Return *level* if it is in range, otherwise the default level."""
        if level is None or not self.min_level <= level <= self.max_level:
            return self.default
        return level

    def compress(self, data: bytes, level: int = 0) -> bytes:
        """Compress *data* in one call.

        Runs the streaming writer into a memory buffer, so the result is
        byte-for-byte what ``new_writer`` produces for the same input.
        """
        buffer = io.BytesIO()
        writer = self.new_writer(buffer, level)
        writer.write(data)
        writer.close()
        return buffer.getvalue()
