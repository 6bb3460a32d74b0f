"""Streaming compressors.

Modules:
    zstd_compressor: Zstandard (``.zst``).
    lz4_compressor: LZ4 frame (``.lz4``).
    gzip_compressor: Gzip (``.gz``).
    none_compressor: Pass-through.
"""

from archiver.compression.base import Compressor, CompressorWriter
from archiver.compression.gzip_compressor import GzipCompressor
from archiver.compression.lz4_compressor import LZ4Compressor
from archiver.compression.none_compressor import NoneCompressor
from archiver.compression.zstd_compressor import ZstdCompressor
from archiver.errors import ConfigurationError

COMPRESSORS = ("zstd", "lz4", "gzip", "none")


def get_compressor(name: str, workers: int = 1) -> Compressor:
    """Return the compressor registered under *name*.

    Args:
        name: One of ``zstd``, ``lz4``, ``gzip`` or ``none``.
        workers: Encoder threads for compressors that support them.

    Raises:
        ConfigurationError: If *name* is not a known compressor.
    """
    if name == "zstd":
        return ZstdCompressor(threads=workers if workers > 1 else 0)
    if name == "lz4":
        return LZ4Compressor()
    if name == "gzip":
        return GzipCompressor()
    if name == "none":
        return NoneCompressor()
    raise ConfigurationError(
        f"unsupported compression '{name}', expected one of: {', '.join(COMPRESSORS)}"
    )


__all__ = [
    "COMPRESSORS",
    "Compressor",
    "CompressorWriter",
    "GzipCompressor",
    "LZ4Compressor",
    "NoneCompressor",
    "ZstdCompressor",
    "get_compressor",
]
