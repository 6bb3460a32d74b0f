"""Streaming serializers and their readers.

Modules:
    jsonl_format: JSON Lines.
    csv_format: CSV with a sorted header.
    parquet_format: Parquet via pyarrow, internally compressed.
"""

from archiver.errors import ConfigurationError
from archiver.formats.base import Formatter, StreamReader, StreamWriter
from archiver.formats.csv_format import CSVFormat, CSVReader
from archiver.formats.jsonl_format import JSONLFormat, JSONLReader
from archiver.formats.parquet_format import ParquetFormat, ParquetReader, infer_arrow_schema

FORMATS = ("jsonl", "csv", "parquet")


def get_formatter(name: str, compression: str = "snappy") -> Formatter:
    """Return the serializer registered under *name*.

    Args:
        name: One of ``jsonl``, ``csv`` or ``parquet``.
        compression: Codec for formats that compress internally.

    Raises:
        ConfigurationError: If *name* is not a known format.
    """
    if name == "jsonl":
        return JSONLFormat()
    if name == "csv":
        return CSVFormat()
    if name == "parquet":
        return ParquetFormat(compression=compression)
    raise ConfigurationError(f"unsupported format '{name}', expected one of: {', '.join(FORMATS)}")


__all__ = [
    "FORMATS",
    "CSVFormat",
    "CSVReader",
    "Formatter",
    "JSONLFormat",
    "JSONLReader",
    "ParquetFormat",
    "ParquetReader",
    "StreamReader",
    "StreamWriter",
    "get_formatter",
    "infer_arrow_schema",
]
