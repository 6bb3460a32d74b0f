"""Parquet serializer built on pyarrow.

Rows are re-buffered into fixed-size row groups, so the file layout depends
only on the row sequence and not on how the extractor chunked it. The arrow
schema comes from the declared catalog types; columns whose declared type is
unknown are typed from the first non-null value of the first row group, and
all-null columns become strings.

Reading streams record batches back as dicts with the arrow types mapped to
Python values, e.g. timestamps to datetimes.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, BinaryIO, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

import pyarrow as pa
import pyarrow.parquet as pq

from archiver.errors import ConfigurationError, FormatError
from archiver.formats.base import RowReader, to_text
from archiver.models import TableSchema

log = logging.getLogger(__name__)

DEFAULT_ROW_GROUP_SIZE = 10_000

CODECS = {
    "zstd": "zstd",
    "gzip": "gzip",
    "lz4": "lz4",
    "snappy": "snappy",
    "none": "none",
}

DECLARED_TYPES: Dict[str, pa.DataType] = {
    "int2": pa.int32(),
    "int4": pa.int32(),
    "smallint": pa.int32(),
    "integer": pa.int32(),
    "int8": pa.int64(),
    "bigint": pa.int64(),
    "float4": pa.float32(),
    "real": pa.float32(),
    "float8": pa.float64(),
    "double precision": pa.float64(),
    "bool": pa.bool_(),
    "boolean": pa.bool_(),
    "timestamp": pa.timestamp("us"),
    "timestamp without time zone": pa.timestamp("us"),
    "timestamptz": pa.timestamp("us", tz="UTC"),
    "timestamp with time zone": pa.timestamp("us", tz="UTC"),
    "date": pa.date32(),
    "varchar": pa.string(),
    "character varying": pa.string(),
    "text": pa.string(),
    "char": pa.string(),
    "bpchar": pa.string(),
    "character": pa.string(),
    "json": pa.string(),
    "jsonb": pa.string(),
    "uuid": pa.string(),
    "numeric": pa.string(),
    "bytea": pa.binary(),
}


def infer_value_type(value: Any) -> pa.DataType:
    """Return the arrow type used for a Python value."""
    if isinstance(value, bool):
        return pa.bool_()
    if isinstance(value, int):
        return pa.int64()
    if isinstance(value, float):
        return pa.float64()
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return pa.timestamp("us", tz="UTC")
        return pa.timestamp("us")
    if isinstance(value, date):
        return pa.date32()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return pa.binary()
    return pa.string()


def _column_order(rows: Iterable[Mapping[str, Any]]) -> List[str]:
    names: Dict[str, None] = {}
    for row in rows:
        for name in row.keys():
            names.setdefault(name, None)
    return list(names)


def infer_arrow_schema(
    rows: Sequence[Mapping[str, Any]],
    columns: Optional[List[str]] = None,
    declared: Optional[Dict[str, pa.DataType]] = None,
) -> pa.Schema:
    """Build an arrow schema from sample rows.

    Args:
        rows: Sample rows; the first non-null value of each column decides
            its type.
        columns: Column order; defaults to first-appearance order in *rows*.
        declared: Types already known for some columns.

    Returns:
        pyarrow Schema with every column nullable.
    """
    declared = declared or {}
    names = columns if columns else _column_order(rows)
    fields = []
    for name in names:
        if name in declared:
            fields.append(pa.field(name, declared[name]))
            continue
        arrow_type = pa.string()
        for row in rows:
            value = row.get(name)
            if value is not None:
                arrow_type = infer_value_type(value)
                break
        fields.append(pa.field(name, arrow_type))
    return pa.schema(fields)


def _converter(arrow_type: pa.DataType) -> Callable[[Any], Any]:
    if pa.types.is_string(arrow_type):
        return lambda v: v if isinstance(v, str) else to_text(v)
    if pa.types.is_binary(arrow_type):
        return lambda v: bytes(v) if isinstance(v, (bytearray, memoryview)) else v
    if pa.types.is_floating(arrow_type):
        return lambda v: float(v) if isinstance(v, Decimal) else v
    return lambda v: v


class _NonClosingSink:
    """File-like view of the sink that pyarrow can close without closing it."""

    def __init__(self, sink: BinaryIO):
        self._sink = sink
        self._position = 0
        self.closed = False

    def write(self, data) -> int:
        data = bytes(data)
        self._sink.write(data)
        self._position += len(data)
        return len(data)

    def tell(self) -> int:
        return self._position

    def flush(self) -> None:
        pass

    def writable(self) -> bool:
        return True

    def close(self) -> None:
        self.closed = True


class ParquetWriter:
    """Streams rows into a Parquet file in fixed-size row groups."""

    def __init__(
        self,
        sink: BinaryIO,
        schema: TableSchema,
        codec: str = "snappy",
        row_group_size: int = DEFAULT_ROW_GROUP_SIZE,
    ):
        self._sink = _NonClosingSink(sink)
        self._codec = codec
        self._row_group_size = row_group_size
        self._columns = schema.column_names
        self._declared = {}
        for column in schema.columns:
            arrow_type = DECLARED_TYPES.get(column.declared_type.lower())
            if arrow_type is not None:
                self._declared[column.name] = arrow_type
        self._arrow_schema: Optional[pa.Schema] = None
        if self._columns and len(self._declared) == len(self._columns):
            self._arrow_schema = pa.schema([pa.field(n, self._declared[n]) for n in self._columns])
        self._writer: Optional[pq.ParquetWriter] = None
        self._pending: List[Mapping[str, Any]] = []
        self._closed = False

    def write_chunk(self, rows: Sequence[Mapping[str, Any]]) -> None:
        for row in rows:
            self._pending.append(dict(row))
            if len(self._pending) >= self._row_group_size:
                self._flush_row_group()

    def _ensure_writer(self) -> None:
        if self._arrow_schema is None:
            self._arrow_schema = infer_arrow_schema(self._pending, self._columns, self._declared)
            log.debug("Inferred parquet schema: %s", self._arrow_schema)
        if self._writer is None:
            self._writer = pq.ParquetWriter(self._sink, self._arrow_schema, compression=self._codec)

    def _flush_row_group(self) -> None:
        self._ensure_writer()
        if not self._pending:
            return
        arrays = []
        for arrow_field in self._arrow_schema:
            convert = _converter(arrow_field.type)
            values = [row.get(arrow_field.name) for row in self._pending]
            arrays.append(pa.array([None if v is None else convert(v) for v in values], type=arrow_field.type))
        table = pa.Table.from_arrays(arrays, schema=self._arrow_schema)
        self._writer.write_table(table, row_group_size=len(self._pending))
        self._pending = []

    def close(self) -> None:
        """Write the remaining rows and the file footer."""
        if self._closed:
            return
        self._closed = True
        self._flush_row_group()
        self._writer.close()


class ParquetReader(RowReader):
    """Reads the rows of a Parquet file one record batch at a time.

    The source must be seekable; pyarrow reads the footer first.
    """

    def __init__(self, source: BinaryIO, batch_size: int = DEFAULT_ROW_GROUP_SIZE):
        try:
            self._file = pq.ParquetFile(source)
        except (pa.ArrowInvalid, OSError) as exc:
            raise FormatError(f"not a readable parquet file: {exc}") from exc
        self.schema = self._file.schema_arrow
        super().__init__(self._batches(batch_size))

    def _batches(self, batch_size: int) -> Iterator[Dict[str, Any]]:
        for batch in self._file.iter_batches(batch_size=batch_size):
            yield from batch.to_pylist()

    @property
    def row_count(self) -> int:
        return self._file.metadata.num_rows

    def close(self) -> None:
        self._file.close()


class ParquetFormat:
    """Parquet format; compression is applied inside the file by pyarrow.

    Args:
        compression: Codec name (``zstd``, ``gzip``, ``lz4``, ``snappy``,
            ``none``).
        row_group_size: Rows per row group.
    """

    name = "parquet"
    uses_internal_compression = True

    def __init__(self, compression: str = "snappy", row_group_size: int = DEFAULT_ROW_GROUP_SIZE):
        if compression not in CODECS:
            raise ConfigurationError(
                f"unsupported parquet compression '{compression}', expected one of: {', '.join(CODECS)}"
            )
        self.codec = CODECS[compression]
        self.row_group_size = row_group_size

    def new_writer(self, sink: BinaryIO, schema: TableSchema) -> ParquetWriter:
        return ParquetWriter(sink, schema, codec=self.codec, row_group_size=self.row_group_size)

    def new_reader(self, source: BinaryIO) -> ParquetReader:
        return ParquetReader(source, batch_size=self.row_group_size)

    def extension(self) -> str:
        return ".parquet"

    def mime_type(self) -> str:
        return "application/vnd.apache.parquet"
