"""CSV serializer.

The header is the schema's column names sorted lexicographically, so it is
stable regardless of the order the catalog or the driver reports columns.
Every row is rendered in header order; a missing key or a NULL becomes an
empty field. Reading converts fields back with ``from_text``, so numbers,
booleans and ISO timestamps regain their types.
"""

import csv
import io
from typing import Any, BinaryIO, Dict, Iterator, List, Mapping, Optional, Sequence

from archiver.errors import FormatError
from archiver.formats.base import RowReader, from_text, to_text
from archiver.models import TableSchema


class CSVWriter:
    def __init__(self, sink: BinaryIO, columns: Optional[List[str]] = None):
        self._sink = sink
        self._columns: Optional[List[str]] = None
        if columns:
            self._write_header(sorted(columns))

    def _write_header(self, columns: List[str]) -> None:
        self._columns = columns
        self._emit([columns])

    def _emit(self, records: List[List[str]]) -> None:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerows(records)
        self._sink.write(buffer.getvalue().encode("utf-8"))

    def write_chunk(self, rows: Sequence[Mapping[str, Any]]) -> None:
        if not rows:
            return
        if self._columns is None:
            # Schema-less use: take the header from the first row seen
            self._write_header(sorted(rows[0].keys()))
        records = []
        for row in rows:
            record = []
            for column in self._columns:
                value = row.get(column)
                record.append("" if value is None else to_text(value))
            records.append(record)
        self._emit(records)

    def close(self) -> None:
        flush = getattr(self._sink, "flush", None)
        if flush is not None:
            flush()


class CSVReader(RowReader):
    """Reads rows keyed by the header line.

    Fields are converted with ``from_text``; fields beyond the header are
    dropped and missing trailing fields are NULL.
    """

    def __init__(self, source: BinaryIO):
        self._text = io.TextIOWrapper(source, encoding="utf-8", newline="")
        self._detached = False
        self.columns: List[str] = []
        super().__init__(self._parse())

    def _parse(self) -> Iterator[Dict[str, Any]]:
        records = csv.reader(self._text)
        try:
            self.columns = next(records)
        except StopIteration:
            return
        except csv.Error as exc:
            raise FormatError(f"unreadable CSV header: {exc}") from exc
        try:
            for record in records:
                yield {
                    column: from_text(record[i]) if i < len(record) else None
                    for i, column in enumerate(self.columns)
                }
        except csv.Error as exc:
            raise FormatError(f"unreadable CSV record on line {records.line_num}: {exc}") from exc

    def close(self) -> None:
        if not self._detached:
            self._detached = True
            self._text.detach()


class CSVFormat:
    name = "csv"
    uses_internal_compression = False

    def new_writer(self, sink: BinaryIO, schema: TableSchema) -> CSVWriter:
        return CSVWriter(sink, schema.column_names)

    def new_reader(self, source: BinaryIO) -> CSVReader:
        return CSVReader(source)

    def extension(self) -> str:
        return ".csv"

    def mime_type(self) -> str:
        return "text/csv"
