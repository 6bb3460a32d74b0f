"""JSON Lines serializer."""

import io
import json
from typing import Any, BinaryIO, Dict, Iterator, Mapping, Sequence

from archiver.errors import FormatError
from archiver.formats.base import RowReader, json_default
from archiver.models import TableSchema


class JSONLWriter:
    """Writes one compact JSON object per row, newline terminated."""

    def __init__(self, sink: BinaryIO):
        self._sink = sink

    def write_chunk(self, rows: Sequence[Mapping[str, Any]]) -> None:
        lines = [
            json.dumps(dict(row), separators=(",", ":"), ensure_ascii=False, default=json_default)
            for row in rows
        ]
        if lines:
            self._sink.write(("\n".join(lines) + "\n").encode("utf-8"))

    def close(self) -> None:
        pass


class JSONLReader(RowReader):
    """Reads one JSON object per line; blank lines are skipped.

    Values come back as JSON decoded them, so timestamps and decimals are
    strings.
    """

    def __init__(self, source: BinaryIO):
        self._text = io.TextIOWrapper(source, encoding="utf-8")
        self._detached = False
        super().__init__(self._parse())

    def _parse(self) -> Iterator[Dict[str, Any]]:
        for number, line in enumerate(self._text, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except ValueError as exc:
                raise FormatError(f"line {number} is not valid JSON: {exc}") from exc
            if not isinstance(row, dict):
                raise FormatError(f"line {number} is not a JSON object")
            yield row

    def close(self) -> None:
        # Leaves the source open for the caller
        if not self._detached:
            self._detached = True
            self._text.detach()


class JSONLFormat:
    name = "jsonl"
    uses_internal_compression = False

    def new_writer(self, sink: BinaryIO, schema: TableSchema) -> JSONLWriter:
        return JSONLWriter(sink)

    def new_reader(self, source: BinaryIO) -> JSONLReader:
        return JSONLReader(source)

    def extension(self) -> str:
        return ".jsonl"

    def mime_type(self) -> str:
        return "application/x-ndjson"
