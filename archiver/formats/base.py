"""Capability set shared by every streaming serializer."""

import json
import re
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from itertools import islice
from typing import Any, BinaryIO, Dict, Iterator, List, Mapping, Protocol, Sequence
from uuid import UUID

from archiver.models import TableSchema

_INTEGER = re.compile(r"^-?\d+$")
_FLOAT = re.compile(r"^-?\d+\.\d+([eE][-+]?\d+)?$")
_TIMESTAMP = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(:\d{2}(\.\d{1,6})?)?([+-]\d{2}:\d{2}|Z)?$")
_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class StreamWriter(Protocol):
    """Write side of a serializer bound to one output stream."""

    def write_chunk(self, rows: Sequence[Mapping[str, Any]]) -> None:
        ...

    def close(self) -> None:
        ...


class StreamReader(Protocol):
    """Read side of a serializer bound to one input stream.

    ``read_chunk`` returns an empty list once the stream is exhausted.
    ``close`` never closes the source.
    """

    def read_chunk(self, chunk_size: int) -> List[Dict[str, Any]]:
        ...

    def close(self) -> None:
        ...


class Formatter(Protocol):
    name: str
    uses_internal_compression: bool

    def new_writer(self, sink: BinaryIO, schema: TableSchema) -> StreamWriter:
        ...

    def new_reader(self, source: BinaryIO) -> StreamReader:
        ...

    def extension(self) -> str:
        ...

    def mime_type(self) -> str:
        ...


class RowReader:
    """Hands out the rows of *rows* in chunks and as an iterator."""

    def __init__(self, rows: Iterator[Dict[str, Any]]):
        self._rows = rows

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return self._rows

    def read_chunk(self, chunk_size: int) -> List[Dict[str, Any]]:
        return list(islice(self._rows, chunk_size))

    def close(self) -> None:
        pass


def to_text(value: Any) -> str:
    """Render a database value as text for row-oriented formats."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), default=json_default)
    return str(value)


def from_text(text: str) -> Any:
    """Best-effort inverse of ``to_text`` for row-oriented formats.

    Empty text is NULL. Integers, decimals, ``true``/``false``, ISO dates and
    ISO timestamps are converted; anything else stays a string.
    """
    if text == "":
        return None
    if _INTEGER.match(text):
        return int(text)
    if _FLOAT.match(text):
        return float(text)
    if text in ("true", "false"):
        return text == "true"
    try:
        if _TIMESTAMP.match(text):
            return datetime.fromisoformat(text[:-1] + "+00:00" if text.endswith("Z") else text)
        if _DATE.match(text):
            return date.fromisoformat(text)
    except ValueError:
        return text
    return text


def json_default(value: Any) -> Any:
    """``json.dumps`` fallback for values psycopg2 returns that JSON lacks."""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (Decimal, UUID, timedelta)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)
