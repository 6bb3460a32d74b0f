"""Data types shared across the archiver packages."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List


@dataclass(frozen=True)
class PartitionInfo:
    """One unit of archive work: a leaf partition or a time window of a table.

    Attributes:
        table_name: Identity of the partition (leaf name or base table).
        coverage_start: Inclusive start of the covered time range (naive UTC).
        coverage_end: Exclusive end of the covered time range (naive UTC).
        base_table: Table name used in object keys; defaults to ``table_name``.
        source_table: Relation actually queried; defaults to ``table_name``.
        date_column: When set, rows are filtered to the coverage range.
        row_count: Estimated row count, -1 when unknown.
    """

    table_name: str
    coverage_start: datetime
    coverage_end: datetime
    base_table: str = ""
    source_table: str = ""
    date_column: str = ""
    row_count: int = -1

    def __post_init__(self):
        if not self.base_table:
            object.__setattr__(self, "base_table", self.table_name)
        if not self.source_table:
            object.__setattr__(self, "source_table", self.table_name)

    @property
    def cache_key(self) -> str:
        if self.date_column:
            return f"{self.table_name}@{self.coverage_start:%Y-%m-%dT%H}"
        return self.table_name

    def is_current(self, now: datetime) -> bool:
        """Return True if the window is still open at *now*.

        A window is current while ``coverage_end > now``; rows may still be
        arriving, so its cached counts and metadata are never trusted.
        """
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc).replace(tzinfo=None)
        return self.coverage_end > now

    def __str__(self):
        return self.cache_key


@dataclass(frozen=True)
class ColumnSchema:
    name: str
    declared_type: str
    data_type: str = ""


@dataclass
class TableSchema:
    """Ordered column list of a relation."""

    table: str
    columns: List[ColumnSchema] = field(default_factory=list)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    @property
    def declared_types(self) -> Dict[str, str]:
        return {c.name: c.declared_type for c in self.columns}


@dataclass
class ProgressEvent:
    """Progress notification sent at chunk and partition boundaries.

    Attributes:
        partition: Cache key of the partition.
        stage: Pipeline stage (``extract``, ``upload``, ``done``...).
        rows: Rows serialized so far.
        total_rows: Expected rows, -1 when unknown.
        bytes_written: Uncompressed bytes serialized so far.
    """

    partition: str
    stage: str
    rows: int = 0
    total_rows: int = -1
    bytes_written: int = 0
