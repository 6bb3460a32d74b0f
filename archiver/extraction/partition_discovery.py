"""Partition discovery for a base table.

Hierarchical tables are walked through ``pg_inherits`` down to their leaf
partitions, whose coverage is parsed from the name suffix. Tables with no
partitions are archived as synthesized time windows over a date column.
"""

import logging
import re
import threading
from collections import defaultdict, deque
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.engine import Engine

from archiver.errors import CancellationError, ConfigurationError
from archiver.extraction import path_template
from archiver.extraction.retry import RetryPolicy, run_with_retry
from archiver.models import PartitionInfo
from archiver.utils.postgres_client import fetch_dataframe, fetch_scalar

log = logging.getLogger(__name__)

PARTITION_EDGES_SQL = """
    WITH RECURSIVE tree AS (
        SELECT inh.inhparent AS parent_oid, inh.inhrelid AS child_oid
        FROM pg_inherits inh
        JOIN pg_class p ON p.oid = inh.inhparent
        JOIN pg_namespace n ON n.oid = p.relnamespace
        WHERE n.nspname = :schema AND p.relname = :table_name
        UNION ALL
        SELECT inh.inhparent, inh.inhrelid
        FROM pg_inherits inh
        JOIN tree ON inh.inhparent = tree.child_oid
    )
    SELECT pc.relname AS parent, cc.relname AS child
    FROM tree
    JOIN pg_class pc ON pc.oid = tree.parent_oid
    JOIN pg_class cc ON cc.oid = tree.child_oid
"""

PLAIN_TABLES_SQL = """
    SELECT c.relname AS table_name
    FROM pg_class c
    JOIN pg_namespace n ON n.oid = c.relnamespace
    WHERE n.nspname = :schema
      AND c.relkind = 'r'
      AND NOT c.relispartition
      AND left(c.relname, :prefix_length) = :prefix
    ORDER BY c.relname
"""

_DAILY_PATTERNS = (
    re.compile(r"^p?(\d{4})(\d{2})(\d{2})$"),
    re.compile(r"^(\d{4})_(\d{2})_(\d{2})$"),
)
_MONTHLY_PATTERNS = (
    re.compile(r"^(\d{4})_(\d{2})$"),
    re.compile(r"^(\d{4})(\d{2})$"),
)
_YEARLY_PATTERN = re.compile(r"^(\d{4})$")
_TRAILING_SUFFIX = re.compile(r"_(p?\d{8}|\d{4}_\d{2}_\d{2}|\d{4}_\d{2}|\d{6}|\d{4})$")


def parse_partition_coverage(base_table: str, name: str) -> Optional[Tuple[datetime, datetime]]:
    """Derive the ``[start, end)`` coverage of a partition from its name.

    Recognized suffixes after the base name: ``YYYYMMDD``, ``pYYYYMMDD`` and
    ``YYYY_MM_DD`` (one day), ``YYYY_MM`` and ``YYYYMM`` (one month), and
    ``YYYY`` (one year). When the text after the base name is not a date, as
    in ``events_archive_2024_01``, the trailing date suffix is used instead.

    Returns:
        The coverage range, or None if the suffix is not a recognized date.
    """
    candidates = []
    if name.startswith(base_table) and len(name) > len(base_table):
        candidates.append(name[len(base_table):].lstrip("_"))
    match = _TRAILING_SUFFIX.search(name)
    if match:
        candidates.append(match.group(1))

    for suffix in candidates:
        coverage = _parse_suffix(suffix)
        if coverage is not None:
            return coverage
    return None


def _parse_suffix(suffix: str) -> Optional[Tuple[datetime, datetime]]:
    try:
        for pattern in _DAILY_PATTERNS:
            match = pattern.match(suffix)
            if match:
                start = datetime(int(match.group(1)), int(match.group(2)), int(match.group(3)))
                return start, start + timedelta(days=1)
        for pattern in _MONTHLY_PATTERNS:
            match = pattern.match(suffix)
            if match:
                start = datetime(int(match.group(1)), int(match.group(2)), 1)
                return start, path_template.next_boundary(start, path_template.MONTHLY)
        match = _YEARLY_PATTERN.match(suffix)
        if match:
            start = datetime(int(match.group(1)), 1, 1)
            return start, start.replace(year=start.year + 1)
    except ValueError:
        # Digits that do not form a calendar date, e.g. month 13
        return None
    return None


def find_leaf_partitions(root: str, edges: Iterable[Tuple[str, str]]) -> List[str]:
    """Return every descendant of *root* that has no children of its own.

    Args:
        root: Base table name.
        edges: ``(parent, child)`` pairs of the inheritance tree.

    Returns:
        Sorted leaf names; empty when *root* has no children.
    """
    children: Dict[str, List[str]] = defaultdict(list)
    for parent, child in edges:
        children[parent].append(child)

    leaves = []
    seen = {root}
    queue = deque(children.get(root, []))
    while queue:
        node = queue.popleft()
        if node in seen:
            continue
        seen.add(node)
        if children.get(node):
            queue.extend(children[node])
        else:
            leaves.append(node)
    return sorted(leaves)


def _date_range(config) -> Tuple[Optional[datetime], Optional[datetime]]:
    start = datetime.combine(config.start, datetime.min.time()) if config.start else None
    end = datetime.combine(config.end, datetime.min.time()) + timedelta(days=1) if config.end else None
    return start, end


def _intersects(start: datetime, end: datetime, range_start: Optional[datetime], range_end: Optional[datetime]) -> bool:
    if range_start is not None and end <= range_start:
        return False
    if range_end is not None and start >= range_end:
        return False
    return True


def synthesize_windows(config) -> List[PartitionInfo]:
    """Split ``[start_date, end_date + 1 day)`` into output-duration windows.

    Raises:
        ConfigurationError: If the date column or either date is missing.
    """
    if not config.date_column:
        raise ConfigurationError(
            f"table '{config.table}' has no partitions; a date column is required to archive it"
        )
    range_start, range_end = _date_range(config)
    if range_start is None or range_end is None:
        raise ConfigurationError(
            f"table '{config.table}' has no partitions; start and end dates are required to archive it"
        )
    return [
        PartitionInfo(
            table_name=config.table,
            coverage_start=start,
            coverage_end=end,
            date_column=config.date_column,
        )
        for start, end in path_template.split_range(range_start, range_end, config.output_duration)
    ]


def _expand_leaf(config, name: str, start: datetime, end: datetime) -> List[PartitionInfo]:
    """Return the work units for one leaf, split into windows when needed."""
    range_start, range_end = _date_range(config)
    if config.date_column and path_template.is_finer(config.output_duration, start, end):
        return [
            PartitionInfo(
                table_name=name,
                coverage_start=window_start,
                coverage_end=window_end,
                base_table=config.table,
                source_table=name,
                date_column=config.date_column,
            )
            for window_start, window_end in path_template.split_range(start, end, config.output_duration)
            if _intersects(window_start, window_end, range_start, range_end)
        ]
    return [PartitionInfo(table_name=name, coverage_start=start, coverage_end=end, base_table=config.table)]


def discover_partitions(config, engine: Engine) -> List[PartitionInfo]:
    """Discover the units of work for ``config.table``.

    Args:
        config: ArchiverConfig naming the base table, date range and
            output duration.
        engine: SQLAlchemy engine for the source database.

    Returns:
        Partitions ordered by coverage start, then name.

    Raises:
        ConfigurationError: If the table has no partitions and cannot be
            windowed.
    """
    range_start, range_end = _date_range(config)
    params = {"schema": config.schema, "table_name": config.table}
    edges_df = fetch_dataframe(PARTITION_EDGES_SQL, engine, params=params)
    edges = list(zip(edges_df["parent"], edges_df["child"])) if not edges_df.empty else []
    names = find_leaf_partitions(config.table, edges)

    if config.include_non_partition_tables:
        prefix = f"{config.table}_"
        plain_df = fetch_dataframe(
            PLAIN_TABLES_SQL,
            engine,
            params={"schema": config.schema, "prefix": prefix, "prefix_length": len(prefix)},
        )
        if not plain_df.empty:
            extra = [n for n in plain_df["table_name"] if n not in names]
            log.info("Including %d non-partition tables matching %s*", len(extra), prefix)
            names = sorted(set(names) | set(extra))

    if not names:
        log.info("Table %s.%s has no partitions, synthesizing %s windows", config.schema, config.table,
                 config.output_duration)
        return synthesize_windows(config)

    partitions: List[PartitionInfo] = []
    for name in names:
        coverage = parse_partition_coverage(config.table, name)
        if coverage is None:
            log.warning("Skipping partition %s: name has no recognizable date suffix", name)
            continue
        start, end = coverage
        if not _intersects(start, end, range_start, range_end):
            continue
        partitions.extend(_expand_leaf(config, name, start, end))

    partitions.sort(key=lambda p: (p.coverage_start, p.table_name))
    log.info("Discovered %d partitions for %s.%s (%d leaves)", len(partitions), config.schema, config.table,
             len(names))
    return partitions


def count_rows(partition: PartitionInfo, schema: str, engine: Engine) -> int:
    """Return ``COUNT(*)`` of the rows *partition* covers."""
    sql = f'SELECT COUNT(*) FROM "{schema}"."{partition.source_table}"'
    params = {}
    if partition.date_column:
        sql += f' WHERE "{partition.date_column}" >= :start AND "{partition.date_column}" < :end'
        params = {"start": partition.coverage_start, "end": partition.coverage_end}
    return int(fetch_scalar(sql, engine, params=params) or 0)


def with_row_counts(
    partitions: List[PartitionInfo],
    config,
    engine: Engine,
    cache_store=None,
    cancel_event: Optional[threading.Event] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> List[PartitionInfo]:
    """Attach row counts to *partitions*, using the cache's row-count tier.

    Each count is retried on its own; a partition whose count still fails
    keeps ``row_count=-1`` and is archived anyway. Fresh counts are written
    to the cache in one batch.

    Args:
        partitions: Partitions to count.
        config: ArchiverConfig supplying the schema, retry settings and
            ``skip_count``.
        engine: SQLAlchemy engine for the source database.
        cache_store: Optional PartitionCacheStore.
        cancel_event: Shared cancellation signal.
        sleep: Replaces the backoff wait between retries (tests).

    Returns:
        The partitions with ``row_count`` set where known; unchanged when
        ``config.skip_count`` is set.
    """
    if config.skip_count:
        return partitions

    policy = RetryPolicy.from_config(config.retry)
    counted = []
    fresh = []
    for partition in partitions:
        count = cache_store.get_row_count(partition) if cache_store is not None else None
        if count is None:
            try:
                count = run_with_retry(
                    lambda p=partition: count_rows(p, config.schema, engine),
                    policy,
                    cancel_event=cancel_event,
                    sleep=sleep,
                    description=f"count {partition.cache_key}",
                )
            except CancellationError:
                counted.append(partition)
                continue
            except Exception as exc:
                log.warning("Row count of %s unavailable, archiving without it: %s", partition.cache_key, exc)
                counted.append(partition)
                continue
            fresh.append((partition, count))
        counted.append(replace(partition, row_count=count))

    if cache_store is not None and fresh:
        cache_store.set_row_counts(fresh)
    return counted
