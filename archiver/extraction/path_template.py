"""Object key templating and time-window arithmetic.

Templates support ``{table}``, ``{YYYY}``, ``{MM}``, ``{DD}`` and ``{HH}``;
the time placeholders come from the partition's coverage start.

Usage:
    key = build_object_key("archive/{table}/{YYYY}/{MM}", partition, "daily", ".jsonl", ".zst")
    # archive/events/2024/01/events-2024-01-15.jsonl.zst
"""

from datetime import datetime, timedelta
from typing import List, Tuple

from archiver.errors import ConfigurationError
from archiver.models import PartitionInfo

HOURLY = "hourly"
DAILY = "daily"
WEEKLY = "weekly"
MONTHLY = "monthly"
YEARLY = "yearly"

DURATIONS = (HOURLY, DAILY, WEEKLY, MONTHLY, YEARLY)


def render_path(template: str, table: str, timestamp: datetime) -> str:
    """Substitute the placeholders of *template*."""
    return (
        template.replace("{table}", table)
        .replace("{YYYY}", f"{timestamp:%Y}")
        .replace("{MM}", f"{timestamp:%m}")
        .replace("{DD}", f"{timestamp:%d}")
        .replace("{HH}", f"{timestamp:%H}")
    )


def period_label(timestamp: datetime, duration: str) -> str:
    """Return the period part of a filename, e.g. ``2024-01-15`` or ``2024-W03``."""
    if duration == HOURLY:
        return f"{timestamp:%Y-%m-%d-%H}"
    if duration == WEEKLY:
        year, week, _ = timestamp.isocalendar()
        return f"{year:04d}-W{week:02d}"
    if duration == MONTHLY:
        return f"{timestamp:%Y-%m}"
    if duration == YEARLY:
        return f"{timestamp:%Y}"
    return f"{timestamp:%Y-%m-%d}"


def build_filename(table: str, timestamp: datetime, duration: str, format_ext: str, compression_ext: str = "") -> str:
    return f"{table}-{period_label(timestamp, duration)}{format_ext}{compression_ext}"


def build_object_key(
    template: str,
    partition: PartitionInfo,
    duration: str,
    format_ext: str,
    compression_ext: str = "",
) -> str:
    """Return the destination object key for *partition*.

    The key is the rendered template, a slash, then the filename. Leading
    and duplicate slashes are dropped. A leaf partition that covers only
    part of a *duration* period is named after the leaf instead of the base
    table, so leaves sharing a period get distinct keys.
    """
    start = partition.coverage_start
    prefix = render_path(template, partition.base_table, start).strip("/")
    name = partition.base_table
    if partition.table_name != partition.base_table and not covers_period(start, partition.coverage_end, duration):
        name = partition.table_name
    filename = build_filename(name, start, duration, format_ext, compression_ext)
    key = f"{prefix}/{filename}" if prefix else filename
    while "//" in key:
        key = key.replace("//", "/")
    return key


def truncate(timestamp: datetime, duration: str) -> datetime:
    """Return the start of the *duration* period containing *timestamp*."""
    if duration == HOURLY:
        return timestamp.replace(minute=0, second=0, microsecond=0)
    day = timestamp.replace(hour=0, minute=0, second=0, microsecond=0)
    if duration == DAILY:
        return day
    if duration == WEEKLY:
        return day - timedelta(days=day.weekday())
    if duration == MONTHLY:
        return day.replace(day=1)
    if duration == YEARLY:
        return day.replace(month=1, day=1)
    raise ConfigurationError(f"unknown output duration '{duration}'")


def next_boundary(timestamp: datetime, duration: str) -> datetime:
    """Return the start of the period following the one containing *timestamp*."""
    start = truncate(timestamp, duration)
    if duration == HOURLY:
        return start + timedelta(hours=1)
    if duration == DAILY:
        return start + timedelta(days=1)
    if duration == WEEKLY:
        return start + timedelta(days=7)
    if duration == MONTHLY:
        if start.month == 12:
            return start.replace(year=start.year + 1, month=1)
        return start.replace(month=start.month + 1)
    return start.replace(year=start.year + 1)


def split_range(start: datetime, end: datetime, duration: str) -> List[Tuple[datetime, datetime]]:
    """Split ``[start, end)`` into contiguous calendar-aligned windows.

    The first and last windows are clamped to the range, so the windows
    cover the range exactly with no gaps or overlaps.
    """
    windows = []
    current = start
    while current < end:
        upper = min(next_boundary(current, duration), end)
        windows.append((current, upper))
        current = upper
    return windows


def covers_period(start: datetime, end: datetime, duration: str) -> bool:
    """Return True if ``[start, end)`` starts on a *duration* boundary and spans the whole period."""
    return truncate(start, duration) == start and next_boundary(start, duration) <= end


def is_finer(duration: str, start: datetime, end: datetime) -> bool:
    """Return True if ``[start, end)`` spans more than one *duration* period."""
    if duration not in DURATIONS:
        raise ConfigurationError(f"unknown output duration '{duration}'")
    return next_boundary(start, duration) < end
