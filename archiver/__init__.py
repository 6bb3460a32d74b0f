"""Streaming archiver for time-partitioned PostgreSQL tables.

Moves partitions to S3-compatible object storage as compressed JSONL, CSV
or Parquet objects, skipping work that is already archived intact.
"""

__version__ = "1.0.0"
