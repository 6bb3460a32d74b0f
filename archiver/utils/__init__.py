"""Shared utility functions for the archiver."""

from archiver.utils.logging_config import get_logger, partition_logging_context, setup_logging
from archiver.utils.postgres_client import fetch_dataframe, fetch_scalar, get_postgres_connection, stream_query
from archiver.utils.s3_client import client_from_config, get_s3_client
from archiver.utils.storage import ObjectInfo, ObjectStorageUploader

__all__ = [
    "get_logger",
    "partition_logging_context",
    "setup_logging",
    "fetch_dataframe",
    "fetch_scalar",
    "get_postgres_connection",
    "stream_query",
    "client_from_config",
    "get_s3_client",
    "ObjectInfo",
    "ObjectStorageUploader",
]
