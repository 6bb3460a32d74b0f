"""Structured logging configuration for the archiver."""

import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Union


class JSONFormatter(logging.Formatter):
    """Log formatter that outputs JSON-structured log lines."""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if getattr(record, "table", None):
            log_entry["table"] = record.table
        if getattr(record, "partition", None):
            log_entry["partition"] = record.partition

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


def setup_logging(level: Optional[str] = None):
    """Configure structured logging for the archiver.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR).
            Defaults to the ARCHIVER_LOG_LEVEL env var or INFO.
    """
    if level is None:
        level = os.environ.get("ARCHIVER_LOG_LEVEL", "INFO")

    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Avoid adding duplicate handlers
    if any(isinstance(h.formatter, JSONFormatter) for h in root_logger.handlers):
        return

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(JSONFormatter())
    root_logger.addHandler(console_handler)


def get_logger(
    name: str, table: Optional[str] = None, partition: Optional[str] = None
) -> Union[logging.Logger, logging.LoggerAdapter]:
    """Get a logger with optional table/partition context.

    Args:
        name: Logger name (typically __name__).
        table: Optional base table name for context.
        partition: Optional partition identity for context.

    Returns:
        Logger, or a LoggerAdapter when context is given.
    """
    logger = logging.getLogger(name)

    if table or partition:
        adapter_extra = {}
        if table:
            adapter_extra["table"] = table
        if partition:
            adapter_extra["partition"] = partition
        return logging.LoggerAdapter(logger, adapter_extra)

    return logger


class ContextFilter(logging.Filter):
    """Handler filter that fills in table/partition on records lacking them."""

    def __init__(self, table: str, partition: Optional[str] = None):
        super().__init__()
        self.table = table
        self.partition = partition

    def filter(self, record):
        if not getattr(record, "table", None):
            record.table = self.table
        if self.partition and not getattr(record, "partition", None):
            record.partition = self.partition
        return True


@contextmanager
def partition_logging_context(table: str, partition: Optional[str] = None):
    """Context manager that stamps table/partition context on every record.

    The context is applied by the root handlers, so records that already
    carry their own context (from ``get_logger``) keep it.

    Args:
        table: Base table being archived.
        partition: Partition identity, if any.

    Usage:
        with partition_logging_context("events", "events_2024_01"):
            log.info("This message includes table/partition context")
    """
    context_filter = ContextFilter(table, partition)
    handlers = list(logging.getLogger().handlers)
    for handler in handlers:
        handler.addFilter(context_filter)
    try:
        yield
    finally:
        for handler in handlers:
            handler.removeFilter(context_filter)
