"""PostgreSQL client utilities for the archiver."""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import pandas as pd
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, MappingResult

log = logging.getLogger(__name__)

_engines: Dict[str, Engine] = {}
_engines_lock = threading.Lock()


def get_postgres_connection(
    connection_string: str,
    statement_timeout: int = 0,
    pool_size: int = 5,
) -> Engine:
    """Create or return a cached SQLAlchemy engine.

    Args:
        connection_string: SQLAlchemy URL for the source database.
        statement_timeout: Per-statement timeout in seconds applied to every
            pooled connection (0 disables it).
        pool_size: Number of pooled connections, usually the worker count.

    Returns:
        SQLAlchemy Engine instance.
    """
    cache_key = f"{connection_string}|{statement_timeout}|{pool_size}"
    with _engines_lock:
        engine = _engines.get(cache_key)
        if engine is not None:
            return engine

        connect_args = {}
        if statement_timeout > 0:
            connect_args["options"] = f"-c statement_timeout={statement_timeout * 1000}"

        engine = create_engine(
            connection_string,
            pool_size=pool_size,
            max_overflow=2,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
        _engines[cache_key] = engine

    log.info("PostgreSQL engine created (pool_size=%d, statement_timeout=%ds)", pool_size, statement_timeout)
    return engine


def dispose_engines() -> None:
    """Dispose every cached engine and close pooled connections."""
    with _engines_lock:
        for engine in _engines.values():
            engine.dispose()
        _engines.clear()


@contextmanager
def _get_connection(engine: Engine):
    """Context manager for database connections with automatic cleanup."""
    conn = engine.connect()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_scalar(sql: str, engine: Engine, params: Optional[dict] = None) -> Any:
    """Execute a SQL query and return the first column of the first row.

    Args:
        sql: SQL query string.
        engine: SQLAlchemy engine.
        params: Optional query parameters.

    Returns:
        The scalar value, or None when the query returns no rows.
    """
    with _get_connection(engine) as conn:
        value = conn.execute(text(sql), params or {}).scalar()
    log.debug("Executed scalar query: %s", sql[:100])
    return value


def fetch_dataframe(sql: str, engine: Engine, params: Optional[dict] = None) -> pd.DataFrame:
    """Execute a SQL query and return results as a pandas DataFrame.

    Args:
        sql: SQL query string.
        engine: SQLAlchemy engine.
        params: Optional query parameters.

    Returns:
        pandas DataFrame with query results.
    """
    df = pd.read_sql(text(sql), engine, params=params or {})
    log.debug("Fetched DataFrame with %d rows from query: %s", len(df), sql[:100])
    return df


@contextmanager
def stream_query(sql: str, engine: Engine, params: Optional[dict] = None) -> Iterator[MappingResult]:
    """Run a query on a server-side cursor and yield its mapping result.

    Rows are fetched lazily by the caller (``result.fetchmany(n)``) so only
    the requested batch is held in memory.

    Args:
        sql: SQL query string.
        engine: SQLAlchemy engine.
        params: Optional query parameters.

    Yields:
        MappingResult producing one dict-like row per record.
    """
    with engine.connect() as conn:
        conn = conn.execution_options(stream_results=True)
        result = conn.execute(text(sql), params or {})
        try:
            yield result.mappings()
        finally:
            result.close()
