"""Schema inspection for source relations.

Reads column names and types from ``information_schema.columns`` and falls
back to ``pg_attribute`` for relations the information schema hides from
the current role (e.g. partitions owned by another user).
"""

import logging

from sqlalchemy.engine import Engine

from archiver.errors import TableNotFoundError
from archiver.models import ColumnSchema, TableSchema
from archiver.utils.postgres_client import fetch_dataframe, fetch_scalar

log = logging.getLogger(__name__)

INFORMATION_SCHEMA_SQL = """
    SELECT column_name, data_type, udt_name
    FROM information_schema.columns
    WHERE table_schema = :schema AND table_name = :table_name
    ORDER BY ordinal_position
"""

PG_ATTRIBUTE_SQL = """
    SELECT a.attname AS column_name,
           format_type(a.atttypid, a.atttypmod) AS data_type,
           t.typname AS udt_name
    FROM pg_attribute a
    JOIN pg_class c ON c.oid = a.attrelid
    JOIN pg_namespace n ON n.oid = c.relnamespace
    JOIN pg_type t ON t.oid = a.atttypid
    WHERE n.nspname = :schema
      AND c.relname = :table_name
      AND a.attnum > 0
      AND NOT a.attisdropped
    ORDER BY a.attnum
"""

TABLE_EXISTS_SQL = """
    SELECT EXISTS (
        SELECT 1
        FROM pg_class c
        JOIN pg_namespace n ON n.oid = c.relnamespace
        WHERE n.nspname = :schema AND c.relname = :table_name
    )
"""


def inspect_table_schema(table_name: str, schema: str, engine: Engine) -> TableSchema:
    """Return the ordered column list of ``schema.table_name``.

    Args:
        table_name: Relation to inspect.
        schema: Schema containing the relation.
        engine: SQLAlchemy engine for the source database.

    Returns:
        TableSchema with one ColumnSchema per column, in ordinal order.

    Raises:
        TableNotFoundError: If the relation does not exist or has no columns.
    """
    params = {"table_name": table_name, "schema": schema}

    df = fetch_dataframe(INFORMATION_SCHEMA_SQL, engine, params=params)
    if df.empty:
        log.debug("information_schema returned no columns for %s.%s, trying pg_attribute", schema, table_name)
        df = fetch_dataframe(PG_ATTRIBUTE_SQL, engine, params=params)

    if df.empty:
        if fetch_scalar(TABLE_EXISTS_SQL, engine, params=params):
            raise TableNotFoundError(f"table '{schema}.{table_name}' has no columns", stage="schema")
        raise TableNotFoundError(f"table '{schema}.{table_name}' not found", stage="schema")

    columns = [
        ColumnSchema(
            name=row["column_name"],
            declared_type=row["udt_name"],
            data_type=row["data_type"],
        )
        for _, row in df.iterrows()
    ]
    log.info("Detected schema for '%s.%s': %d columns", schema, table_name, len(columns))
    return TableSchema(table=table_name, columns=columns)
