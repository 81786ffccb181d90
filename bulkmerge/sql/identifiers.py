"""
=====================================
PostgreSQL identifier helpers.
=====================================

Every identifier that reaches generated SQL goes through quote_identifier,
so table and column names coming from mappings can never break out of
their quotes.

Functions:
    quote_identifier: Double-quote one identifier, doubling embedded quotes
    qualify_table: Build a quoted schema.table name
    new_staging_table_name: Unique, connection-local staging table name
"""

from typing import Optional
from uuid import uuid4

STAGING_TABLE_PREFIX = 'tmp_staging_'
ROW_INDEX_COLUMN = '__row_index'
ROW_INDEX_TYPE = 'INTEGER'
ROW_RANK_COLUMN = '__row_rank'

# Values returned by merge_action() in the MERGE result projection
MERGE_ACTION_INSERT = 'INSERT'
MERGE_ACTION_UPDATE = 'UPDATE'
MERGE_ACTION_DELETE = 'DELETE'

# PostgreSQL truncates identifiers longer than NAMEDATALEN - 1 bytes
MAX_IDENTIFIER_LENGTH = 63


def quote_identifier(identifier: str) -> str:
    """
    Quote a PostgreSQL identifier.

    Args:
        identifier: Raw identifier (table, schema or column name)

    Returns:
        Identifier wrapped in double quotes with embedded quotes doubled

    Raises:
        ValueError: If the identifier is empty or blank

    Example:
        >>> quote_identifier('order')
        '"order"'
        >>> quote_identifier('odd"name')
        '"odd""name"'
    """
    if identifier is None or not str(identifier).strip():
        raise ValueError("SQL identifier cannot be null or empty.")

    return '"' + str(identifier).replace('"', '""') + '"'


def qualify_table(table: str, schema: Optional[str] = None) -> str:
    """
    Build a fully-qualified, quoted table name.

    Args:
        table: Table name
        schema: Optional schema name

    Returns:
        '"schema"."table"' or '"table"' when no schema is given
    """
    if schema:
        return f"{quote_identifier(schema)}.{quote_identifier(table)}"
    return quote_identifier(table)


def new_staging_table_name() -> str:
    """Return a unique staging table name (unquoted)."""
    return f"{STAGING_TABLE_PREFIX}{uuid4().hex}"
