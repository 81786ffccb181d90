"""
=======================================================================
Data Definition Language (DDL) utilities for bulk operation staging.
=======================================================================

Generates the PostgreSQL statements that surround a bulk load: creating
and dropping the temporary staging table, locking the target table and
toggling user triggers. All functions are pure and return SQL strings;
every identifier is quoted.

Functions:
    create_staging_table: CREATE TEMPORARY TABLE mirroring the mapped columns
    drop_table: DROP TABLE [IF EXISTS]
    lock_table: LOCK TABLE ... IN <mode> MODE
    set_user_triggers: ALTER TABLE ... ENABLE/DISABLE TRIGGER USER
    count_user_triggers_sql: Query counting enabled user triggers on a table

Example:
    >>> from bulkmerge.sql.ddl import create_staging_table, drop_table
    >>>
    >>> ddl = create_staging_table('tmp_staging_ab12', metadata.columns, include_row_index=True)
    >>> print(ddl)
    CREATE TEMPORARY TABLE "tmp_staging_ab12" (
        "__row_index" INTEGER,
        "id" INTEGER,
        "name" VARCHAR(200)
    );
"""

from typing import Sequence

from bulkmerge.models.metadata import ColumnDescriptor
from bulkmerge.sql.identifiers import ROW_INDEX_COLUMN, ROW_INDEX_TYPE, quote_identifier

_LOCK_MODES = {
    'ACCESS SHARE', 'ROW SHARE', 'ROW EXCLUSIVE', 'SHARE UPDATE EXCLUSIVE',
    'SHARE', 'SHARE ROW EXCLUSIVE', 'EXCLUSIVE', 'ACCESS EXCLUSIVE',
}


def create_staging_table(
    staging_name: str,
    columns: Sequence[ColumnDescriptor],
    include_row_index: bool = False,
    temporary: bool = True
) -> str:
    """Generate CREATE TABLE statement for a staging table.

    Columns carry only their physical type: no constraints, no defaults,
    no identity, so any value the records hold (including NULL identity
    values of new rows) can be staged.

    Args:
        staging_name: Unquoted staging table name
        columns: Column descriptors in staging order
        include_row_index: If True, prefix an INTEGER row-index column
        temporary: If True, create a connection-scoped TEMPORARY table

    Returns:
        SQL CREATE TABLE statement

    Raises:
        ValueError: If no columns are given
    """
    if not columns:
        raise ValueError("Staging table requires at least one column.")

    column_defs = []
    if include_row_index:
        column_defs.append(f"    {quote_identifier(ROW_INDEX_COLUMN)} {ROW_INDEX_TYPE}")

    for column in columns:
        column_defs.append(f"    {quote_identifier(column.column_name)} {column.physical_type}")

    keyword = "CREATE TEMPORARY TABLE" if temporary else "CREATE TABLE"
    return f"{keyword} {quote_identifier(staging_name)} (\n" + ",\n".join(column_defs) + "\n);"


def drop_table(table: str, if_exists: bool = True, quoted: bool = False) -> str:
    """Generate DROP TABLE statement.

    Args:
        table: Table name
        if_exists: If True, add IF EXISTS clause
        quoted: True when table is already a quoted (possibly qualified) name

    Returns:
        SQL DROP TABLE statement
    """
    sql = "DROP TABLE"

    if if_exists:
        sql += " IF EXISTS"

    sql += f" {table if quoted else quote_identifier(table)}"

    return sql + ";"


def lock_table(qualified_table: str, mode: str = 'SHARE ROW EXCLUSIVE') -> str:
    """Generate LOCK TABLE statement.

    SHARE ROW EXCLUSIVE blocks concurrent writers (and other lockers in
    the same mode) while still allowing plain reads.

    Args:
        qualified_table: Quoted, possibly schema-qualified table name
        mode: PostgreSQL table lock mode

    Returns:
        SQL LOCK TABLE statement

    Raises:
        ValueError: If mode is not a PostgreSQL lock mode
    """
    normalized = ' '.join(mode.upper().split())
    if normalized not in _LOCK_MODES:
        raise ValueError(f"Unknown lock mode: {mode}")

    return f"LOCK TABLE {qualified_table} IN {normalized} MODE;"


def set_user_triggers(qualified_table: str, enabled: bool) -> str:
    """Generate ALTER TABLE statement enabling or disabling user triggers.

    Internal (constraint) triggers are untouched, so foreign keys stay
    enforced while user triggers are off.
    """
    action = "ENABLE" if enabled else "DISABLE"
    return f"ALTER TABLE {qualified_table} {action} TRIGGER USER;"


def count_user_triggers_sql() -> str:
    """Query counting enabled, non-internal triggers on :table_name."""
    return (
        "SELECT count(*) FROM pg_catalog.pg_trigger "
        "WHERE tgrelid = to_regclass(:table_name) "
        "AND NOT tgisinternal AND tgenabled <> 'D'"
    )
