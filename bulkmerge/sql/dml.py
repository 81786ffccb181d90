"""
===========================================
Data Manipulation Language (DML) Utilities.
===========================================

This module generates the statements that move staged rows into the
target table. Focuses on the PostgreSQL 17 MERGE statement (match, update,
insert, unmatched-by-source delete and RETURNING projection) and on the
COPY FROM STDIN statement driven by the bulk-load transport.

Functions:
- merge_statement: Generate MERGE from a staging table into the target
- resolve_update_columns: Effective update set of a MERGE
- deduplicated_source: MERGE source keeping the last staged row per match key
- copy_from_stdin_statement: Generate COPY ... FROM STDIN for streaming loads
- defer_constraints: Generate SET CONSTRAINTS ALL DEFERRED

Usage:
    from bulkmerge.sql.dml import merge_statement

    merge_sql = merge_statement(
        target_table='"public"."users"',
        staging_table='tmp_staging_ab12',
        columns=metadata.columns,
        match_columns=[metadata.find_column('email')],
        update_columns=None,
        identity_columns=metadata.identity_columns
    )

Notes:
    Identity columns are never updated and never inserted by value; the
    engine generates them. A match column is never part of the automatic
    update set. An empty update set drops the WHEN MATCHED clause instead
    of producing invalid SQL. When a batch holds several rows with the same
    match key, only the last one (highest row index) reaches the target.
"""

from typing import List, Optional, Sequence

from bulkmerge.core.exceptions import ArgumentError
from bulkmerge.models.metadata import ColumnDescriptor
from bulkmerge.sql.identifiers import ROW_INDEX_COLUMN, ROW_RANK_COLUMN, quote_identifier


def _contains(columns: Sequence[ColumnDescriptor], descriptor: ColumnDescriptor) -> bool:
    return any(column is descriptor for column in columns)


def _require_members(
    columns: Sequence[ColumnDescriptor],
    candidates: Sequence[ColumnDescriptor],
    role: str
) -> None:
    """Fail fast when a descriptor does not come from the staged column list."""
    for candidate in candidates:
        if not _contains(columns, candidate):
            raise ArgumentError(
                f"{role} column '{candidate.column_name}' does not belong to the "
                f"metadata used to build the staging table"
            )


def resolve_update_columns(
    columns: Sequence[ColumnDescriptor],
    match_columns: Sequence[ColumnDescriptor],
    update_columns: Optional[Sequence[ColumnDescriptor]] = None
) -> List[ColumnDescriptor]:
    """
    Compute the effective update set of a MERGE.

    Args:
        columns: All staged columns
        match_columns: Columns used in the join condition
        update_columns: Explicit subset to update, or None for the default

    Returns:
        Columns to assign in WHEN MATCHED, in staging order. The default
        set is every column that is not identity, not matched on and not
        part of the primary key; an explicit set is filtered the same way
        except for the primary-key rule.
    """
    def updatable(column: ColumnDescriptor) -> bool:
        return not column.is_identity and not _contains(match_columns, column)

    if update_columns is None:
        return [c for c in columns if updatable(c) and not c.is_primary_key]

    return [c for c in columns if updatable(c) and _contains(update_columns, c)]


def deduplicated_source(staging_table: str, match_columns: Sequence[ColumnDescriptor]) -> str:
    """
    Generate the MERGE source keeping the last staged row per match key.

    Rows are ranked by descending row index within each match key; only the
    top-ranked row survives. Rows with a NULL in any match column never
    match a target row, so they are all kept.

    Args:
        staging_table: Unquoted staging table name (must carry the row index column)
        match_columns: Columns identifying a target row

    Returns:
        Parenthesized subquery usable as a MERGE source

    Example:
        >>> print(deduplicated_source('tmp_staging_ab12', [email]))
        (
            SELECT * FROM (
                SELECT *, row_number() OVER (PARTITION BY "email" ORDER BY "__row_index" DESC) AS "__row_rank"
                FROM "tmp_staging_ab12"
            ) AS ranked
            WHERE "__row_rank" = 1 OR "email" IS NULL
        )
    """
    if not match_columns:
        raise ArgumentError("Deduplicating the staged rows requires match columns.")

    keys = [quote_identifier(c.column_name) for c in match_columns]
    rank = quote_identifier(ROW_RANK_COLUMN)
    keep = " OR ".join([f"{rank} = 1"] + [f"{key} IS NULL" for key in keys])

    return (
        "(\n"
        "    SELECT * FROM (\n"
        f"        SELECT *, row_number() OVER (PARTITION BY {', '.join(keys)} "
        f"ORDER BY {quote_identifier(ROW_INDEX_COLUMN)} DESC) AS {rank}\n"
        f"        FROM {quote_identifier(staging_table)}\n"
        "    ) AS ranked\n"
        f"    WHERE {keep}\n"
        ")"
    )


def merge_statement(
    target_table: str,
    staging_table: str,
    columns: Sequence[ColumnDescriptor],
    match_columns: Sequence[ColumnDescriptor],
    update_columns: Optional[Sequence[ColumnDescriptor]] = None,
    insert_only: bool = False,
    identity_columns: Optional[Sequence[ColumnDescriptor]] = None,
    delete_unmatched: bool = False,
    delete_condition: Optional[str] = None
) -> str:
    """
    Generate MERGE statement from a staging table into the target table.

    Args:
        target_table: Quoted, possibly schema-qualified target table name
        staging_table: Unquoted staging table name; it must carry the row
            index column whenever match columns are given
        columns: Columns present in the staging table (identity included)
        match_columns: Columns joined with target.col = source.col; may be
            empty only for insert-only merges (joined ON FALSE)
        update_columns: Explicit update subset (defaults to non-key columns)
        insert_only: If True, omit the WHEN MATCHED clause
        identity_columns: When given (even empty), add a RETURNING projection
            of the row index, these columns' post-merge values and merge_action()
        delete_unmatched: If True, delete target rows not matched by the source
        delete_condition: SQL fragment (over target.*) narrowing the delete

    Returns:
        SQL MERGE statement

    Raises:
        ArgumentError: If a descriptor is not one of the staged columns, or
            if match columns are missing where they are required
    """
    if not columns:
        raise ArgumentError("MERGE requires at least one staged column.")

    _require_members(columns, match_columns, "Match")
    if update_columns is not None:
        _require_members(columns, update_columns, "Update")
    if identity_columns:
        _require_members(columns, identity_columns, "Identity")

    if not match_columns and not insert_only:
        raise ArgumentError("MERGE requires match columns unless it is insert-only.")
    if not match_columns and delete_unmatched:
        raise ArgumentError("MERGE cannot delete unmatched rows without match columns.")

    # Staged rows sharing a match key collapse to the last one supplied
    source = deduplicated_source(staging_table, match_columns) if match_columns else quote_identifier(staging_table)

    sql_lines = [
        f"MERGE INTO {target_table} AS target",
        f"USING {source} AS source",
    ]

    # ON clause - conjunction of match columns
    if match_columns:
        join = " AND ".join(
            f"target.{quote_identifier(c.column_name)} = source.{quote_identifier(c.column_name)}"
            for c in match_columns
        )
    else:
        join = "FALSE"
    sql_lines.append(f"ON {join}")

    # WHEN MATCHED clause (update)
    if not insert_only:
        assignments = resolve_update_columns(columns, match_columns, update_columns)
        if assignments:
            set_list = ", ".join(
                f"{quote_identifier(c.column_name)} = source.{quote_identifier(c.column_name)}"
                for c in assignments
            )
            sql_lines.append("WHEN MATCHED THEN")
            sql_lines.append(f"    UPDATE SET {set_list}")

    # WHEN NOT MATCHED BY TARGET clause (insert) - identity columns are engine-generated
    insert_columns = [c for c in columns if not c.is_identity]
    sql_lines.append("WHEN NOT MATCHED BY TARGET THEN")
    sql_lines.append(
        "    INSERT (" + ", ".join(quote_identifier(c.column_name) for c in insert_columns) + ")"
    )
    sql_lines.append(
        "    VALUES (" + ", ".join(f"source.{quote_identifier(c.column_name)}" for c in insert_columns) + ")"
    )

    # WHEN NOT MATCHED BY SOURCE clause (delete)
    if delete_unmatched:
        if delete_condition:
            sql_lines.append(f"WHEN NOT MATCHED BY SOURCE AND {delete_condition} THEN")
        else:
            sql_lines.append("WHEN NOT MATCHED BY SOURCE THEN")
        sql_lines.append("    DELETE")

    # RETURNING projection for identity reconciliation
    if identity_columns is not None:
        projection = [f"source.{quote_identifier(ROW_INDEX_COLUMN)}"]
        projection.extend(f"target.{quote_identifier(c.column_name)}" for c in identity_columns)
        projection.append("merge_action()")
        sql_lines.append("RETURNING " + ", ".join(projection))

    return "\n".join(sql_lines) + ";"


def copy_from_stdin_statement(
    table: str,
    column_names: Sequence[str],
    quoted: bool = True
) -> str:
    """
    Generate COPY statement for streaming rows from the client.

    Uses the text format with its default NULL marker (\\N); the bulk-load
    transport encodes cells accordingly.

    Args:
        table: Table name (quoted and possibly qualified when quoted=True)
        column_names: Unquoted column names in stream order
        quoted: False when table still needs quoting

    Returns:
        SQL COPY ... FROM STDIN statement
    """
    if not column_names:
        raise ValueError("COPY requires at least one column.")

    target = table if quoted else quote_identifier(table)
    column_list = ", ".join(quote_identifier(name) for name in column_names)
    return f"COPY {target} ({column_list}) FROM STDIN WITH (FORMAT text)"


def defer_constraints() -> str:
    """Generate SET CONSTRAINTS ALL DEFERRED (deferrable constraints checked at commit)."""
    return "SET CONSTRAINTS ALL DEFERRED;"
