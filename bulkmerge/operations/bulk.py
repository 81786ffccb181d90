"""
=====================================================
Public bulk operations.
=====================================================

Functions:
    bulk_insert: Insert records with COPY (optionally reading identities back)
    bulk_upsert: Insert unmatched records and update matched ones
    bulk_upsert_with_delete_scope: Upsert and delete target rows the batch does not match

Every function accepts an Engine, a Connection or an ORM Session as the
bind, any iterable of mapped records, and an optional BulkConfig. Empty
iterables are a no-op: nothing is executed and an empty BulkResult is
returned.

Example:
    >>> from bulkmerge import BulkConfig, bulk_upsert, column
    >>>
    >>> result = bulk_upsert(engine, users, match_on='email')
    >>>
    >>> result = bulk_upsert_with_delete_scope(
    ...     engine,
    ...     metrics,
    ...     delete_scope=column('account_id') == account_id,
    ...     config=BulkConfig(reconcile_identity=True)
    ... )
"""

from typing import Any, Iterable, Optional

from bulkmerge.catalog.metadata_catalog import MetadataCatalog
from bulkmerge.core.config import BulkConfig
from bulkmerge.operations.cancellation import CancellationToken
from bulkmerge.operations.orchestrator import BulkResult, UpsertOrchestrator


def bulk_insert(
    bind: Any,
    records: Iterable[Any],
    config: Optional[BulkConfig] = None,
    *,
    record_type: Optional[type] = None,
    catalog: Optional[MetadataCatalog] = None,
    cancel_token: Optional[CancellationToken] = None
) -> BulkResult:
    """
    Insert records into their mapped table.

    Records are streamed straight into the target with COPY. With
    reconcile_identity the rows go through a staging table and an
    insert-only MERGE instead, so generated identity values can be
    written back onto the records.

    Args:
        bind: Engine, Connection or Session (PostgreSQL through psycopg2)
        records: Iterable of mapped records
        config: Options (defaults to the process-wide config.bulk)
        record_type: Mapped class; defaults to the type of the first record
        catalog: Metadata catalog (defaults to the shared catalog)
        cancel_token: Optional cancellation token

    Returns:
        BulkResult

    Raises:
        ArgumentError: If bind or records is None
        UnsupportedConnectionError: If the bind is not PostgreSQL/psycopg2
        SchemaError: If the record type cannot be mapped
        ExecutionError: If the database rejects the operation
        OperationCancelledError: If cancel_token fires
    """
    orchestrator = UpsertOrchestrator(bind, config, catalog, cancel_token)
    return orchestrator.insert(records, record_type=record_type)


def bulk_upsert(
    bind: Any,
    records: Iterable[Any],
    match_on: Any = None,
    update_columns: Any = None,
    config: Optional[BulkConfig] = None,
    *,
    record_type: Optional[type] = None,
    catalog: Optional[MetadataCatalog] = None,
    cancel_token: Optional[CancellationToken] = None
) -> BulkResult:
    """
    Insert records that match no target row and update those that do.

    Args:
        bind: Engine, Connection or Session (PostgreSQL through psycopg2)
        records: Iterable of mapped records
        match_on: Column(s) correlating records with target rows, as property
            names, column names or mapped attributes; defaults to the primary key
        update_columns: Column(s) to update on match; defaults to every
            column that is not identity, matched on or part of the primary key
        config: Options; insert_only suppresses updates
        record_type: Mapped class; defaults to the type of the first record
        catalog: Metadata catalog (defaults to the shared catalog)
        cancel_token: Optional cancellation token

    Returns:
        BulkResult

    Raises:
        SchemaError: If there is no primary key and no match_on, or a column is unknown
    """
    orchestrator = UpsertOrchestrator(bind, config, catalog, cancel_token)
    return orchestrator.upsert(
        records,
        match_on=match_on,
        update_columns=update_columns,
        record_type=record_type,
    )


def bulk_upsert_with_delete_scope(
    bind: Any,
    records: Iterable[Any],
    match_on: Any = None,
    update_columns: Any = None,
    delete_scope: Any = None,
    config: Optional[BulkConfig] = None,
    *,
    record_type: Optional[type] = None,
    catalog: Optional[MetadataCatalog] = None,
    cancel_token: Optional[CancellationToken] = None
) -> BulkResult:
    """
    Upsert records, then delete target rows the batch did not match.

    delete_scope controls which unmatched rows may be deleted:

    - a predicate (column('account_id') == 7, or a SQLAlchemy expression
      such as Metric.account_id == 7): only unmatched rows satisfying it
    - UNSCOPED: every unmatched row of the table
    - None: every unmatched row of the table, announced with an
      UnscopedDeleteWarning and a WARNING log line; rejected with
      ArgumentError when config.strict_delete_scope is set

    An empty batch never deletes anything.

    Raises:
        UnsupportedPredicateError: If delete_scope uses an unsupported construct
        ArgumentError: If delete_scope is None under strict_delete_scope
    """
    orchestrator = UpsertOrchestrator(bind, config, catalog, cancel_token)
    return orchestrator.upsert_with_delete_scope(
        records,
        match_on=match_on,
        update_columns=update_columns,
        delete_scope=delete_scope,
        record_type=record_type,
        stacklevel=2,
    )
