"""
=====================================================
Upsert orchestrator for bulk operations.
=====================================================

Sequences one bulk operation from validated inputs to a cleaned-up
staging table:

    IDLE -> CONNECTION_OPEN -> STAGING_CREATED -> LOADED -> MERGED -> CLEANED_UP

Any failure after the connection opens moves the operation to ERROR.
Engine errors and errors raised while reading or updating records are
wrapped in ExecutionError naming the record type and the phase that
failed; the staging table drop is attempted once in every case and its
failure never masks the original error.

Several records with the same match key in one batch collapse to the
last one supplied before the MERGE runs.

This orchestrator manages:
    - Input validation before any connection work (arguments, bind,
      match/update specs, delete scope)
    - Connection and transaction scoping (participates in the caller's
      transaction, owns only what it opens)
    - Staging table lifecycle and the COPY load
    - MERGE execution and identity reconciliation by row index
    - Direct COPY into the target for plain bulk inserts
    - Cancellation and statement timeouts
    - Per-phase performance metrics

Idempotence:
    Re-running the same batch with an unchanged match set is idempotent for
    rows that already match (they are updated to the same values) but not
    for unmatched rows: those are inserted again and acquire new identities.
    This follows from MERGE semantics.

Example:
    >>> orchestrator = UpsertOrchestrator(engine, BulkConfig(reconcile_identity=True))
    >>> result = orchestrator.upsert(users, match_on='email')
    >>> print(f"{result.inserted} inserted, {result.updated} updated")
"""

import time
import warnings
from collections import Counter
from contextlib import nullcontext
from dataclasses import dataclass, field, replace
from enum import Enum
from itertools import chain
from typing import Any, Dict, Iterable, List, Optional, Tuple

import psycopg2
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.attributes import QueryableAttribute

from bulkmerge.catalog.metadata_catalog import MetadataCatalog
from bulkmerge.catalog.metadata_catalog import catalog as default_catalog
from bulkmerge.core.config import BulkConfig, config
from bulkmerge.core.exceptions import (
    ArgumentError,
    BulkOperationError,
    ExecutionError,
    OperationCancelledError,
    SchemaError,
    UnscopedDeleteWarning,
)
from bulkmerge.core.logger import get_logger
from bulkmerge.logs.performance_monitor import PerformanceMonitor, PhaseMetric
from bulkmerge.models.metadata import ColumnDescriptor, EntityMetadata
from bulkmerge.operations.cancellation import CancellationToken
from bulkmerge.sql.ddl import create_staging_table, drop_table
from bulkmerge.sql.dml import merge_statement
from bulkmerge.sql.identifiers import (
    MERGE_ACTION_DELETE,
    MERGE_ACTION_INSERT,
    MERGE_ACTION_UPDATE,
    new_staging_table_name,
    quote_identifier,
)
from bulkmerge.sql.predicates import UNSCOPED, TranslatedPredicate, translate
from bulkmerge.streaming.copy import BulkCopy, BulkCopyOptions
from bulkmerge.streaming.reader import RowStreamingSource
from bulkmerge.utils.database_utils import (
    check_server_version,
    connection_scope,
    dbapi_connection,
    statement_timeout,
    validate_bind,
)

logger = get_logger(__name__)

_NO_RECORDS = object()

# Frames from the warn call up to upsert_with_delete_scope itself
_DELETE_WARNING_BASE_STACKLEVEL = 3


class OperationState(str, Enum):
    """Lifecycle states of one orchestrated operation."""

    IDLE = 'idle'
    CONNECTION_OPEN = 'connection_open'
    STAGING_CREATED = 'staging_created'
    LOADED = 'loaded'
    MERGED = 'merged'
    CLEANED_UP = 'cleaned_up'
    ERROR = 'error'


class OperationKind(str, Enum):
    INSERT = 'bulk_insert'
    UPSERT = 'bulk_upsert'
    UPSERT_WITH_DELETE = 'bulk_upsert_with_delete_scope'


@dataclass
class BulkResult:
    """Outcome of a bulk operation.

    Attributes:
        record_type: Name of the record type written ('' for no-ops without records)
        rows_staged: Rows streamed through COPY
        rows_affected: Rows inserted, updated or deleted in the target
        inserted: Rows inserted, when known
        updated: Rows updated, when known
        deleted: Rows deleted, when known
        staging_table: Name of the staging table used, if any
        metrics: Per-phase performance metrics
        duration: Wall time of the whole operation in seconds
    """

    record_type: str = ''
    rows_staged: int = 0
    rows_affected: int = 0
    inserted: Optional[int] = None
    updated: Optional[int] = None
    deleted: Optional[int] = None
    staging_table: Optional[str] = None
    metrics: List[PhaseMetric] = field(default_factory=list)
    duration: float = 0.0

    @property
    def is_noop(self) -> bool:
        return self.rows_staged == 0


@dataclass(frozen=True)
class OperationPlan:
    """Validated inputs of one operation, resolved before any connection work."""

    kind: OperationKind
    metadata: EntityMetadata
    records: Iterable[Any]
    config: BulkConfig
    match_columns: Tuple[ColumnDescriptor, ...] = ()
    update_columns: Optional[Tuple[ColumnDescriptor, ...]] = None
    insert_only: bool = False
    delete_unmatched: bool = False
    delete_scope: Optional[TranslatedPredicate] = None

    @property
    def uses_staging(self) -> bool:
        return self.kind is not OperationKind.INSERT or self.config.reconcile_identity

    @property
    def reconcile(self) -> bool:
        return self.config.reconcile_identity


def _member_name(member: Any) -> str:
    if isinstance(member, str):
        return member
    if isinstance(member, QueryableAttribute):
        return member.key
    raise ArgumentError(
        f"Cannot use {member!r} as a column reference; expected a property name, "
        f"a column name or a mapped attribute"
    )


def resolve_columns(
    metadata: EntityMetadata,
    members: Any,
    role: str
) -> Tuple[ColumnDescriptor, ...]:
    """
    Resolve caller-supplied column references against one metadata instance.

    Args:
        metadata: Metadata of the record type being written
        members: A name, a mapped attribute, a ColumnDescriptor, or a sequence of those
        role: 'match' or 'update', used in error messages

    Returns:
        Descriptors in the given order, duplicates removed

    Raises:
        SchemaError: If the sequence is empty or a name is not mapped
        ArgumentError: If a reference belongs to another record type
    """
    if isinstance(members, (str, QueryableAttribute, ColumnDescriptor)):
        members = [members]
    members = list(members)
    if not members:
        raise SchemaError(f"Explicit {role} columns for {metadata.record_type_name} cannot be empty")

    resolved: List[ColumnDescriptor] = []
    for member in members:
        if isinstance(member, ColumnDescriptor):
            if not metadata.owns(member):
                raise ArgumentError(
                    f"{role.capitalize()} column '{member.column_name}' comes from different "
                    f"metadata than {metadata.record_type_name}"
                )
            descriptor = member
        else:
            if isinstance(member, QueryableAttribute) and not issubclass(metadata.record_type, member.class_):
                raise ArgumentError(
                    f"{role.capitalize()} attribute {member.class_.__name__}.{member.key} does not "
                    f"belong to {metadata.record_type_name}"
                )
            name = _member_name(member)
            descriptor = metadata.find_column(name)
            if descriptor is None:
                raise SchemaError(
                    f"{role.capitalize()} column '{name}' is not a mapped column of {metadata.record_type_name}"
                )
        if not any(descriptor is r for r in resolved):
            resolved.append(descriptor)
    return tuple(resolved)


class UpsertOrchestrator:
    """Run bulk insert/upsert operations against one bind.

    Attributes:
        bind: Engine, Connection or Session the operation runs on
        config: Effective BulkConfig
        catalog: Metadata catalog used to describe record types
        cancel_token: Optional cooperative cancellation token
        state: Current OperationState
    """

    def __init__(
        self,
        bind: Any,
        bulk_config: Optional[BulkConfig] = None,
        catalog: Optional[MetadataCatalog] = None,
        cancel_token: Optional[CancellationToken] = None
    ):
        if bind is None:
            raise ArgumentError("bind is required (Engine, Connection or Session).")
        if bulk_config is not None and not isinstance(bulk_config, BulkConfig):
            raise ArgumentError(f"config must be a BulkConfig, got {type(bulk_config).__name__}")

        self.bind = bind
        self.config = bulk_config if bulk_config is not None else config.bulk
        self.catalog = catalog if catalog is not None else default_catalog
        self.cancel_token = cancel_token
        self.state = OperationState.IDLE
        self._phase = 'connect'

    # ========================================================================
    # PUBLIC OPERATIONS
    # ========================================================================

    def insert(self, records: Iterable[Any], record_type: Optional[type] = None) -> BulkResult:
        """Insert records; identities are read back when reconcile_identity is set."""
        if self.config.keep_identity and self.config.reconcile_identity:
            raise ArgumentError("keep_identity and reconcile_identity cannot be combined")

        plan = self._prepare(OperationKind.INSERT, records, record_type)
        if plan is None:
            return BulkResult()
        return self._execute(plan)

    def upsert(
        self,
        records: Iterable[Any],
        match_on: Any = None,
        update_columns: Any = None,
        record_type: Optional[type] = None
    ) -> BulkResult:
        """Insert unmatched records and update matched ones."""
        plan = self._prepare(
            OperationKind.UPSERT, records, record_type,
            match_on=match_on, update_columns=update_columns
        )
        if plan is None:
            return BulkResult()
        return self._execute(plan)

    def upsert_with_delete_scope(
        self,
        records: Iterable[Any],
        match_on: Any = None,
        update_columns: Any = None,
        delete_scope: Any = None,
        record_type: Optional[type] = None,
        *,
        stacklevel: int = 1
    ) -> BulkResult:
        """
        Upsert records and delete target rows the batch does not match.

        delete_scope narrows the delete to rows satisfying a predicate.
        UNSCOPED deletes every unmatched row. None does the same but is
        announced with an UnscopedDeleteWarning (or rejected when
        strict_delete_scope is set). An empty batch deletes nothing.

        stacklevel works like the warnings.warn argument: 1 attributes the
        UnscopedDeleteWarning to the caller of this method, 2 to its caller.
        """
        plan = self._prepare(
            OperationKind.UPSERT_WITH_DELETE, records, record_type,
            match_on=match_on, update_columns=update_columns,
            delete_scope=delete_scope, stacklevel=stacklevel
        )
        if plan is None:
            return BulkResult()
        return self._execute(plan)

    # ========================================================================
    # VALIDATION
    # ========================================================================

    def _prepare(
        self,
        kind: OperationKind,
        records: Iterable[Any],
        record_type: Optional[type],
        match_on: Any = None,
        update_columns: Any = None,
        delete_scope: Any = None,
        stacklevel: int = 1
    ) -> Optional[OperationPlan]:
        """Validate every input; returns None when there is nothing to write."""
        self.state = OperationState.IDLE
        if records is None:
            raise ArgumentError("records is required.")

        validate_bind(self.bind)

        iterator = iter(records)
        first = next(iterator, _NO_RECORDS)
        if first is _NO_RECORDS:
            logger.info(f"{kind.value}: no records supplied, nothing to do")
            return None

        rows = chain([first], iterator)
        if not self.config.streaming:
            rows = list(rows)

        metadata = self.catalog.get_metadata(record_type or type(first), type(self.bind))

        if kind is OperationKind.INSERT:
            return OperationPlan(kind=kind, metadata=metadata, records=rows, config=self.config, insert_only=True)

        if match_on is None:
            match_columns = metadata.primary_key_columns
            if not match_columns:
                raise SchemaError(
                    f"{metadata.record_type_name} has no primary key; pass match_on explicitly"
                )
        else:
            match_columns = resolve_columns(metadata, match_on, 'match')

        resolved_updates = None
        if update_columns is not None:
            resolved_updates = resolve_columns(metadata, update_columns, 'update')

        delete_unmatched = kind is OperationKind.UPSERT_WITH_DELETE
        translated = None
        if delete_unmatched:
            translated = self._resolve_delete_scope(delete_scope, metadata, stacklevel)

        return OperationPlan(
            kind=kind,
            metadata=metadata,
            records=rows,
            config=self.config,
            match_columns=match_columns,
            update_columns=resolved_updates,
            insert_only=self.config.insert_only,
            delete_unmatched=delete_unmatched,
            delete_scope=translated,
        )

    def _resolve_delete_scope(
        self,
        delete_scope: Any,
        metadata: EntityMetadata,
        stacklevel: int
    ) -> Optional[TranslatedPredicate]:
        if delete_scope is UNSCOPED:
            logger.info(f"Unscoped delete requested for {metadata.table_name}")
            return None

        if delete_scope is None:
            if self.config.strict_delete_scope:
                raise ArgumentError(
                    "delete_scope is required when strict_delete_scope is set; "
                    "pass UNSCOPED to delete every unmatched row"
                )
            message = (
                f"No delete_scope given: every row of {metadata.table_name} not matched by "
                f"this batch will be deleted. Pass UNSCOPED to make this explicit."
            )
            warnings.warn(message, UnscopedDeleteWarning, stacklevel=_DELETE_WARNING_BASE_STACKLEVEL + stacklevel)
            logger.warning(message)
            return None

        return translate(delete_scope, metadata)

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def _transition(self, state: OperationState) -> None:
        logger.debug(f"State {self.state.value} -> {state.value}")
        self.state = state

    def _check_cancelled(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()

    def _execute(self, plan: OperationPlan) -> BulkResult:
        metadata = plan.metadata
        type_name = metadata.record_type_name
        monitor = PerformanceMonitor(f"{plan.kind.value}:{type_name}")
        result = BulkResult(record_type=type_name)
        if plan.uses_staging:
            result.staging_table = new_staging_table_name()

        logger.info(f"Starting {plan.kind.value} of {type_name} into {metadata.table_name}")
        start_time = time.perf_counter()
        self._phase = 'connect'

        try:
            self._check_cancelled()
            with connection_scope(self.bind) as connection:
                self._transition(OperationState.CONNECTION_OPEN)
                if plan.uses_staging:
                    check_server_version(connection)

                cancel_scope = (
                    self.cancel_token.register(dbapi_connection(connection).cancel)
                    if self.cancel_token is not None else nullcontext()
                )
                with cancel_scope, statement_timeout(connection, self.config.timeout_seconds):
                    if plan.uses_staging:
                        self._run_staged(connection, plan, result, monitor)
                    else:
                        self._run_direct_insert(connection, plan, result, monitor)

        except BulkOperationError:
            self.state = OperationState.ERROR
            raise
        except Exception as e:
            # Engine errors and errors raised while reading or updating records
            self.state = OperationState.ERROR
            if self.cancel_token is not None and self.cancel_token.cancelled:
                raise OperationCancelledError(
                    f"{plan.kind.value} of {type_name} was cancelled during {self._phase}"
                ) from e
            logger.exception(f"{plan.kind.value} of {type_name} failed during {self._phase}")
            raise ExecutionError(type_name, self._phase, e) from e

        result.metrics = list(monitor.metrics)
        result.duration = time.perf_counter() - start_time
        logger.info(
            f"Finished {plan.kind.value} of {type_name}: {result.rows_staged} rows staged, "
            f"{result.rows_affected} affected in {result.duration:.2f}s"
        )
        return result

    def _copy_options(self) -> BulkCopyOptions:
        # statement_timeout already covers the whole operation
        return replace(BulkCopyOptions.from_config(self.config), timeout_seconds=0)

    def _run_direct_insert(self, connection, plan: OperationPlan, result: BulkResult, monitor) -> None:
        """COPY records straight into the target table."""
        metadata = plan.metadata
        columns = metadata.columns if self.config.keep_identity else metadata.non_identity_columns
        bulk_copy = BulkCopy(connection, self._copy_options())

        with RowStreamingSource(plan.records, columns, cancel_token=self.cancel_token) as source:
            self._phase = 'insert'
            with bulk_copy.destination_scope(metadata.table_name):
                with monitor.monitor_phase('bulk_load') as phase:
                    rows = bulk_copy.write_to_server(source, metadata.table_name)
                    phase.rows = rows

        self._transition(OperationState.LOADED)
        result.rows_staged = rows
        result.rows_affected = rows
        result.inserted = rows
        self._transition(OperationState.CLEANED_UP)

    def _run_staged(self, connection, plan: OperationPlan, result: BulkResult, monitor) -> None:
        """Stage records, MERGE them into the target and drop the staging table."""
        metadata = plan.metadata
        staging = result.staging_table
        correlation: Optional[Dict[int, Any]] = {} if plan.reconcile else None
        bulk_copy = BulkCopy(connection, self._copy_options())
        source = RowStreamingSource(
            plan.records,
            metadata.columns,
            include_row_index=True,
            correlation=correlation,
            cancel_token=self.cancel_token,
        )
        staging_created = False

        try:
            self._phase = 'staging'
            with monitor.monitor_phase('staging'):
                self._check_cancelled()
                ddl = create_staging_table(staging, metadata.columns, include_row_index=True)
                logger.debug(f"Staging DDL:\n{ddl}")
                connection.execute(text(ddl))
            staging_created = True
            self._transition(OperationState.STAGING_CREATED)

            self._phase = 'bulk_load'
            staging_table = quote_identifier(staging)
            with bulk_copy.destination_scope(staging_table):
                with monitor.monitor_phase('bulk_load') as phase:
                    rows = bulk_copy.write_to_server(source, staging_table)
                    phase.rows = rows
            result.rows_staged = rows
            self._transition(OperationState.LOADED)

            self._phase = 'merge'
            with monitor.monitor_phase('merge', rows):
                self._check_cancelled()
                self._merge(connection, plan, result, correlation)
            self._transition(OperationState.MERGED)
        finally:
            source.close()
            if staging_created:
                self._drop_staging(connection, staging, monitor)

        self._transition(OperationState.CLEANED_UP)

    def _merge(self, connection, plan: OperationPlan, result: BulkResult, correlation) -> None:
        metadata = plan.metadata
        identity_columns = metadata.identity_columns if plan.reconcile else None

        merge_sql = merge_statement(
            target_table=metadata.table_name,
            staging_table=result.staging_table,
            columns=metadata.columns,
            match_columns=plan.match_columns,
            update_columns=plan.update_columns,
            insert_only=plan.insert_only,
            identity_columns=identity_columns,
            delete_unmatched=plan.delete_unmatched,
            delete_condition=plan.delete_scope.sql if plan.delete_scope is not None else None,
        )
        parameters = plan.delete_scope.bind_params if plan.delete_scope is not None else {}
        logger.debug(f"MERGE statement:\n{merge_sql}")

        cursor_result = connection.execute(text(merge_sql), parameters)

        if identity_columns is None:
            result.rows_affected = cursor_result.rowcount
            return

        returned = cursor_result.fetchall()
        self._reconcile(returned, identity_columns, correlation)

        actions = Counter(row[-1] for row in returned)
        result.rows_affected = len(returned)
        result.inserted = actions.get(MERGE_ACTION_INSERT, 0)
        result.updated = actions.get(MERGE_ACTION_UPDATE, 0)
        result.deleted = actions.get(MERGE_ACTION_DELETE, 0) if plan.delete_unmatched else 0

    def _reconcile(self, returned, identity_columns, correlation: Dict[int, Any]) -> None:
        """Write generated identity values back onto the original records."""
        if not identity_columns:
            return

        reconciled = 0
        for row in returned:
            action = row[-1]
            if action == MERGE_ACTION_DELETE:
                continue
            record = correlation.get(row[0])
            if record is None:
                continue
            for column, value in zip(identity_columns, row[1:-1]):
                column.write(record, value)
            reconciled += 1

        logger.debug(f"Reconciled identity values onto {reconciled} record(s)")

    def _drop_staging(self, connection, staging: str, monitor: PerformanceMonitor) -> None:
        """Drop the staging table once; failures are logged and discarded."""
        try:
            with monitor.monitor_phase('cleanup'):
                with connection.begin_nested():
                    connection.execute(text(drop_table(staging)))
            logger.debug(f"Dropped staging table {staging}")
        except (SQLAlchemyError, psycopg2.Error) as e:
            # Temporary tables disappear with the connection (or the rolled back transaction)
            logger.warning(f"Could not drop staging table {staging}: {e}")
