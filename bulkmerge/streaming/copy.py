"""
=====================================================
COPY FROM STDIN bulk-load transport.
=====================================================

Streams a RowStreamingSource into a table with psycopg2's copy_expert,
one COPY command per batch_size rows. Rows are encoded lazily in the
PostgreSQL text format by a file-like stream, so a load never holds more
than one read buffer of encoded rows in memory.

Transport options map onto PostgreSQL as follows:
    table_lock=True           LOCK TABLE ... IN SHARE ROW EXCLUSIVE MODE
    fire_triggers=False       ALTER TABLE ... DISABLE TRIGGER USER for the load
    enforce_constraints=False SET CONSTRAINTS ALL DEFERRED
    timeout_seconds           transaction-local statement_timeout

Classes:
    BulkCopyOptions: Batch size, timeout and behavioral flags
    BulkCopy: Writes a row source to a table

Functions:
    encode_copy_value: Encode one cell for the COPY text format

Example:
    >>> bulk_copy = BulkCopy(connection, BulkCopyOptions(batch_size=5000))
    >>> with bulk_copy.destination_scope('"public"."users"'):
    ...     rows = bulk_copy.write_to_server(source, '"public"."users"')
"""

import json
import math
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, time
from enum import Enum
from io import TextIOBase
from typing import Any, Iterator, Optional

import psycopg2
from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from bulkmerge.core.config import BulkConfig
from bulkmerge.core.logger import get_logger
from bulkmerge.models.metadata import DB_NULL
from bulkmerge.sql.ddl import count_user_triggers_sql, lock_table, set_user_triggers
from bulkmerge.sql.dml import copy_from_stdin_statement, defer_constraints
from bulkmerge.streaming.reader import RowStreamingSource
from bulkmerge.utils.database_utils import dbapi_connection, statement_timeout

logger = get_logger(__name__)

COPY_NULL = '\\N'

_ESCAPES = str.maketrans({
    '\\': '\\\\',
    '\t': '\\t',
    '\n': '\\n',
    '\r': '\\r',
})


def encode_copy_value(value: Any) -> str:
    """
    Encode a Python value as one COPY text-format cell.

    Args:
        value: Cell value; None or DB_NULL encode as NULL

    Returns:
        Escaped cell text

    Example:
        >>> encode_copy_value(True)
        't'
        >>> encode_copy_value(datetime(2024, 1, 2, 3, 4, 5))
        '2024-01-02 03:04:05'
    """
    if value is None or value is DB_NULL:
        return COPY_NULL

    if isinstance(value, bool):
        return 't' if value else 'f'
    if isinstance(value, Enum):
        encoded = value.name
    elif isinstance(value, datetime):
        encoded = value.isoformat(sep=' ')
    elif isinstance(value, (date, time)):
        encoded = value.isoformat()
    elif isinstance(value, (bytes, bytearray, memoryview)):
        encoded = '\\x' + bytes(value).hex()
    elif isinstance(value, float):
        if math.isnan(value):
            encoded = 'NaN'
        elif math.isinf(value):
            encoded = 'Infinity' if value > 0 else '-Infinity'
        else:
            encoded = repr(value)
    elif isinstance(value, (dict, list)):
        encoded = json.dumps(value, default=str)
    else:
        encoded = str(value)

    return encoded.translate(_ESCAPES)


class _CopyTextStream(TextIOBase):
    """Lazy text stream feeding one COPY batch from a positioned row source.

    The source must already be advanced onto the first row of the batch.
    After the batch, has_more tells whether the source stopped on a row
    that belongs to the next batch.
    """

    def __init__(self, source: RowStreamingSource, batch_size: int):
        self._source = source
        self._batch_size = batch_size
        self._buffer = ''
        self._exhausted = False
        self.rows_written = 0
        self.has_more = True
        self.error: Optional[BaseException] = None

    def readable(self) -> bool:
        return True

    def _format_current_row(self) -> str:
        source = self._source
        cells = []
        for ordinal in range(source.field_count):
            if source.is_null(ordinal):
                cells.append(COPY_NULL)
            else:
                cells.append(encode_copy_value(source.get_value(ordinal)))
        return '\t'.join(cells) + '\n'

    def _pull_row(self) -> bool:
        if self.rows_written >= self._batch_size or not self.has_more:
            return False

        self._buffer += self._format_current_row()
        self.rows_written += 1
        self.has_more = self._source.advance()
        return self.rows_written < self._batch_size and self.has_more

    def read(self, size: int = -1) -> str:
        try:
            return self._read(size)
        except Exception as e:
            self.error = e
            raise

    def _read(self, size: int) -> str:
        while (size is None or size < 0 or len(self._buffer) < size) and not self._exhausted:
            if not self._pull_row():
                self._exhausted = True

        if size is None or size < 0:
            data = self._buffer
            self._buffer = ''
            return data

        data = self._buffer[:size]
        self._buffer = self._buffer[size:]
        return data


@dataclass(frozen=True)
class BulkCopyOptions:
    """Options of the COPY transport.

    Attributes:
        batch_size: Rows per COPY command
        timeout_seconds: statement_timeout for each COPY (0 disables)
        enforce_constraints: If False, defer deferrable constraints to commit
        fire_triggers: If False, disable user triggers on the destination for the load
        table_lock: If True, lock the destination against concurrent writers
    """

    batch_size: int = 10000
    timeout_seconds: int = 300
    enforce_constraints: bool = True
    fire_triggers: bool = False
    table_lock: bool = True

    @classmethod
    def from_config(cls, bulk_config: BulkConfig) -> 'BulkCopyOptions':
        return cls(
            batch_size=bulk_config.batch_size,
            timeout_seconds=bulk_config.timeout_seconds,
            enforce_constraints=bulk_config.enforce_constraints,
            fire_triggers=bulk_config.fire_triggers,
            table_lock=bulk_config.table_lock,
        )


class BulkCopy:
    """Writes row sources into PostgreSQL tables with COPY FROM STDIN.

    Args:
        connection: SQLAlchemy Connection inside a transaction (psycopg2)
        options: Transport options
    """

    def __init__(self, connection: Connection, options: Optional[BulkCopyOptions] = None):
        self.connection = connection
        self.options = options or BulkCopyOptions()

    @contextmanager
    def destination_scope(self, qualified_table: str) -> Iterator[None]:
        """
        Apply the behavioral flags to the table the transport writes into.

        Locks the table, defers constraints and disables user triggers as
        configured; user triggers are re-enabled when the block exits.

        Args:
            qualified_table: Quoted, possibly schema-qualified table name
        """
        if not self.options.enforce_constraints:
            self.connection.execute(text(defer_constraints()))
            logger.debug("Deferred deferrable constraints until commit")

        if self.options.table_lock:
            self.connection.execute(text(lock_table(qualified_table)))
            logger.debug(f"Locked {qualified_table} in SHARE ROW EXCLUSIVE mode")

        triggers_disabled = False
        if not self.options.fire_triggers:
            trigger_count = self.connection.execute(
                text(count_user_triggers_sql()), {"table_name": qualified_table}
            ).scalar()
            if trigger_count:
                self.connection.execute(text(set_user_triggers(qualified_table, enabled=False)))
                triggers_disabled = True
                logger.debug(f"Disabled {trigger_count} user trigger(s) on {qualified_table}")

        try:
            yield
        finally:
            if triggers_disabled:
                self._enable_triggers(qualified_table)

    def _enable_triggers(self, qualified_table: str) -> None:
        try:
            with self.connection.begin_nested():
                self.connection.execute(text(set_user_triggers(qualified_table, enabled=True)))
        except (SQLAlchemyError, psycopg2.Error) as e:
            # An aborted transaction rolls the DISABLE back together with everything else
            logger.warning(f"Could not re-enable user triggers on {qualified_table}: {e}")

    def write_to_server(self, source: RowStreamingSource, destination_table: str) -> int:
        """
        Stream every remaining row of a source into a table.

        Args:
            source: Row source, not yet advanced
            destination_table: Quoted, possibly schema-qualified table name

        Returns:
            Number of rows written

        Raises:
            psycopg2.Error: If the server rejects a batch
            OperationCancelledError: If the source's cancellation token fires
        """
        copy_sql = copy_from_stdin_statement(destination_table, source.column_names)
        logger.debug(f"COPY statement: {copy_sql}")

        rows = 0
        batches = 0
        with statement_timeout(self.connection, self.options.timeout_seconds):
            cursor = dbapi_connection(self.connection).cursor()
            try:
                has_row = source.advance()
                while has_row:
                    stream = _CopyTextStream(source, self.options.batch_size)
                    try:
                        cursor.copy_expert(copy_sql, stream)
                    except psycopg2.Error:
                        # psycopg2 reports a failing read() as a COPY error; surface the original
                        if stream.error is not None:
                            raise stream.error
                        raise
                    rows += stream.rows_written
                    batches += 1
                    has_row = stream.has_more
                    logger.debug(f"COPY batch {batches}: {stream.rows_written} rows into {destination_table}")
            finally:
                cursor.close()

        logger.debug(f"Copied {rows} rows into {destination_table} in {batches} batch(es)")
        return rows
