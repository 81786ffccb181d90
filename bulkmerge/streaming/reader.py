"""
=====================================================
Forward-only row source over an iterable of records.
=====================================================

RowStreamingSource presents records as a tabular cursor for the COPY
transport. The transport asks "is this cell null" and then "what is this
cell's value" as separate calls for every cell, so each row's values are
read through the column getters exactly once, in advance(), and cached.
Every accessor after that reads the cache.

Columns:
    Ordinal 0 is the synthetic row index when include_row_index is set;
    the descriptor columns follow in order. The row index is the zero-based
    position of the record in the source iterable.

Example:
    >>> source = RowStreamingSource(records, metadata.columns, include_row_index=True)
    >>> while source.advance():
    ...     values = [source.get_value(i) for i in range(source.field_count)]
    >>> source.close()
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from bulkmerge.core.logger import get_logger
from bulkmerge.models.metadata import DB_NULL, ColumnDescriptor
from bulkmerge.sql.identifiers import ROW_INDEX_COLUMN

logger = get_logger(__name__)


class RowStreamingSource:
    """Forward-only cursor over records with per-row value caching.

    Args:
        records: Iterable of records, consumed lazily
        columns: Column descriptors in staging order
        include_row_index: Prefix a synthetic row-index column
        correlation: When given, filled with row index -> record for every
            row read, for identity reconciliation
        cancel_token: Optional token checked before pulling each record
    """

    def __init__(
        self,
        records: Iterable[Any],
        columns: Sequence[ColumnDescriptor],
        include_row_index: bool = False,
        correlation: Optional[Dict[int, Any]] = None,
        cancel_token=None
    ):
        if records is None:
            raise ValueError("records cannot be None")
        if not columns:
            raise ValueError("At least one column is required")

        self._iterator = iter(records)
        self._columns = tuple(columns)
        self._include_row_index = include_row_index
        self._correlation = correlation
        self._cancel_token = cancel_token

        names = [c.column_name for c in self._columns]
        if include_row_index:
            names.insert(0, ROW_INDEX_COLUMN)
        self._names = tuple(names)
        self._ordinals = {}
        for ordinal, name in enumerate(self._names):
            self._ordinals.setdefault(name.lower(), ordinal)

        self._row_index = -1
        self._current = None
        self._values: Optional[List[Any]] = None
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self):
        return f"RowStreamingSource(fields={self.field_count}, rows_read={self.rows_read})"

    @property
    def field_count(self) -> int:
        return len(self._names)

    @property
    def column_names(self) -> tuple:
        return self._names

    @property
    def row_index(self) -> int:
        """Zero-based index of the current row (-1 before the first advance)."""
        return self._row_index

    @property
    def rows_read(self) -> int:
        return self._row_index + 1

    @property
    def current_record(self) -> Any:
        return self._current

    @property
    def is_closed(self) -> bool:
        return self._closed

    def advance(self) -> bool:
        """
        Move to the next record and cache its column values.

        Returns:
            True if a row is available, False once the records are exhausted

        Raises:
            OperationCancelledError: If the cancellation token has fired
        """
        if self._closed:
            return False
        if self._cancel_token is not None:
            self._cancel_token.raise_if_cancelled()

        try:
            record = next(self._iterator)
        except StopIteration:
            self._current = None
            self._values = None
            return False

        self._row_index += 1
        self._current = record

        values = [self._row_index] if self._include_row_index else []
        for column in self._columns:
            value = column.read(record)
            values.append(DB_NULL if value is None else value)
        self._values = values

        if self._correlation is not None:
            self._correlation[self._row_index] = record
        return True

    def _row(self) -> List[Any]:
        if self._values is None:
            raise RuntimeError("No current row; call advance() first")
        return self._values

    def is_null(self, ordinal: int) -> bool:
        return self._row()[ordinal] is DB_NULL

    def get_value(self, ordinal: int) -> Any:
        """Return the cached value of a cell, DB_NULL for absent values."""
        return self._row()[ordinal]

    def get_values(self) -> tuple:
        return tuple(self._row())

    def get_name(self, ordinal: int) -> str:
        return self._names[ordinal]

    def get_ordinal(self, name: str) -> int:
        """Resolve a column name to its ordinal (case-insensitive)."""
        try:
            return self._ordinals[name.lower()]
        except KeyError:
            raise IndexError(f"Column '{name}' is not part of this source") from None

    def _typed(self, ordinal: int, cast):
        value = self._row()[ordinal]
        if value is DB_NULL:
            raise ValueError(f"Column '{self._names[ordinal]}' is NULL in row {self._row_index}")
        return value if isinstance(value, cast) else cast(value)

    def get_int(self, ordinal: int) -> int:
        return self._typed(ordinal, int)

    def get_str(self, ordinal: int) -> str:
        return self._typed(ordinal, str)

    def get_bool(self, ordinal: int) -> bool:
        return self._typed(ordinal, bool)

    def get_float(self, ordinal: int) -> float:
        return self._typed(ordinal, float)

    def get_decimal(self, ordinal: int) -> Decimal:
        return self._typed(ordinal, Decimal)

    def get_datetime(self, ordinal: int) -> datetime:
        value = self._row()[ordinal]
        if not isinstance(value, datetime):
            raise TypeError(f"Column '{self._names[ordinal]}' does not hold a datetime")
        return value

    def close(self) -> None:
        """Release the record iterator (closing generators)."""
        if self._closed:
            return
        self._closed = True
        self._values = None
        self._current = None
        close = getattr(self._iterator, 'close', None)
        if close is not None:
            close()
        logger.debug(f"Row source closed after {self._row_index + 1} rows")
