"""
==========================================
Exception hierarchy for bulk operations.
==========================================

Every error raised by the library derives from BulkOperationError so
callers can catch the whole family with a single except clause.

Classes:
    BulkOperationError: Base class for all library errors
    ArgumentError: Missing or malformed arguments (raised before any SQL)
    UnsupportedConnectionError: Bind is not PostgreSQL through psycopg2
    SchemaError: Record type cannot be mapped or a referenced property is unknown
    UnsupportedPredicateError: Delete scope uses a construct that cannot be translated
    ExecutionError: The engine or the bulk-load transport rejected the operation
    OperationCancelledError: The operation's cancellation token fired
    UnscopedDeleteWarning: Emitted when an unscoped delete is requested implicitly
"""

from typing import Optional


class BulkOperationError(Exception):
    """Base exception for all bulk operation errors."""
    pass


class ArgumentError(BulkOperationError, ValueError):
    """Exception raised for missing or invalid arguments.

    Raised before any connection work begins.
    """
    pass


class UnsupportedConnectionError(BulkOperationError):
    """Exception raised when the bind is not a PostgreSQL/psycopg2 connection."""
    pass


class SchemaError(BulkOperationError):
    """Exception raised when record metadata cannot satisfy the request.

    Covers unmapped record types, record types with no usable columns,
    missing primary keys without an explicit match_on, and match or
    update properties that do not exist in the metadata.
    """
    pass


class UnsupportedPredicateError(BulkOperationError):
    """Exception raised when a delete scope cannot be translated to SQL.

    Attributes:
        node_kind: Name of the offending node or construct
    """

    def __init__(self, node_kind: str, detail: Optional[str] = None):
        self.node_kind = node_kind
        message = f"Unsupported construct in delete scope predicate: {node_kind}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ExecutionError(BulkOperationError):
    """Exception raised when the database rejects a bulk operation, or when
    reading or updating the records fails midway.

    Always chained to the original error via __cause__.

    Attributes:
        record_type_name: Name of the record type being written
        phase: Orchestrator phase that failed (staging, bulk_load, merge, insert)
        category: Class name of the underlying error
    """

    def __init__(self, record_type_name: str, phase: str, cause: BaseException):
        self.record_type_name = record_type_name
        self.phase = phase
        self.category = type(cause).__name__
        super().__init__(
            f"Bulk operation failed for record type '{record_type_name}' "
            f"during {phase} ({self.category}): {cause}"
        )


class OperationCancelledError(BulkOperationError):
    """Exception raised when a bulk operation is cancelled cooperatively."""
    pass


class UnscopedDeleteWarning(UserWarning):
    """Warning emitted when a delete scope of None deletes every unmatched row."""
    pass
