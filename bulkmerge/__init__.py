"""
=====================================================
bulkmerge - bulk insert and upsert for PostgreSQL.
=====================================================

Loads large collections of SQLAlchemy-mapped records with COPY and
reconciles them with existing rows through a single MERGE, optionally
reading generated identity values back onto the records and deleting
target rows the batch does not match.

Requires PostgreSQL 17 or newer, reached through psycopg2.

Example:
    >>> from bulkmerge import BulkConfig, bulk_upsert
    >>>
    >>> users = [User(email='a@example.com', name='A'), User(email='b@example.com', name='B')]
    >>> result = bulk_upsert(engine, users, match_on='email', config=BulkConfig(reconcile_identity=True))
    >>> [u.id for u in users]
    [1, 2]
"""

__version__ = "1.0.0"
__all__ = [
    'bulk_insert', 'bulk_upsert', 'bulk_upsert_with_delete_scope',
    'BulkConfig', 'BulkResult', 'CancellationToken', 'UpsertOrchestrator',
    'MetadataCatalog', 'setup_logging',
    'UNSCOPED', 'column', 'param', 'captured',
    'BulkOperationError', 'ArgumentError', 'UnsupportedConnectionError',
    'SchemaError', 'UnsupportedPredicateError', 'ExecutionError',
    'OperationCancelledError', 'UnscopedDeleteWarning',
]

from bulkmerge.catalog import MetadataCatalog
from bulkmerge.core.config import BulkConfig
from bulkmerge.core.exceptions import (
    ArgumentError,
    BulkOperationError,
    ExecutionError,
    OperationCancelledError,
    SchemaError,
    UnscopedDeleteWarning,
    UnsupportedConnectionError,
    UnsupportedPredicateError,
)
from bulkmerge.core.logger import setup_logging
from bulkmerge.operations import (
    BulkResult,
    CancellationToken,
    UpsertOrchestrator,
    bulk_insert,
    bulk_upsert,
    bulk_upsert_with_delete_scope,
)
from bulkmerge.sql.predicates import UNSCOPED, captured, column, param
