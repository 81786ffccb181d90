"""
==========================
Utility Functions Package.
==========================

Reusable database helpers for bulk operations.

Modules:
    database_utils: Bind validation, connection scoping, timeouts and health checks
"""

__all__ = [
    'check_database_available',
    'check_server_version',
    'connection_scope',
    'create_sqlalchemy_engine',
    'dbapi_connection',
    'statement_timeout',
    'validate_bind',
]

from .database_utils import (
    check_database_available,
    check_server_version,
    connection_scope,
    create_sqlalchemy_engine,
    dbapi_connection,
    statement_timeout,
    validate_bind,
)
