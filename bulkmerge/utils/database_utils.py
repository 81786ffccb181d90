"""
==================================================
Database connectivity utilities for PostgreSQL.
==================================================

Provides bind validation, connection and transaction scoping, statement
timeouts and availability checks for bulk operations.

A "bind" is whatever the caller hands to a bulk operation: an Engine, a
Connection or an ORM Session. Only PostgreSQL reached through psycopg2
is supported, because the load path relies on psycopg2's COPY support
and on PostgreSQL 17 MERGE.

Key Features:
    - Bind validation (dialect, driver, server version)
    - Connection scoping that participates in the caller's transaction
    - Transaction-local statement_timeout
    - Engine creation and availability checks from config

Example:
    >>> from bulkmerge.utils.database_utils import connection_scope, validate_bind
    >>>
    >>> validate_bind(engine)
    >>> with connection_scope(engine) as conn:
    ...     conn.execute(text("SELECT 1"))
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import psycopg2
from psycopg2 import OperationalError
from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Connection, Engine
from sqlalchemy.exc import SQLAlchemyError, UnboundExecutionError
from sqlalchemy.orm import Session

from bulkmerge.core.config import config
from bulkmerge.core.exceptions import UnsupportedConnectionError

logger = logging.getLogger(__name__)

SUPPORTED_DIALECT = 'postgresql'
SUPPORTED_DRIVER = 'psycopg2'

# First PostgreSQL release with MERGE ... NOT MATCHED BY SOURCE and RETURNING
MINIMUM_SERVER_VERSION = (17,)


def _resolve_target(bind: Any):
    """Return the Engine or Connection a bind executes on."""
    if isinstance(bind, Session):
        try:
            return bind.get_bind()
        except UnboundExecutionError as e:
            raise UnsupportedConnectionError("Session is not bound to an engine or connection") from e
    if isinstance(bind, (Engine, Connection)):
        return bind
    raise UnsupportedConnectionError(
        f"Unsupported bind type '{type(bind).__name__}'; expected Engine, Connection or Session"
    )


def validate_bind(bind: Any) -> None:
    """
    Verify that a bind targets PostgreSQL through psycopg2.

    Runs before any connection work; nothing is executed.

    Raises:
        UnsupportedConnectionError: For other bind types, dialects or drivers
    """
    dialect = _resolve_target(bind).dialect
    if dialect.name != SUPPORTED_DIALECT or dialect.driver != SUPPORTED_DRIVER:
        raise UnsupportedConnectionError(
            f"Bulk operations require {SUPPORTED_DIALECT}+{SUPPORTED_DRIVER}, "
            f"got {dialect.name}+{dialect.driver}"
        )


def check_server_version(connection: Connection) -> None:
    """
    Verify the connected server supports the MERGE features used.

    Raises:
        UnsupportedConnectionError: If the server is older than PostgreSQL 17
    """
    version = connection.dialect.server_version_info
    if version is not None and tuple(version[:1]) < MINIMUM_SERVER_VERSION:
        raise UnsupportedConnectionError(
            f"PostgreSQL {'.'.join(str(v) for v in version)} does not support "
            f"MERGE ... RETURNING; version 17 or newer is required"
        )


@contextmanager
def connection_scope(bind: Any) -> Iterator[Connection]:
    """
    Yield a Connection inside a transaction, owning only what it opens.

    - Engine: opens a connection and transaction, commits on success,
      rolls back on error and closes the connection
    - Connection in a transaction: used as-is; the caller owns the transaction
    - Connection without a transaction: begins one and commits or rolls it
      back, leaving the connection open
    - Session: uses session.connection(); the session owns the transaction

    Args:
        bind: Engine, Connection or Session

    Yields:
        Connection to execute on
    """
    if isinstance(bind, Session):
        logger.debug("Participating in session transaction")
        yield bind.connection()
        return

    if isinstance(bind, Connection):
        if bind.in_transaction():
            logger.debug("Participating in caller's transaction")
            yield bind
            return
        with bind.begin():
            logger.debug("Began transaction on caller's connection")
            yield bind
        return

    with bind.begin() as connection:
        logger.debug("Opened connection and transaction from engine")
        yield connection


@contextmanager
def statement_timeout(connection: Connection, seconds: Optional[float]) -> Iterator[None]:
    """
    Apply a transaction-local statement_timeout for the duration of the block.

    The previous value is restored inside a savepoint when the block exits,
    whether or not it raised. A restore that fails (for instance because the
    block left the transaction aborted) is logged and never replaces the
    block's own exception; the caller's rollback discards the setting then.

    Args:
        connection: Connection inside a transaction
        seconds: Timeout in seconds; 0 or None leaves the setting untouched
    """
    if not seconds:
        yield
        return

    previous = connection.execute(text("SELECT current_setting('statement_timeout')")).scalar()
    connection.execute(
        text("SELECT set_config('statement_timeout', :value, true)"),
        {"value": f"{int(seconds * 1000)}ms"}
    )
    try:
        yield
    finally:
        try:
            with connection.begin_nested():
                connection.execute(
                    text("SELECT set_config('statement_timeout', :value, true)"),
                    {"value": previous}
                )
        except SQLAlchemyError as e:
            logger.warning(f"Could not restore statement_timeout to {previous}: {e}")


def dbapi_connection(connection: Connection):
    """Return the raw psycopg2 connection behind a SQLAlchemy Connection."""
    return connection.connection.dbapi_connection


def create_sqlalchemy_engine(
    host: str = None,
    port: int = None,
    user: str = None,
    password: str = None,
    database: str = None,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10
) -> Engine:
    """
    Create SQLAlchemy engine for psycopg2 with connection pooling.

    Args:
        host: Database hostname (defaults to config)
        port: Database port (defaults to config)
        user: Database user (defaults to config)
        password: Database password (defaults to config)
        database: Database name (defaults to config)
        echo: Enable SQL statement logging
        pool_size: Connection pool size
        max_overflow: Maximum overflow connections

    Returns:
        Configured SQLAlchemy Engine

    Example:
        >>> engine = create_sqlalchemy_engine()
        >>> result = bulk_upsert(engine, users)
    """
    connection_url = URL.create(
        drivername=f'{SUPPORTED_DIALECT}+{SUPPORTED_DRIVER}',
        username=user or config.db_user,
        password=password or config.db_password,
        host=host or config.db_host,
        port=port or config.db_port,
        database=database or config.db_name
    )

    return create_engine(
        connection_url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True
    )


def check_database_available(
    host: str = None,
    port: int = None,
    user: str = None,
    password: str = None,
    database: str = None,
    timeout: int = 5
) -> bool:
    """
    Check if PostgreSQL database is available.

    Args:
        host: Database hostname (defaults to config)
        port: Database port (defaults to config)
        user: Database user (defaults to config)
        password: Database password (defaults to config)
        database: Database name (defaults to config)
        timeout: Connection timeout in seconds

    Returns:
        True if database is available, False otherwise
    """
    try:
        conn = psycopg2.connect(
            host=host or config.db_host,
            port=port or config.db_port,
            user=user or config.db_user,
            password=password or config.db_password,
            database=database or config.db_name,
            connect_timeout=timeout
        )
        conn.close()
        return True
    except OperationalError as e:
        logger.debug(f"Database not available: {e}")
        return False
