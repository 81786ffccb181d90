"""
=================================================
Configuration management for bulk operations.
=================================================

Loads settings from environment variables (.env file) and provides the
option object every bulk operation accepts, plus a centralized Config
singleton for application-wide defaults.

The configuration system ensures:
- Single source of truth for bulk operation defaults
- Type conversion and validation of numeric and boolean options
- Database connection settings for tooling and integration tests

Example:
    >>> from bulkmerge.core.config import BulkConfig, config
    >>>
    >>> # Per-call options
    >>> options = BulkConfig(batch_size=5000, reconcile_identity=True)
    >>>
    >>> # Process-wide defaults read from BULKMERGE_* variables
    >>> defaults = config.bulk
    >>> engine_url = config.get_connection_string()
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from bulkmerge.core.exceptions import ArgumentError

# Load environment variables from .env file
env_path = Path(__file__).parent.parent.parent / '.env'
load_dotenv(dotenv_path=env_path)

_TRUE_VALUES = {'1', 'true', 'yes', 'on'}
_FALSE_VALUES = {'0', 'false', 'no', 'off'}


def _env_bool(name: str, default: bool) -> bool:
    """Read a boolean flag from the environment."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ArgumentError(f"Environment variable {name} must be a boolean, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    """Read an integer setting from the environment."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ArgumentError(f"Environment variable {name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class BulkConfig:
    """Options recognized by bulk_insert, bulk_upsert and the delete-scope variant.

    Attributes:
        batch_size: Rows per COPY batch sent by the bulk-load transport
        timeout_seconds: statement_timeout applied while the operation runs (0 disables)
        enforce_constraints: When False, deferrable constraints are deferred to commit
        fire_triggers: When False, user triggers on the target are disabled while rows are written
        table_lock: Take a SHARE ROW EXCLUSIVE lock on the target before rows are written
        streaming: Pull records lazily; when False the iterable is buffered into a list first
        insert_only: Suppress the update clause of the MERGE
        reconcile_identity: Read generated identity values back onto the records
        keep_identity: Include identity columns in a direct bulk_insert (preserve supplied keys)
        strict_delete_scope: Reject delete_scope=None instead of treating it as unscoped
    """

    batch_size: int = 10000
    timeout_seconds: int = 300
    enforce_constraints: bool = True
    fire_triggers: bool = False
    table_lock: bool = True
    streaming: bool = True
    insert_only: bool = False
    reconcile_identity: bool = False
    keep_identity: bool = False
    strict_delete_scope: bool = False

    def __post_init__(self):
        if not isinstance(self.batch_size, int) or self.batch_size <= 0:
            raise ArgumentError(f"batch_size must be a positive integer, got {self.batch_size!r}")
        if not isinstance(self.timeout_seconds, int) or self.timeout_seconds < 0:
            raise ArgumentError(
                f"timeout_seconds must be a non-negative integer, got {self.timeout_seconds!r}"
            )

    def with_options(self, **changes) -> 'BulkConfig':
        """Return a copy of this config with the given options replaced.

        Example:
            >>> strict = BulkConfig().with_options(strict_delete_scope=True)
        """
        return replace(self, **changes)

    @classmethod
    def from_env(cls) -> 'BulkConfig':
        """Build a BulkConfig from BULKMERGE_* environment variables.

        Unset variables fall back to the dataclass defaults.

        Returns:
            BulkConfig populated from the environment
        """
        defaults = cls()
        return cls(
            batch_size=_env_int('BULKMERGE_BATCH_SIZE', defaults.batch_size),
            timeout_seconds=_env_int('BULKMERGE_TIMEOUT_SECONDS', defaults.timeout_seconds),
            enforce_constraints=_env_bool('BULKMERGE_ENFORCE_CONSTRAINTS', defaults.enforce_constraints),
            fire_triggers=_env_bool('BULKMERGE_FIRE_TRIGGERS', defaults.fire_triggers),
            table_lock=_env_bool('BULKMERGE_TABLE_LOCK', defaults.table_lock),
            streaming=_env_bool('BULKMERGE_STREAMING', defaults.streaming),
        )


@dataclass
class DatabaseConfig:
    """Database configuration settings.

    Used by tooling and the integration test suite; bulk operations
    themselves always run against the bind handed in by the caller.

    Attributes:
        host: PostgreSQL server hostname or IP address
        port: PostgreSQL server port number
        user: Database username
        password: Database password
        database: Database name
    """

    host: str
    port: int
    user: str
    password: str
    database: str

    def get_connection_string(self, database: Optional[str] = None) -> str:
        """Get PostgreSQL connection string for the psycopg2 driver.

        Args:
            database: Optional database name overriding the configured one

        Returns:
            SQLAlchemy-compatible PostgreSQL connection string
        """
        db_name = database or self.database
        return (
            f"postgresql+psycopg2://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{db_name}"
        )

    def get_connection_params(self) -> dict:
        """Get connection parameters as dictionary.

        Returns:
            Dictionary with keys: host, port, user, password, database
        """
        return {
            'host': self.host,
            'port': self.port,
            'user': self.user,
            'password': self.password,
            'database': self.database
        }


class Config:
    """Centralized configuration manager.

    Attributes:
        db: DatabaseConfig instance with database connection settings
        bulk: BulkConfig instance with process-wide bulk operation defaults

    Example:
        >>> config = Config()
        >>> conn_str = config.get_connection_string()
        >>> print(f"Default batch size: {config.bulk.batch_size}")
    """

    def __init__(self):
        """Initialize configuration from environment variables."""
        self.db = DatabaseConfig(
            host=os.getenv('POSTGRES_HOST', 'localhost'),
            port=_env_int('POSTGRES_PORT', 5432),
            user=os.getenv('POSTGRES_USER', 'postgres'),
            password=os.getenv('POSTGRES_PASSWORD', ''),
            database=os.getenv('POSTGRES_DB', 'postgres'),
        )
        self.bulk = BulkConfig.from_env()

    @property
    def db_host(self) -> str:
        """Get database server hostname."""
        return self.db.host

    @property
    def db_port(self) -> int:
        """Get database server port number."""
        return self.db.port

    @property
    def db_user(self) -> str:
        """Get database username."""
        return self.db.user

    @property
    def db_password(self) -> str:
        """Get database password."""
        return self.db.password

    @property
    def db_name(self) -> str:
        """Get database name."""
        return self.db.database

    def get_connection_string(self, database: Optional[str] = None) -> str:
        """Get database connection string.

        Args:
            database: Optional database name overriding POSTGRES_DB

        Returns:
            SQLAlchemy-compatible PostgreSQL connection string
        """
        return self.db.get_connection_string(database=database)

    def get_connection_params(self) -> dict:
        """Get database connection parameters."""
        return self.db.get_connection_params()


# Global configuration instance
config = Config()
