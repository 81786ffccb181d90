"""
=========================================
Core infrastructure for bulk operations.
=========================================

This package provides configuration, logging and the exception
hierarchy used throughout the library.

Modules:
    config: BulkConfig options and environment-driven settings
    logger: Centralized logging configuration and utilities
    exceptions: Error taxonomy shared by all modules

Example:
    >>> from bulkmerge.core import BulkConfig, get_logger
    >>>
    >>> logger = get_logger(__name__)
    >>> logger.info(f"Batch size: {BulkConfig().batch_size}")
"""

__all__ = [
    'BulkConfig', 'Config', 'DatabaseConfig', 'config',
    'get_logger', 'setup_logging',
    'BulkOperationError', 'ArgumentError', 'UnsupportedConnectionError',
    'SchemaError', 'UnsupportedPredicateError', 'ExecutionError',
    'OperationCancelledError', 'UnscopedDeleteWarning',
]

from bulkmerge.core.config import BulkConfig, Config, DatabaseConfig, config
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
from bulkmerge.core.logger import get_logger, setup_logging
