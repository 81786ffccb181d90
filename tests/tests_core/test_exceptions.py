"""
Test suite for core/exceptions.py.

Tests cover:
- Hierarchy: every library error is a BulkOperationError
- UnsupportedPredicateError message and node kind
- ExecutionError record type, phase and category
"""

import pytest
from sqlalchemy.exc import ProgrammingError

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


@pytest.mark.unit
@pytest.mark.parametrize("error_class", [
    ArgumentError,
    UnsupportedConnectionError,
    SchemaError,
    OperationCancelledError,
])
def test_library_errors_share_base(error_class):
    assert issubclass(error_class, BulkOperationError)


@pytest.mark.unit
def test_unsupported_predicate_error_message():
    error = UnsupportedPredicateError('FunctionElement', 'lower()')

    assert isinstance(error, BulkOperationError)
    assert error.node_kind == 'FunctionElement'
    assert str(error) == "Unsupported construct in delete scope predicate: FunctionElement (lower())"


@pytest.mark.unit
def test_unsupported_predicate_error_without_detail():
    assert str(UnsupportedPredicateError('Not')).endswith(": Not")


@pytest.mark.unit
def test_execution_error_describes_cause():
    cause = ProgrammingError("MERGE INTO ...", {}, Exception("column does not exist"))
    error = ExecutionError('UserRecord', 'merge', cause)

    assert error.record_type_name == 'UserRecord'
    assert error.phase == 'merge'
    assert error.category == 'ProgrammingError'
    assert "'UserRecord'" in str(error)
    assert "during merge" in str(error)


@pytest.mark.unit
def test_unscoped_delete_warning_is_user_warning():
    assert issubclass(UnscopedDeleteWarning, UserWarning)
    assert not issubclass(UnscopedDeleteWarning, BulkOperationError)
