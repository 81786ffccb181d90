"""
=========================================
SQL generation for bulk operations.
=========================================

Pure functions producing PostgreSQL statements from column metadata,
plus the delete-scope predicate language.

Modules:
    identifiers: Identifier quoting and staging table names
    ddl: Staging table DDL, table locks, trigger toggling
    dml: MERGE and COPY statements
    predicates: Delete-scope predicate tree and translator
"""

__all__ = [
    'quote_identifier', 'qualify_table', 'new_staging_table_name',
    'create_staging_table', 'drop_table', 'lock_table', 'set_user_triggers',
    'merge_statement', 'copy_from_stdin_statement', 'defer_constraints',
    'UNSCOPED', 'column', 'param', 'captured', 'translate', 'TranslatedPredicate',
]

from bulkmerge.sql.ddl import create_staging_table, drop_table, lock_table, set_user_triggers
from bulkmerge.sql.dml import copy_from_stdin_statement, defer_constraints, merge_statement
from bulkmerge.sql.identifiers import new_staging_table_name, qualify_table, quote_identifier
from bulkmerge.sql.predicates import (
    UNSCOPED,
    TranslatedPredicate,
    captured,
    column,
    param,
    translate,
)
