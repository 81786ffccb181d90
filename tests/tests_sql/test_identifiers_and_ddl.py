"""
==========================================================
Test suite for sql/identifiers.py and sql/ddl.py
==========================================================

Tests cover:
- Identifier quoting and table qualification
- Staging table names
- Staging table DDL (row index, physical types, TEMPORARY)
- DROP TABLE, LOCK TABLE and trigger statements
"""

import pytest

from bulkmerge.sql.ddl import (
    count_user_triggers_sql,
    create_staging_table,
    drop_table,
    lock_table,
    set_user_triggers,
)
from bulkmerge.sql.identifiers import (
    STAGING_TABLE_PREFIX,
    new_staging_table_name,
    qualify_table,
    quote_identifier,
)


# ============================================================================
# UNIT TESTS - identifiers
# ============================================================================

@pytest.mark.unit
def test_quote_identifier():
    assert quote_identifier('users') == '"users"'
    assert quote_identifier('Order') == '"Order"'


@pytest.mark.edge_case
def test_quote_identifier_doubles_embedded_quotes():
    assert quote_identifier('a"b') == '"a""b"'
    assert quote_identifier('x"; DROP TABLE users; --') == '"x""; DROP TABLE users; --"'


@pytest.mark.edge_case
@pytest.mark.parametrize("identifier", [None, '', '   '])
def test_quote_identifier_rejects_blank(identifier):
    with pytest.raises(ValueError):
        quote_identifier(identifier)


@pytest.mark.unit
def test_qualify_table():
    assert qualify_table('users', 'app') == '"app"."users"'
    assert qualify_table('users') == '"users"'
    assert qualify_table('users', '') == '"users"'


@pytest.mark.unit
def test_staging_table_names_are_unique():
    first = new_staging_table_name()
    second = new_staging_table_name()

    assert first.startswith(STAGING_TABLE_PREFIX)
    assert first != second
    assert len(first) <= 63


# ============================================================================
# UNIT TESTS - ddl
# ============================================================================

@pytest.mark.smoke
def test_create_staging_table(simple_metadata):
    ddl = create_staging_table('tmp_staging_1', simple_metadata.columns)

    assert ddl == (
        'CREATE TEMPORARY TABLE "tmp_staging_1" (\n'
        '    "id" INTEGER,\n'
        '    "name" VARCHAR(200),\n'
        '    "value" INTEGER\n'
        ');'
    )


@pytest.mark.unit
def test_create_staging_table_with_row_index(simple_metadata):
    ddl = create_staging_table('tmp_staging_1', simple_metadata.columns, include_row_index=True)
    lines = ddl.splitlines()

    assert lines[1] == '    "__row_index" INTEGER,'
    assert 'PRIMARY KEY' not in ddl
    assert 'IDENTITY' not in ddl


@pytest.mark.unit
def test_create_permanent_staging_table(simple_metadata):
    ddl = create_staging_table('staging_debug', simple_metadata.columns, temporary=False)
    assert ddl.startswith('CREATE TABLE "staging_debug" (')


@pytest.mark.edge_case
def test_create_staging_table_requires_columns():
    with pytest.raises(ValueError):
        create_staging_table('tmp_staging_1', [])


@pytest.mark.unit
def test_drop_table():
    assert drop_table('tmp_staging_1') == 'DROP TABLE IF EXISTS "tmp_staging_1";'
    assert drop_table('tmp_staging_1', if_exists=False) == 'DROP TABLE "tmp_staging_1";'
    assert drop_table('"app"."users"', quoted=True) == 'DROP TABLE IF EXISTS "app"."users";'


@pytest.mark.unit
def test_lock_table_modes():
    assert lock_table('"app"."users"') == 'LOCK TABLE "app"."users" IN SHARE ROW EXCLUSIVE MODE;'
    assert lock_table('"t"', 'access  exclusive') == 'LOCK TABLE "t" IN ACCESS EXCLUSIVE MODE;'


@pytest.mark.edge_case
def test_lock_table_rejects_unknown_mode():
    with pytest.raises(ValueError, match="lock mode"):
        lock_table('"t"', 'TOTAL')


@pytest.mark.unit
def test_trigger_statements():
    assert set_user_triggers('"t"', enabled=False) == 'ALTER TABLE "t" DISABLE TRIGGER USER;'
    assert set_user_triggers('"t"', enabled=True) == 'ALTER TABLE "t" ENABLE TRIGGER USER;'
    assert ':table_name' in count_user_triggers_sql()
    assert 'NOT tgisinternal' in count_user_triggers_sql()
