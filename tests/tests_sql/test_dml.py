"""
=============================================
Comprehensive pytest suite for sql/dml.py
=============================================

Sections:
---------
1. Unit tests - Update-set resolution
2. Unit tests - MERGE clause layout
3. Unit tests - Last-wins source deduplication
4. Unit tests - COPY statement
5. Edge case tests - Empty update sets, insert-only, foreign descriptors

Available markers:
------------------
unit, edge_case, smoke
"""

import pytest

from bulkmerge.catalog.metadata_catalog import MetadataCatalog
from bulkmerge.core.exceptions import ArgumentError
from bulkmerge.sql.dml import (
    copy_from_stdin_statement,
    deduplicated_source,
    defer_constraints,
    merge_statement,
    resolve_update_columns,
)
from record_models import CompositeKeyRecord, SimpleRecord, UserRecord


def _names(columns):
    return [c.column_name for c in columns]


@pytest.fixture
def users(user_metadata):
    return user_metadata


# ============================================================================
# UNIT TESTS - resolve_update_columns
# ============================================================================

@pytest.mark.unit
def test_default_update_set_excludes_identity_match_and_key(users):
    email = users.find_column('email')
    updates = resolve_update_columns(users.columns, [email])
    assert _names(updates) == ['name', 'created_at']


@pytest.mark.unit
def test_default_update_set_excludes_primary_key_columns(fresh_catalog):
    metadata = fresh_catalog.get_metadata(CompositeKeyRecord)
    tenant = metadata.find_column('tenant_id')

    updates = resolve_update_columns(metadata.columns, [tenant])
    assert _names(updates) == ['description']


@pytest.mark.unit
def test_explicit_update_set_filtered_and_ordered(users):
    email = users.find_column('email')
    explicit = [users.find_column('created_at'), users.find_column('id'), email, users.find_column('name')]

    updates = resolve_update_columns(users.columns, [email], explicit)
    assert _names(updates) == ['name', 'created_at']


# ============================================================================
# UNIT TESTS - merge_statement
# ============================================================================

@pytest.mark.smoke
def test_merge_statement_layout(users):
    sql = merge_statement(
        target_table=users.table_name,
        staging_table='tmp_staging_1',
        columns=users.columns,
        match_columns=[users.find_column('email')],
    )

    assert sql == (
        'MERGE INTO "app"."users" AS target\n'
        'USING (\n'
        '    SELECT * FROM (\n'
        '        SELECT *, row_number() OVER (PARTITION BY "email" ORDER BY "__row_index" DESC) AS "__row_rank"\n'
        '        FROM "tmp_staging_1"\n'
        '    ) AS ranked\n'
        '    WHERE "__row_rank" = 1 OR "email" IS NULL\n'
        ') AS source\n'
        'ON target."email" = source."email"\n'
        'WHEN MATCHED THEN\n'
        '    UPDATE SET "name" = source."name", "created_at" = source."created_at"\n'
        'WHEN NOT MATCHED BY TARGET THEN\n'
        '    INSERT ("email", "name", "created_at")\n'
        '    VALUES (source."email", source."name", source."created_at");'
    )


@pytest.mark.unit
def test_merge_joins_on_every_match_column(fresh_catalog):
    metadata = fresh_catalog.get_metadata(CompositeKeyRecord)
    sql = merge_statement(
        metadata.table_name, 'tmp_staging_1', metadata.columns, metadata.primary_key_columns
    )

    assert 'ON target."tenant_id" = source."tenant_id" AND target."code" = source."code"' in sql
    assert 'INSERT ("tenant_id", "code", "description")' in sql


@pytest.mark.unit
def test_merge_with_identity_returning(users):
    sql = merge_statement(
        users.table_name, 'tmp_staging_1', users.columns,
        [users.find_column('email')],
        identity_columns=users.identity_columns,
    )

    assert sql.endswith('RETURNING source."__row_index", target."id", merge_action();')


@pytest.mark.unit
def test_merge_with_empty_identity_list_still_returns_actions(fresh_catalog):
    metadata = fresh_catalog.get_metadata(CompositeKeyRecord)
    sql = merge_statement(
        metadata.table_name, 'tmp_staging_1', metadata.columns,
        metadata.primary_key_columns, identity_columns=(),
    )
    assert sql.endswith('RETURNING source."__row_index", merge_action();')


@pytest.mark.unit
def test_merge_with_unscoped_delete(users):
    sql = merge_statement(
        users.table_name, 'tmp_staging_1', users.columns,
        [users.find_column('email')], delete_unmatched=True,
    )
    assert sql.endswith('WHEN NOT MATCHED BY SOURCE THEN\n    DELETE;')


@pytest.mark.unit
def test_merge_with_scoped_delete(metric_metadata):
    sql = merge_statement(
        metric_metadata.table_name, 'tmp_staging_1', metric_metadata.columns,
        metric_metadata.primary_key_columns,
        delete_unmatched=True,
        delete_condition='target."account_id" = :p0',
    )
    assert 'WHEN NOT MATCHED BY SOURCE AND target."account_id" = :p0 THEN\n    DELETE' in sql


@pytest.mark.unit
def test_merge_clause_order(metric_metadata):
    sql = merge_statement(
        metric_metadata.table_name, 'tmp_staging_1', metric_metadata.columns,
        [metric_metadata.find_column('metric_name')],
        identity_columns=metric_metadata.identity_columns,
        delete_unmatched=True,
    )

    positions = [
        sql.index('WHEN MATCHED'),
        sql.index('WHEN NOT MATCHED BY TARGET'),
        sql.index('WHEN NOT MATCHED BY SOURCE'),
        sql.index('RETURNING'),
    ]
    assert positions == sorted(positions)


# ============================================================================
# UNIT TESTS - deduplicated_source
# ============================================================================

@pytest.mark.unit
def test_deduplicated_source_keeps_last_row_per_key(users):
    source = deduplicated_source('tmp_staging_1', [users.find_column('email')])

    assert 'PARTITION BY "email" ORDER BY "__row_index" DESC' in source
    assert 'FROM "tmp_staging_1"' in source
    assert source.startswith('(\n') and source.endswith('\n)')


@pytest.mark.unit
def test_deduplicated_source_partitions_on_every_key_column(fresh_catalog):
    metadata = fresh_catalog.get_metadata(CompositeKeyRecord)
    source = deduplicated_source('tmp_staging_1', metadata.primary_key_columns)

    assert 'PARTITION BY "tenant_id", "code" ORDER BY' in source
    assert 'WHERE "__row_rank" = 1 OR "tenant_id" IS NULL OR "code" IS NULL' in source


@pytest.mark.unit
def test_merge_source_is_deduplicated_when_matching(fresh_catalog):
    metadata = fresh_catalog.get_metadata(CompositeKeyRecord)
    sql = merge_statement(
        metadata.table_name, 'tmp_staging_1', metadata.columns, metadata.primary_key_columns,
        identity_columns=(), delete_unmatched=True,
    )

    assert 'USING (\n' in sql
    assert ') AS source\nON target."tenant_id" = source."tenant_id"' in sql


@pytest.mark.edge_case
def test_deduplicated_source_requires_match_columns():
    with pytest.raises(ArgumentError, match="match columns"):
        deduplicated_source('tmp_staging_1', [])


# ============================================================================
# EDGE CASE TESTS
# ============================================================================

@pytest.mark.edge_case
def test_insert_only_omits_update(users):
    sql = merge_statement(
        users.table_name, 'tmp_staging_1', users.columns,
        [users.find_column('email')], insert_only=True,
    )
    assert 'WHEN MATCHED' not in sql


@pytest.mark.edge_case
def test_insert_only_without_match_joins_on_false(users):
    sql = merge_statement(
        users.table_name, 'tmp_staging_1', users.columns, [],
        insert_only=True, identity_columns=users.identity_columns,
    )

    assert 'USING "tmp_staging_1" AS source\n' in sql
    assert '\nON FALSE\n' in sql
    assert 'WHEN MATCHED' not in sql


@pytest.mark.edge_case
def test_empty_update_set_drops_matched_clause(fresh_catalog):
    metadata = fresh_catalog.get_metadata(CompositeKeyRecord)
    sql = merge_statement(
        metadata.table_name, 'tmp_staging_1', metadata.columns,
        metadata.primary_key_columns,
        update_columns=[metadata.find_column('code')],
    )

    assert 'WHEN MATCHED' not in sql
    assert 'UPDATE SET' not in sql
    assert 'WHEN NOT MATCHED BY TARGET' in sql


@pytest.mark.edge_case
def test_merge_requires_match_columns(users):
    with pytest.raises(ArgumentError, match="match columns"):
        merge_statement(users.table_name, 'tmp_staging_1', users.columns, [])


@pytest.mark.edge_case
def test_merge_delete_requires_match_columns(users):
    with pytest.raises(ArgumentError, match="without match columns"):
        merge_statement(
            users.table_name, 'tmp_staging_1', users.columns, [],
            insert_only=True, delete_unmatched=True,
        )


@pytest.mark.edge_case
def test_merge_rejects_descriptor_from_other_metadata(users):
    foreign = MetadataCatalog().get_metadata(UserRecord).find_column('email')

    with pytest.raises(ArgumentError, match="does not belong"):
        merge_statement(users.table_name, 'tmp_staging_1', users.columns, [foreign])


@pytest.mark.edge_case
def test_merge_requires_columns():
    with pytest.raises(ArgumentError):
        merge_statement('"t"', 'tmp_staging_1', [], [])


# ============================================================================
# UNIT TESTS - COPY / constraints
# ============================================================================

@pytest.mark.unit
def test_copy_from_stdin_statement():
    sql = copy_from_stdin_statement('"app"."users"', ['__row_index', 'email'])
    assert sql == 'COPY "app"."users" ("__row_index", "email") FROM STDIN WITH (FORMAT text)'


@pytest.mark.unit
def test_copy_from_stdin_quotes_bare_table():
    assert copy_from_stdin_statement('tmp_staging_1', ['id'], quoted=False).startswith('COPY "tmp_staging_1" ("id")')


@pytest.mark.edge_case
def test_copy_requires_columns():
    with pytest.raises(ValueError):
        copy_from_stdin_statement('"t"', [])


@pytest.mark.unit
def test_defer_constraints():
    assert defer_constraints() == 'SET CONSTRAINTS ALL DEFERRED;'


@pytest.mark.unit
def test_simple_record_insert_excludes_identity(fresh_catalog):
    metadata = fresh_catalog.get_metadata(SimpleRecord)
    sql = merge_statement(
        metadata.table_name, 'tmp_staging_1', metadata.columns,
        [metadata.find_column('name')],
    )
    assert 'INSERT ("name", "value")' in sql
    assert 'UPDATE SET "value" = source."value"' in sql
