"""
=============================================================
Comprehensive pytest suite for catalog/metadata_catalog.py
=============================================================

Sections:
---------
1. Unit tests - Exclusion and identity rules over real mappings
2. Unit tests - Rules over hand-built provider mappings
3. Unit tests - Accessors and converters
4. Unit tests - Caching
5. Edge case tests - Unmappable record types

Available markers:
------------------
unit, edge_case, smoke
"""

import pytest

from bulkmerge.catalog.metadata_catalog import MetadataCatalog
from bulkmerge.core.exceptions import ArgumentError, SchemaError
from bulkmerge.models.schema import PropertyMapping, SchemaProvider, TableMapping, ValueGenerated
from record_models import (
    CompositeKeyRecord,
    EventRecord,
    MetricRecord,
    NotMapped,
    OnlyIdentityRecord,
    OrderLine,
    PlacedRecord,
    Point,
    RecordWithComputedColumn,
    RecordWithoutIdentity,
    SimpleRecord,
    TaggedRecord,
    UserRecord,
)


def _names(columns):
    return [c.column_name for c in columns]


class FakeProvider(SchemaProvider):
    """Provider returning a fixed mapping and recording calls."""

    def __init__(self, properties, schema=None):
        self.properties = tuple(properties)
        self.schema = schema
        self.calls = []

    def find_table_mapping(self, record_type, session_type=None):
        self.calls.append((record_type, session_type))
        return TableMapping('things', self.schema, self.properties)


class Thing:
    pass


# ============================================================================
# UNIT TESTS - Real mappings
# ============================================================================

@pytest.mark.smoke
def test_simple_record_metadata(fresh_catalog):
    metadata = fresh_catalog.get_metadata(SimpleRecord)

    assert metadata.record_type is SimpleRecord
    assert metadata.record_type_name == 'SimpleRecord'
    assert metadata.table_name == '"simple_records"'
    assert _names(metadata.columns) == ['id', 'name', 'value']
    assert _names(metadata.identity_columns) == ['id']
    assert _names(metadata.non_identity_columns) == ['name', 'value']
    assert _names(metadata.primary_key_columns) == ['id']
    assert metadata.has_identity is True


@pytest.mark.unit
def test_schema_qualified_table_and_identity(fresh_catalog):
    metadata = fresh_catalog.get_metadata(UserRecord)

    assert metadata.table_name == '"app"."users"'
    assert _names(metadata.identity_columns) == ['id']
    # A server default that is not a generator keeps the column writable
    assert 'created_at' in _names(metadata.non_identity_columns)


@pytest.mark.unit
def test_composite_key_has_no_identity(fresh_catalog):
    metadata = fresh_catalog.get_metadata(CompositeKeyRecord)

    assert metadata.identity_columns == ()
    assert _names(metadata.primary_key_columns) == ['tenant_id', 'code']


@pytest.mark.unit
def test_string_primary_key_is_not_identity(fresh_catalog):
    metadata = fresh_catalog.get_metadata(RecordWithoutIdentity)
    assert metadata.has_identity is False


@pytest.mark.unit
def test_computed_column_excluded(fresh_catalog):
    metadata = fresh_catalog.get_metadata(RecordWithComputedColumn)
    assert _names(metadata.columns) == ['id', 'price', 'quantity']


@pytest.mark.unit
def test_onupdate_column_excluded(fresh_catalog):
    metadata = fresh_catalog.get_metadata(MetricRecord)
    assert _names(metadata.columns) == ['id', 'account_id', 'metric_name', 'amount']


@pytest.mark.unit
def test_shadow_foreign_key_kept_and_plain_shadow_dropped(fresh_catalog):
    metadata = fresh_catalog.get_metadata(OrderLine)
    assert _names(metadata.columns) == ['id', 'customer_id', 'sku']

    line = OrderLine(id=1, sku='A-1')
    customer = metadata.find_column('customer_id')
    assert customer.read(line) is None

    customer.write(line, 42)
    assert customer.read(line) == 42


@pytest.mark.unit
def test_table_without_primary_key_constraint(fresh_catalog):
    metadata = fresh_catalog.get_metadata(EventRecord)

    assert metadata.primary_key_columns == ()
    assert metadata.identity_columns == ()
    assert _names(metadata.columns) == ['event_name', 'payload']


@pytest.mark.unit
def test_composite_attribute_is_flattened(fresh_catalog):
    metadata = fresh_catalog.get_metadata(PlacedRecord)
    pos_x = metadata.find_column('position_x')

    assert pos_x.column_name == 'pos_x'
    assert metadata.find_column('pos_x') is pos_x
    assert metadata.property_to_column['position_y'] == 'pos_y'

    record = PlacedRecord(id=1, label='dock', position=Point(3, 4))
    assert pos_x.read(record) == 3
    assert metadata.find_column('position_y').read(record) == 4


@pytest.mark.unit
def test_converter_applied_by_read_and_write(fresh_catalog):
    metadata = fresh_catalog.get_metadata(TaggedRecord)
    tags = metadata.find_column('tags')

    assert tags.has_converter
    assert 'tags' in metadata.column_converters

    record = TaggedRecord(id=1, tags=['red', 'blue'])
    assert tags.read(record) == 'red,blue'

    tags.write(record, 'green,gold')
    assert record.tags == ['green', 'gold']


@pytest.mark.unit
def test_find_column_is_case_insensitive(fresh_catalog):
    metadata = fresh_catalog.get_metadata(UserRecord)

    assert metadata.find_column('EMAIL') is metadata.find_column('email')
    assert metadata.find_column('missing') is None


@pytest.mark.unit
def test_descriptors_belong_to_one_metadata(fresh_catalog):
    other_catalog = MetadataCatalog()
    mine = fresh_catalog.get_metadata(SimpleRecord)
    theirs = other_catalog.get_metadata(SimpleRecord)

    assert mine.owns(mine.columns[0])
    assert not mine.owns(theirs.columns[0])


# ============================================================================
# UNIT TESTS - Rules over provider mappings
# ============================================================================

@pytest.mark.unit
def test_identity_rules():
    provider = FakeProvider([
        PropertyMapping('seq_id', 'seq_id', 'BIGINT', int,
                        value_generated=ValueGenerated.ON_ADD, default_sql="nextval('things_seq')"),
        PropertyMapping('generated', 'generated', 'UUID',
                        value_generated=ValueGenerated.ON_ADD, has_value_generator=True),
        PropertyMapping('key', 'key', 'INTEGER', int, is_primary_key=True,
                        value_generated=ValueGenerated.ON_ADD),
        PropertyMapping('stamp', 'stamp', 'TIMESTAMP', value_generated=ValueGenerated.ON_ADD,
                        default_sql='now()'),
        PropertyMapping('code', 'code', 'TEXT', str, is_primary_key=True,
                        value_generated=ValueGenerated.ON_ADD, default_sql="'x'"),
        PropertyMapping('label', 'label', 'TEXT', str),
    ])
    metadata = MetadataCatalog(provider).get_metadata(Thing)

    assert _names(metadata.identity_columns) == ['seq_id', 'generated', 'key']
    assert _names(metadata.non_identity_columns) == ['stamp', 'code', 'label']


@pytest.mark.unit
def test_exclusion_rules():
    provider = FakeProvider([
        PropertyMapping('label', 'label', 'TEXT', str),
        PropertyMapping('owner_id', 'owner_id', 'INTEGER', int, is_shadow=True, is_foreign_key=True),
        PropertyMapping('audit', 'audit', 'TEXT', str, is_shadow=True),
        PropertyMapping('total', 'total', 'NUMERIC', computed_sql='a + b',
                        value_generated=ValueGenerated.ON_ADD_OR_UPDATE),
        PropertyMapping('touched', 'touched', 'TIMESTAMP', value_generated=ValueGenerated.ON_UPDATE),
    ], schema='inventory')
    metadata = MetadataCatalog(provider).get_metadata(Thing)

    assert _names(metadata.columns) == ['label', 'owner_id']
    assert metadata.table_name == '"inventory"."things"'


@pytest.mark.unit
def test_session_type_forwarded_to_provider():
    provider = FakeProvider([PropertyMapping('label', 'label', 'TEXT', str)])
    catalog = MetadataCatalog(provider)

    catalog.get_metadata(Thing, dict)
    assert provider.calls == [(Thing, dict)]


# ============================================================================
# UNIT TESTS - Caching
# ============================================================================

@pytest.mark.unit
def test_metadata_is_cached_per_type_and_session():
    provider = FakeProvider([PropertyMapping('label', 'label', 'TEXT', str)])
    catalog = MetadataCatalog(provider)

    first = catalog.get_metadata(Thing)
    second = catalog.get_metadata(Thing)
    other_session = catalog.get_metadata(Thing, list)

    assert first is second
    assert other_session is not first
    assert len(provider.calls) == 2
    assert len(catalog) == 2
    assert (Thing, None) in catalog


@pytest.mark.unit
def test_clear_cache_rebuilds():
    provider = FakeProvider([PropertyMapping('label', 'label', 'TEXT', str)])
    catalog = MetadataCatalog(provider)

    first = catalog.get_metadata(Thing)
    catalog.clear_cache()

    assert len(catalog) == 0
    assert catalog.get_metadata(Thing) is not first


@pytest.mark.unit
def test_column_helpers(fresh_catalog):
    assert _names(fresh_catalog.get_columns(SimpleRecord)) == ['id', 'name', 'value']
    assert _names(fresh_catalog.get_columns(SimpleRecord, include_identity=False)) == ['name', 'value']
    assert _names(fresh_catalog.get_primary_key_columns(SimpleRecord)) == ['id']
    assert _names(fresh_catalog.get_identity_columns(SimpleRecord)) == ['id']


@pytest.mark.unit
def test_default_catalog_importable_from_module():
    from bulkmerge.catalog.metadata_catalog import catalog

    assert isinstance(catalog, MetadataCatalog)
    assert _names(catalog.get_identity_columns(SimpleRecord)) == ['id']


# ============================================================================
# EDGE CASE TESTS
# ============================================================================

@pytest.mark.edge_case
def test_unmapped_type_raises_schema_error(fresh_catalog):
    with pytest.raises(SchemaError, match="NotMapped"):
        fresh_catalog.get_metadata(NotMapped)


@pytest.mark.edge_case
def test_type_with_only_identity_raises_schema_error(fresh_catalog):
    with pytest.raises(SchemaError, match="no insertable columns"):
        fresh_catalog.get_metadata(OnlyIdentityRecord)


@pytest.mark.edge_case
def test_none_record_type_rejected(fresh_catalog):
    with pytest.raises(ArgumentError):
        fresh_catalog.get_metadata(None)


@pytest.mark.edge_case
def test_failed_build_is_not_cached(fresh_catalog):
    with pytest.raises(SchemaError):
        fresh_catalog.get_metadata(NotMapped)
    assert len(fresh_catalog) == 0
