"""
=========================================
Metadata catalog with per-type caching.
=========================================

Builds EntityMetadata for a record type once per (record type, session
type) pair and caches it for the life of the process. Building asks the
schema provider for the table mapping, then applies the exclusion rules
in order:

    1. Shadow properties (no attribute on the record) are dropped unless
       they are foreign keys
    2. Computed columns are dropped
    3. Columns generated by the database after an update are dropped
    4. A column generated on insert is an identity column when its default
       names an identity/sequence/serial generator, when it has an explicit
       value generator, or when it is an integer primary key

Concurrent first requests for the same key may both build; the builder
is pure, so the first result stored wins and the other is discarded.

Classes:
    MetadataCatalog: Cache of EntityMetadata keyed by (record type, session type)

Module attributes:
    catalog: Process-wide default catalog using the SQLAlchemy provider

Example:
    >>> from bulkmerge.catalog.metadata_catalog import catalog
    >>>
    >>> metadata = catalog.get_metadata(User, Session)
    >>> [c.column_name for c in catalog.get_identity_columns(User, Session)]
    ['id']
"""

from operator import attrgetter
from typing import Any, Callable, Dict, Optional, Tuple

from bulkmerge.catalog.provider import SQLAlchemySchemaProvider
from bulkmerge.core.exceptions import ArgumentError, SchemaError
from bulkmerge.core.logger import get_logger
from bulkmerge.models.metadata import ColumnDescriptor, EntityMetadata
from bulkmerge.models.schema import PropertyMapping, SchemaProvider, ValueGenerated
from bulkmerge.sql.identifiers import qualify_table

logger = get_logger(__name__)

# Substrings of a default expression that name an engine-side generator
IDENTITY_DEFAULT_MARKERS = ('identity', 'nextval', 'serial')

_AFTER_SAVE = (ValueGenerated.ON_UPDATE, ValueGenerated.ON_ADD_OR_UPDATE)


def _is_identity(prop: PropertyMapping) -> bool:
    if prop.value_generated is not ValueGenerated.ON_ADD:
        return False

    default_sql = (prop.default_sql or '').lower()
    if any(marker in default_sql for marker in IDENTITY_DEFAULT_MARKERS):
        return True
    if prop.has_value_generator:
        return True
    return prop.is_primary_key and prop.python_type is int


def _compile_accessors(prop: PropertyMapping) -> Tuple[Callable[[Any], Any], Callable[[Any, Any], None]]:
    """Build (getter, setter) for a property, resolving at most one nesting level."""
    if prop.is_shadow:
        column_name = prop.column_name

        def get_shadow(record):
            return getattr(record, column_name, None)

        def set_shadow(record, value):
            setattr(record, column_name, value)

        return get_shadow, set_shadow

    name = prop.name

    if prop.complex_parent is None:
        def set_value(record, value):
            setattr(record, name, value)

        return attrgetter(name), set_value

    parent = prop.complex_parent

    def get_nested(record):
        owner = getattr(record, parent)
        if owner is None:
            return None
        return getattr(owner, name)

    def set_nested(record, value):
        owner = getattr(record, parent)
        if owner is not None:
            setattr(owner, name, value)

    return get_nested, set_nested


class MetadataCatalog:
    """Builds and caches EntityMetadata per (record type, session type)."""

    def __init__(self, provider: Optional[SchemaProvider] = None):
        self.provider = provider if provider is not None else SQLAlchemySchemaProvider()
        self._cache: Dict[Tuple[type, Optional[type]], EntityMetadata] = {}

    def __len__(self):
        return len(self._cache)

    def __contains__(self, key):
        return key in self._cache

    def get_metadata(self, record_type: type, session_type: Optional[type] = None) -> EntityMetadata:
        """
        Return the metadata of a record type, building it on first use.

        Args:
            record_type: Mapped record class
            session_type: Type of the bind the operation runs on

        Returns:
            Cached EntityMetadata

        Raises:
            ArgumentError: If record_type is None
            SchemaError: If the type is unmapped or has no insertable column
        """
        if record_type is None:
            raise ArgumentError("record_type is required.")

        key = (record_type, session_type)
        metadata = self._cache.get(key)
        if metadata is None:
            # setdefault keeps the first stored build if two threads race
            metadata = self._cache.setdefault(key, self._build(record_type, session_type))
        return metadata

    def get_columns(
        self,
        record_type: type,
        session_type: Optional[type] = None,
        include_identity: bool = True
    ) -> Tuple[ColumnDescriptor, ...]:
        metadata = self.get_metadata(record_type, session_type)
        return metadata.columns if include_identity else metadata.non_identity_columns

    def get_primary_key_columns(
        self,
        record_type: type,
        session_type: Optional[type] = None
    ) -> Tuple[ColumnDescriptor, ...]:
        return self.get_metadata(record_type, session_type).primary_key_columns

    def get_identity_columns(
        self,
        record_type: type,
        session_type: Optional[type] = None
    ) -> Tuple[ColumnDescriptor, ...]:
        return self.get_metadata(record_type, session_type).identity_columns

    def clear_cache(self) -> None:
        """Drop every cached entry; the next request rebuilds it."""
        self._cache.clear()
        logger.debug("Metadata cache cleared")

    def _build(self, record_type: type, session_type: Optional[type]) -> EntityMetadata:
        type_name = getattr(record_type, '__name__', repr(record_type))
        mapping = self.provider.find_table_mapping(record_type, session_type)
        if mapping is None:
            raise SchemaError(f"Record type '{type_name}' is not mapped to a table")

        descriptors = []
        for prop in mapping.properties:
            if prop.is_shadow and not prop.is_foreign_key:
                continue
            if prop.computed_sql is not None:
                continue
            if prop.value_generated in _AFTER_SAVE:
                continue

            getter, setter = _compile_accessors(prop)
            property_name = prop.name if prop.complex_parent is None else f"{prop.complex_parent}_{prop.name}"
            converter = prop.converter

            descriptors.append(ColumnDescriptor(
                property_name=property_name,
                column_name=prop.column_name,
                python_type=prop.python_type,
                physical_type=prop.column_type,
                getter=getter,
                setter=setter,
                is_identity=_is_identity(prop),
                is_primary_key=prop.is_primary_key,
                converter=converter,
                provider_type=converter.provider_type if converter is not None else prop.python_type,
            ))

        if not any(not d.is_identity for d in descriptors):
            raise SchemaError(
                f"Record type '{type_name}' has no insertable columns "
                f"(every mapped column is excluded or generated by the database)"
            )

        metadata = EntityMetadata(
            record_type=record_type,
            table_name=qualify_table(mapping.table_name, mapping.schema),
            columns=tuple(descriptors),
            property_to_column={d.property_name: d.column_name for d in descriptors},
            column_converters={d.column_name: d.converter for d in descriptors if d.converter is not None},
        )

        logger.debug(
            f"Built metadata for {type_name}: table={metadata.table_name}, "
            f"columns={len(descriptors)}, identity={[c.column_name for c in metadata.identity_columns]}"
        )
        return metadata


# Process-wide default catalog
catalog = MetadataCatalog()
