"""
=====================================
Data model for bulk operations.
=====================================

Immutable metadata types shared by the catalog, the streaming source,
the SQL builders and the orchestrator, plus the schema-provider contract
the catalog consumes.

Modules:
    metadata: ColumnDescriptor, EntityMetadata, ValueConverter, DB_NULL
    schema: SchemaProvider, TableMapping, PropertyMapping, ValueGenerated
"""

__all__ = [
    'DB_NULL', 'ColumnDescriptor', 'EntityMetadata', 'ValueConverter',
    'PropertyMapping', 'SchemaProvider', 'TableMapping', 'ValueGenerated',
]

from bulkmerge.models.metadata import DB_NULL, ColumnDescriptor, EntityMetadata, ValueConverter
from bulkmerge.models.schema import PropertyMapping, SchemaProvider, TableMapping, ValueGenerated
