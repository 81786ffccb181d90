"""
=====================================
Entity metadata catalog.
=====================================

Modules:
    provider: SQLAlchemySchemaProvider reading declarative mappings
    metadata_catalog: MetadataCatalog and the process-wide default instance
"""

__all__ = ['MetadataCatalog', 'SQLAlchemySchemaProvider', 'catalog']

from bulkmerge.catalog.metadata_catalog import MetadataCatalog, catalog
from bulkmerge.catalog.provider import SQLAlchemySchemaProvider
