"""
==========================================
Schema-model provider contract.
==========================================

The metadata catalog never inspects an ORM directly; it asks a
SchemaProvider for a TableMapping describing the record type and then
applies its own exclusion and identity rules. The default provider reads
SQLAlchemy mappings (see bulkmerge.catalog.provider), but any object
implementing find_table_mapping() can be plugged in.

Classes:
    ValueGenerated: Generation strategy of a column
    PropertyMapping: One mapped property as reported by the provider
    TableMapping: Table name, schema and properties of a record type
    SchemaProvider: Abstract provider interface
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from bulkmerge.models.metadata import ValueConverter


class ValueGenerated(str, Enum):
    """When the database assigns a column's value."""

    NEVER = 'never'
    ON_ADD = 'on_add'
    ON_UPDATE = 'on_update'
    ON_ADD_OR_UPDATE = 'on_add_or_update'


@dataclass(frozen=True)
class PropertyMapping:
    """A mapped property of a record type.

    Attributes:
        name: Attribute name on the record (or on its embedded sub-object)
        column_name: Physical column name
        column_type: Physical SQL type of the column
        python_type: Declared model-side type, if known
        is_primary_key: Column is part of the table's primary key
        is_foreign_key: Column references another table
        is_shadow: Column has no attribute on the record class
        value_generated: Generation strategy reported by the model
        default_sql: Server-side default expression, if any
        has_value_generator: An explicit value generator (identity, sequence) is attached
        computed_sql: Expression of a computed column, if any
        converter: Optional value converter
        complex_parent: Attribute holding the embedded object this property lives on
    """

    name: str
    column_name: str
    column_type: str
    python_type: Optional[type] = None
    is_primary_key: bool = False
    is_foreign_key: bool = False
    is_shadow: bool = False
    value_generated: ValueGenerated = ValueGenerated.NEVER
    default_sql: Optional[str] = None
    has_value_generator: bool = False
    computed_sql: Optional[str] = None
    converter: Optional[ValueConverter] = None
    complex_parent: Optional[str] = None


@dataclass(frozen=True)
class TableMapping:
    """Mapping of a record type onto a table."""

    table_name: str
    schema: Optional[str]
    properties: Tuple[PropertyMapping, ...]


class SchemaProvider(ABC):
    """Source of entity-to-table mappings."""

    @abstractmethod
    def find_table_mapping(
        self,
        record_type: type,
        session_type: Optional[type] = None
    ) -> Optional[TableMapping]:
        """Return the mapping of a record type, or None if it is not mapped.

        Args:
            record_type: The record class
            session_type: Type of the bind the operation runs on; providers
                whose mappings depend on the session may use it
        """
