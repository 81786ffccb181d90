"""
==========================================================
Column and entity metadata used by every bulk operation.
==========================================================

Immutable descriptors produced by the metadata catalog. A ColumnDescriptor
binds one mapped attribute of a record type to its physical column; an
EntityMetadata groups the descriptors of one record type together with
the derived subsets (non-identity, primary key, identity) and lookup maps.

Classes:
    ValueConverter: Bidirectional model <-> storage value conversion
    ColumnDescriptor: One mapped field of a record type
    EntityMetadata: All mapped fields of a record type plus table name

Constants:
    DB_NULL: Marker returned by the row streaming source for absent values

Example:
    >>> metadata = catalog.get_metadata(User)
    >>> [c.column_name for c in metadata.primary_key_columns]
    ['id']
    >>> metadata.find_column('Email').column_name
    'email'
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple


class _DBNull:
    """Singleton marker for a NULL cell value."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return 'DB_NULL'

    def __bool__(self):
        return False

    def __reduce__(self):
        return (_DBNull, ())


DB_NULL = _DBNull()


@dataclass(frozen=True)
class ValueConverter:
    """Converts values between the model representation and storage.

    The catalog only records converters; callers of the compiled getters
    and setters apply them (to_provider when writing rows, from_provider
    when reading generated values back).

    Attributes:
        to_provider: Callable converting a model value to its stored value
        from_provider: Callable converting a stored value to its model value
        provider_type: Python type of the stored value, if known
    """

    to_provider: Callable[[Any], Any]
    from_provider: Callable[[Any], Any]
    provider_type: Optional[type] = None

    def convert_to_provider(self, value: Any) -> Any:
        """Convert a model value for storage; None passes through unchanged."""
        if value is None:
            return None
        return self.to_provider(value)

    def convert_from_provider(self, value: Any) -> Any:
        """Convert a stored value back to the model; None passes through unchanged."""
        if value is None:
            return None
        return self.from_provider(value)


@dataclass(frozen=True, eq=False)
class ColumnDescriptor:
    """One mapped field of a record type.

    Descriptors compare by identity: two descriptors are the same column
    only when they came from the same EntityMetadata instance.

    Attributes:
        property_name: Logical name (nested fields use '<parent>_<field>')
        column_name: Physical column name
        python_type: Declared model-side value type, if known
        physical_type: SQL type written to the database (e.g. 'VARCHAR(200)')
        getter: Compiled accessor returning the raw model value of a record
        setter: Compiled mutator assigning a raw model value to a record
        is_identity: Database generates the value on insert
        is_primary_key: Column is part of the table's primary key
        converter: Optional ValueConverter applied by getter/setter callers
        provider_type: Python type of the stored value
    """

    property_name: str
    column_name: str
    python_type: Optional[type]
    physical_type: str
    getter: Callable[[Any], Any] = field(repr=False)
    setter: Callable[[Any, Any], None] = field(repr=False)
    is_identity: bool = False
    is_primary_key: bool = False
    converter: Optional[ValueConverter] = field(default=None, repr=False)
    provider_type: Optional[type] = None

    @property
    def has_converter(self) -> bool:
        """True when values must pass through a converter."""
        return self.converter is not None

    def read(self, record: Any) -> Any:
        """Return the storage value of this column for a record."""
        value = self.getter(record)
        if self.converter is not None:
            return self.converter.convert_to_provider(value)
        return value

    def write(self, record: Any, stored_value: Any) -> None:
        """Assign a value read from storage to a record, converting it first."""
        if self.converter is not None:
            stored_value = self.converter.convert_from_provider(stored_value)
        self.setter(record, stored_value)


@dataclass(frozen=True, eq=False)
class EntityMetadata:
    """Metadata for one record type, built once and cached.

    Attributes:
        record_type: The mapped Python class
        table_name: Fully-qualified, quoted table name
        columns: All descriptors, identity columns included, in mapping order
        property_to_column: Logical property name -> column name
        column_converters: Column name -> ValueConverter for converted columns
    """

    record_type: type
    table_name: str
    columns: Tuple[ColumnDescriptor, ...]
    property_to_column: Mapping[str, str] = field(default_factory=dict)
    column_converters: Mapping[str, ValueConverter] = field(default_factory=dict)
    _by_name: Dict[str, ColumnDescriptor] = field(init=False, repr=False)

    def __post_init__(self):
        by_name: Dict[str, ColumnDescriptor] = {}
        for column in self.columns:
            by_name.setdefault(column.column_name.lower(), column)
        # Property names win over column names when they collide
        for column in self.columns:
            by_name[column.property_name.lower()] = column
        object.__setattr__(self, '_by_name', by_name)

    @property
    def record_type_name(self) -> str:
        return self.record_type.__name__

    @property
    def non_identity_columns(self) -> Tuple[ColumnDescriptor, ...]:
        return tuple(c for c in self.columns if not c.is_identity)

    @property
    def primary_key_columns(self) -> Tuple[ColumnDescriptor, ...]:
        return tuple(c for c in self.columns if c.is_primary_key)

    @property
    def identity_columns(self) -> Tuple[ColumnDescriptor, ...]:
        return tuple(c for c in self.columns if c.is_identity)

    @property
    def has_identity(self) -> bool:
        return any(c.is_identity for c in self.columns)

    def find_column(self, name: str) -> Optional[ColumnDescriptor]:
        """Look up a descriptor by property or column name (case-insensitive).

        Args:
            name: Logical property name or physical column name

        Returns:
            Matching ColumnDescriptor, or None if the name is not mapped
        """
        return self._by_name.get(name.lower())

    def owns(self, descriptor: ColumnDescriptor) -> bool:
        """True if the descriptor instance belongs to this metadata."""
        return any(column is descriptor for column in self.columns)
