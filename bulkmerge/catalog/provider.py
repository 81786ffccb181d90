"""
=============================================
SQLAlchemy schema-model provider.
=============================================

Reads a declaratively mapped class (mapper, local table, columns,
composites and type decorators) and reports it as a TableMapping. The
provider reports facts only; exclusion and identity classification are
the metadata catalog's job.

Mapping rules:
    - Every column of the mapper's local table becomes one PropertyMapping
    - Columns with no mapped attribute are reported as shadow properties
    - Columns of a composite() attribute are reported as nested properties
      of that attribute (complex_parent)
    - Identity(), Sequence() and the table's autoincrement column are
      generated on insert; Computed() columns and server-side onupdate
      columns are generated after the save
    - A TypeDecorator with bind/result processing becomes a ValueConverter
    - Physical types are compiled against the PostgreSQL dialect

Example:
    >>> provider = SQLAlchemySchemaProvider()
    >>> mapping = provider.find_table_mapping(User)
    >>> [p.column_name for p in mapping.properties]
    ['id', 'email', 'name']
"""

import dataclasses
import inspect as pyinspect
from typing import Dict, List, Optional, Tuple

from sqlalchemy import Sequence, Table, TypeDecorator
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import NoInspectionAvailable
from sqlalchemy.orm import Mapper
from sqlalchemy.orm.exc import UnmappedColumnError
from sqlalchemy.sql.elements import ClauseElement

from bulkmerge.core.logger import get_logger
from bulkmerge.models.metadata import ValueConverter
from bulkmerge.models.schema import PropertyMapping, SchemaProvider, TableMapping, ValueGenerated

logger = get_logger(__name__)


def _python_type(sql_type) -> Optional[type]:
    try:
        return sql_type.python_type
    except NotImplementedError:
        return None


def _composite_field_names(composite_class: type, count: int) -> List[str]:
    """Attribute names of a composite class, in column order."""
    if dataclasses.is_dataclass(composite_class):
        names = [f.name for f in dataclasses.fields(composite_class)]
    else:
        parameters = list(pyinspect.signature(composite_class.__init__).parameters)
        names = parameters[1:]
    return names[:count]


def _type_converter(sql_type, dialect) -> Optional[ValueConverter]:
    """Build a ValueConverter from a TypeDecorator's bind/result hooks."""
    if not isinstance(sql_type, TypeDecorator):
        return None

    decorator_class = type(sql_type)
    has_bind = decorator_class.process_bind_param is not TypeDecorator.process_bind_param
    has_result = decorator_class.process_result_value is not TypeDecorator.process_result_value
    if not has_bind and not has_result:
        return None

    def to_provider(value):
        return sql_type.process_bind_param(value, dialect) if has_bind else value

    def from_provider(value):
        return sql_type.process_result_value(value, dialect) if has_result else value

    return ValueConverter(to_provider, from_provider, _python_type(sql_type.impl))


def _default_sql(column) -> Optional[str]:
    server_default = column.server_default
    if server_default is None:
        return None
    arg = getattr(server_default, 'arg', None)
    if arg is None:
        return None
    return str(getattr(arg, 'text', arg))


class SQLAlchemySchemaProvider(SchemaProvider):
    """Schema provider backed by SQLAlchemy declarative mappings."""

    def __init__(self, dialect=None):
        self.dialect = dialect if dialect is not None else postgresql.dialect()

    def find_table_mapping(
        self,
        record_type: type,
        session_type: Optional[type] = None
    ) -> Optional[TableMapping]:
        try:
            mapper = sa_inspect(record_type)
        except NoInspectionAvailable:
            return None

        if not isinstance(mapper, Mapper) or not isinstance(mapper.local_table, Table):
            return None

        table = mapper.local_table
        nested = self._composite_columns(mapper)
        properties = tuple(self._describe_column(mapper, table, column, nested) for column in table.columns)

        logger.debug(
            f"Read mapping of {record_type.__name__}: table={table.fullname}, "
            f"columns={len(properties)}"
        )
        return TableMapping(table.name, table.schema, properties)

    def _composite_columns(self, mapper: Mapper) -> Dict[object, Tuple[str, str]]:
        """Map each composite column to (composite attribute, field name)."""
        nested = {}
        for composite in mapper.composites:
            columns = [c for c in composite.columns if c.table is mapper.local_table]
            names = _composite_field_names(composite.composite_class, len(composite.columns))
            for column, field_name in zip(columns, names):
                nested[column] = (composite.key, field_name)
        return nested

    def _value_generation(self, table: Table, column) -> Tuple[ValueGenerated, Optional[str], bool]:
        """Return (strategy, default expression, has value generator) of a column."""
        if column.identity is not None:
            always = 'ALWAYS' if column.identity.always else 'BY DEFAULT'
            return ValueGenerated.ON_ADD, f"GENERATED {always} AS IDENTITY", True

        if isinstance(column.default, Sequence):
            return ValueGenerated.ON_ADD, f"nextval('{column.default.name}')", True

        default_sql = _default_sql(column)
        on_update = column.server_onupdate is not None or (
            column.onupdate is not None and isinstance(getattr(column.onupdate, 'arg', None), ClauseElement)
        )

        if table.autoincrement_column is column:
            return ValueGenerated.ON_ADD, default_sql or 'serial', False
        if on_update:
            strategy = ValueGenerated.ON_ADD_OR_UPDATE if default_sql else ValueGenerated.ON_UPDATE
            return strategy, default_sql, False
        if default_sql is not None:
            return ValueGenerated.ON_ADD, default_sql, False
        return ValueGenerated.NEVER, None, False

    def _describe_column(self, mapper: Mapper, table: Table, column, nested) -> PropertyMapping:
        is_shadow = False
        complex_parent = None

        if column in nested:
            complex_parent, name = nested[column]
        else:
            try:
                name = mapper.get_property_by_column(column).key
            except UnmappedColumnError:
                name = column.key
                is_shadow = True

        converter = _type_converter(column.type, self.dialect)
        python_type = _python_type(column.type)

        if column.computed is not None:
            value_generated = ValueGenerated.ON_ADD_OR_UPDATE
            default_sql, has_generator = None, False
            computed_sql = str(column.computed.sqltext)
        else:
            value_generated, default_sql, has_generator = self._value_generation(table, column)
            computed_sql = None

        return PropertyMapping(
            name=name,
            column_name=column.name,
            column_type=column.type.compile(dialect=self.dialect),
            python_type=python_type,
            is_primary_key=bool(column.primary_key),
            is_foreign_key=bool(column.foreign_keys),
            is_shadow=is_shadow,
            value_generated=value_generated,
            default_sql=default_sql,
            has_value_generator=has_generator,
            computed_sql=computed_sql,
            converter=converter,
            complex_parent=complex_parent,
        )
