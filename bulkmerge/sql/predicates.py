"""
==============================================
Delete-scope predicate language and translator.
==============================================

A delete scope is a small, closed boolean expression tree:

    Comparison  - ColumnRef/ParamRef <op> ColumnRef/ParamRef
    And / Or    - conjunction / disjunction of two predicates
    ColumnRef   - a mapped property of the target row
    ParamRef    - a constant or a captured value, always bound as a parameter

Trees are built with column(), param() and captured() plus Python's
comparison operators and & / |, or converted from SQLAlchemy boolean
expressions over the record's mapped columns. Anything outside the closed
set is rejected with UnsupportedPredicateError; nothing is approximated.

Functions:
    column: Reference a mapped property of the target row
    param: Bind a constant value
    captured: Bind a value produced by a callable at translation time
    from_sqlalchemy: Convert a SQLAlchemy boolean expression into the tree
    translate: Render a predicate to a parameterized SQL fragment

Example:
    >>> from bulkmerge.sql.predicates import column, translate
    >>>
    >>> scope = (column('account_id') == 42) & (column('amount') == None)
    >>> result = translate(scope, metadata)
    >>> result.sql
    '(target."account_id" = :p0 AND target."amount" IS NULL)'
    >>> result.bind_params
    {'p0': 42}
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.sql import operators
from sqlalchemy.sql.elements import (
    BinaryExpression,
    BindParameter,
    BooleanClauseList,
    ColumnClause,
    False_,
    Grouping,
    Null,
    True_,
)

from bulkmerge.core.exceptions import ArgumentError, SchemaError, UnsupportedPredicateError
from bulkmerge.models.metadata import EntityMetadata
from bulkmerge.sql.identifiers import qualify_table, quote_identifier

# Comparison operators accepted by the tree, in their SQL spelling
EQ, NE, LT, LE, GT, GE = '=', '<>', '<', '<=', '>', '>='
COMPARISON_OPERATORS = (EQ, NE, LT, LE, GT, GE)

PARAMETER_PREFIX = 'p'


class _Unscoped:
    """Marker requesting deletion of every unmatched target row."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return 'UNSCOPED'

    def __reduce__(self):
        return (_Unscoped, ())


UNSCOPED = _Unscoped()


class PredicateNode:
    """Base class of all predicate tree nodes."""

    __slots__ = ()

    def __and__(self, other):
        if not isinstance(other, PredicateNode):
            return NotImplemented
        return And(self, other)

    def __or__(self, other):
        if not isinstance(other, PredicateNode):
            return NotImplemented
        return Or(self, other)

    def __bool__(self):
        raise TypeError(
            "Predicate nodes have no truth value; combine them with & and | "
            "instead of 'and' / 'or'"
        )


def _operand(value: Any) -> PredicateNode:
    if isinstance(value, (ColumnRef, ParamRef)):
        return value
    if isinstance(value, PredicateNode):
        raise UnsupportedPredicateError(type(value).__name__, "boolean expression used as a comparison operand")
    return ParamRef(value=value)


class _Comparable(PredicateNode):
    """Operands that build Comparison nodes through Python operators."""

    __slots__ = ()

    def __eq__(self, other):
        return Comparison(EQ, self, _operand(other))

    def __ne__(self, other):
        return Comparison(NE, self, _operand(other))

    def __lt__(self, other):
        return Comparison(LT, self, _operand(other))

    def __le__(self, other):
        return Comparison(LE, self, _operand(other))

    def __gt__(self, other):
        return Comparison(GT, self, _operand(other))

    def __ge__(self, other):
        return Comparison(GE, self, _operand(other))

    __hash__ = object.__hash__


@dataclass(frozen=True, eq=False)
class ColumnRef(_Comparable):
    """Reference to a mapped property (or column) of the target row."""

    name: str


@dataclass(frozen=True, eq=False)
class ParamRef(_Comparable):
    """A bound value: either a constant or a resolver called at translation time."""

    value: Any = None
    resolver: Optional[Callable[[], Any]] = None

    def resolve(self) -> Any:
        if self.resolver is not None:
            return self.resolver()
        return self.value


@dataclass(frozen=True, eq=False)
class Comparison(PredicateNode):
    """Binary comparison between two operands."""

    operator: str
    left: PredicateNode
    right: PredicateNode

    def __post_init__(self):
        op = NE if self.operator == '!=' else self.operator
        if op not in COMPARISON_OPERATORS:
            raise UnsupportedPredicateError('Comparison', f"operator {self.operator!r}")
        object.__setattr__(self, 'operator', op)


@dataclass(frozen=True, eq=False)
class And(PredicateNode):
    left: PredicateNode
    right: PredicateNode


@dataclass(frozen=True, eq=False)
class Or(PredicateNode):
    left: PredicateNode
    right: PredicateNode


def column(name: str) -> ColumnRef:
    """Reference a mapped property or column of the target row by name."""
    return ColumnRef(name)


def param(value: Any) -> ParamRef:
    """Bind a constant value."""
    return ParamRef(value=value)


def captured(resolver: Callable[[], Any]) -> ParamRef:
    """Bind the value a callable returns when the predicate is translated.

    Example:
        >>> region = 'EU'
        >>> scope = column('region') == captured(lambda: region)
    """
    if not callable(resolver):
        raise TypeError("captured() expects a zero-argument callable")
    return ParamRef(resolver=resolver)


@dataclass(frozen=True)
class TranslatedPredicate:
    """SQL fragment over target.* plus its positional parameter values."""

    sql: str
    parameters: Tuple[Any, ...] = ()

    @property
    def bind_params(self) -> Dict[str, Any]:
        """Parameters keyed by placeholder name (p0, p1, ...)."""
        return {f"{PARAMETER_PREFIX}{index}": value for index, value in enumerate(self.parameters)}


# ============================================================================
# SQLALCHEMY EXPRESSION ADAPTER
# ============================================================================

_SQLALCHEMY_OPERATORS = {
    operators.eq: EQ,
    operators.ne: NE,
    operators.lt: LT,
    operators.le: LE,
    operators.gt: GT,
    operators.ge: GE,
    operators.is_: EQ,
    operators.is_not: NE,
}


def _operator_name(op: Any) -> str:
    return getattr(op, '__name__', repr(op))


def _check_table(element: ColumnClause, table_name: Optional[str]) -> None:
    """Reject a column bound to a table other than the target."""
    table = element.table
    if table_name is None or table is None:
        return
    owner = qualify_table(table.name, getattr(table, 'schema', None))
    if owner != table_name:
        raise ArgumentError(
            f"Delete scope column '{element.name}' belongs to {owner}, "
            f"not to the target table {table_name}"
        )


def _convert_operand(element: Any, table_name: Optional[str] = None) -> PredicateNode:
    if isinstance(element, Grouping):
        return _convert_operand(element.element, table_name)
    if isinstance(element, ColumnClause):
        _check_table(element, table_name)
        return ColumnRef(element.name)
    if isinstance(element, Null):
        return ParamRef(value=None)
    if isinstance(element, True_):
        return ParamRef(value=True)
    if isinstance(element, False_):
        return ParamRef(value=False)
    if isinstance(element, BindParameter):
        return ParamRef(value=element.effective_value)
    raise UnsupportedPredicateError(type(element).__name__)


def from_sqlalchemy(expression: Any, table_name: Optional[str] = None) -> PredicateNode:
    """Convert a SQLAlchemy boolean expression into a predicate tree.

    Supports comparisons (==, !=, <, <=, >, >=, IS, IS NOT) between mapped
    columns, bound values, true(), false() and NULL, combined with and_/or_
    (or & and |).

    Args:
        expression: SQLAlchemy boolean expression
        table_name: Quoted, qualified target table; when given, columns bound
            to any other table are rejected

    Raises:
        UnsupportedPredicateError: For any other construct (functions,
            casts, IN, LIKE, NOT, standalone literal booleans, ...)
        ArgumentError: If a column belongs to a table other than table_name
    """
    if hasattr(expression, '__clause_element__'):
        expression = expression.__clause_element__()

    if isinstance(expression, Grouping):
        return from_sqlalchemy(expression.element, table_name)

    if isinstance(expression, BooleanClauseList):
        if expression.operator is operators.and_:
            combine = And
        elif expression.operator is operators.or_:
            combine = Or
        else:
            raise UnsupportedPredicateError('BooleanClauseList', _operator_name(expression.operator))

        clauses = [from_sqlalchemy(clause, table_name) for clause in expression.clauses]
        if not clauses:
            raise UnsupportedPredicateError('BooleanClauseList', 'empty clause list')
        node = clauses[0]
        for clause in clauses[1:]:
            node = combine(node, clause)
        return node

    if isinstance(expression, BinaryExpression):
        op = _SQLALCHEMY_OPERATORS.get(expression.operator)
        if op is None:
            raise UnsupportedPredicateError('BinaryExpression', _operator_name(expression.operator))
        return Comparison(
            op,
            _convert_operand(expression.left, table_name),
            _convert_operand(expression.right, table_name),
        )

    raise UnsupportedPredicateError(type(expression).__name__)


# ============================================================================
# TRANSLATION
# ============================================================================

class _Translator:
    """Single-use renderer collecting parameters in visit order."""

    def __init__(self, metadata: EntityMetadata):
        self.metadata = metadata
        self.parameters: List[Any] = []

    def bind(self, value: Any) -> str:
        name = f"{PARAMETER_PREFIX}{len(self.parameters)}"
        self.parameters.append(value)
        return f":{name}"

    def column(self, ref: ColumnRef) -> str:
        descriptor = self.metadata.find_column(ref.name)
        if descriptor is None:
            raise SchemaError(
                f"Delete scope references '{ref.name}', which is not a mapped "
                f"column of {self.metadata.record_type_name}"
            )
        return f"target.{quote_identifier(descriptor.column_name)}"

    def operand(self, node: PredicateNode, value: Any) -> str:
        if isinstance(node, ColumnRef):
            return self.column(node)
        return self.bind(value)

    def comparison(self, node: Comparison) -> str:
        for side in (node.left, node.right):
            if not isinstance(side, (ColumnRef, ParamRef)):
                raise UnsupportedPredicateError(
                    type(side).__name__, "comparison operands must be columns or values"
                )

        # Each ParamRef is resolved exactly once, left to right
        left_value = node.left.resolve() if isinstance(node.left, ParamRef) else None
        right_value = node.right.resolve() if isinstance(node.right, ParamRef) else None
        left_null = isinstance(node.left, ParamRef) and left_value is None
        right_null = isinstance(node.right, ParamRef) and right_value is None

        if left_null or right_null:
            if node.operator not in (EQ, NE):
                raise UnsupportedPredicateError('Comparison', f"ordering comparison '{node.operator}' against NULL")
            if left_null and right_null:
                raise UnsupportedPredicateError('Comparison', "both operands are NULL")
            keyword = "IS NULL" if node.operator == EQ else "IS NOT NULL"
            if right_null:
                return f"{self.operand(node.left, left_value)} {keyword}"
            return f"{self.operand(node.right, right_value)} {keyword}"

        left = self.operand(node.left, left_value)
        right = self.operand(node.right, right_value)
        return f"{left} {node.operator} {right}"

    def visit(self, node: PredicateNode) -> str:
        if isinstance(node, Comparison):
            return self.comparison(node)
        if isinstance(node, And):
            return f"({self.visit(node.left)} AND {self.visit(node.right)})"
        if isinstance(node, Or):
            return f"({self.visit(node.left)} OR {self.visit(node.right)})"
        if isinstance(node, (ColumnRef, ParamRef)):
            raise UnsupportedPredicateError(type(node).__name__, "a predicate must be a comparison, And or Or")
        raise UnsupportedPredicateError(type(node).__name__)


def translate(predicate: Any, metadata: EntityMetadata) -> TranslatedPredicate:
    """
    Translate a predicate into a parameterized SQL fragment over target.*.

    Translation is a pure function of the predicate and the metadata,
    except that captured() resolvers are called once each. Placeholders
    are numbered :p0, :p1, ... in left-to-right, depth-first order.

    Args:
        predicate: PredicateNode tree or SQLAlchemy boolean expression
        metadata: Metadata of the record type whose table is the target

    Returns:
        TranslatedPredicate with the SQL fragment and parameter values

    Raises:
        UnsupportedPredicateError: If the predicate uses an unsupported construct
        SchemaError: If a referenced property is not mapped
        ArgumentError: If a SQLAlchemy expression uses another table's columns
    """
    if predicate is None or predicate is UNSCOPED:
        raise UnsupportedPredicateError(repr(predicate), "nothing to translate")

    if isinstance(predicate, PredicateNode):
        node = predicate
    else:
        node = from_sqlalchemy(predicate, metadata.table_name)

    translator = _Translator(metadata)
    sql = translator.visit(node)
    return TranslatedPredicate(sql, tuple(translator.parameters))
