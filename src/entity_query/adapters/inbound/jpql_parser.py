"""JPQL front-end using sqlglot.

JPQL text is parsed with sqlglot and translated into the same typed
``Query`` the builder produces, so both front-ends share one executor.

Supported:
    - select of aliases, properties, aggregates, CASE and concat
    - from Entity alias[, Entity alias]
    - [left] join alias.association alias [on ...]
    - [left] join Entity alias on ... (theta join)
    - where / having with comparisons, and/or/not, in, between, like,
      is [not] null, named :parameters and sub-queries
    - group by, order by ... [asc|desc] [nulls first|last]

Property names are camelCase (``m.userName``) and map to the snake_case
columns of the metamodel.

Example:
    >>> query = session.create_query(
    ...     "select m from Member m where m.userName = :userName"
    ... )
    >>> query.set_parameter("userName", "member1").get_single_result()
    Member(id=3, user_name='member1', age=10)

References:
    - sqlglot documentation: https://sqlglot.com/
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import sqlglot
from sqlglot import exp
from sqlglot.dialects.dialect import Dialect
from sqlglot.errors import SqlglotError

from entity_query.domain.exceptions import InvalidOperationError, JPQLSyntaxError
from entity_query.domain.metamodel import get_mapping
from entity_query.domain.value_objects import (
    Aggregate,
    AggregateFunc,
    AssociationPath,
    CaseBuilder,
    Comparison,
    ComparisonOp,
    Concat,
    Constant,
    EntityPath,
    Expression,
    Logical,
    LogicalOp,
    NullHandling,
    Order,
    OrderSpecifier,
    SubQueryExpression,
    ValueList,
)

if TYPE_CHECKING:
    from entity_query.application.query import Query, QueryFactory

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

_COMPARISONS: dict[type, ComparisonOp] = {
    exp.EQ: ComparisonOp.EQ,
    exp.NEQ: ComparisonOp.NE,
    exp.LT: ComparisonOp.LT,
    exp.LTE: ComparisonOp.LE,
    exp.GT: ComparisonOp.GT,
    exp.GTE: ComparisonOp.GE,
}

_AGGREGATES: dict[type, AggregateFunc] = {
    exp.Count: AggregateFunc.COUNT,
    exp.Sum: AggregateFunc.SUM,
    exp.Avg: AggregateFunc.AVG,
    exp.Max: AggregateFunc.MAX,
    exp.Min: AggregateFunc.MIN,
}


class JPQLDialect(Dialect):
    """sqlglot dialect for JPQL text; nulls sort low by default."""

    NULL_ORDERING = "nulls_are_small"


class JPQLNullsHighDialect(JPQLDialect):
    """JPQL dialect whose ORDER BY sorts nulls high by default."""

    NULL_ORDERING = "nulls_are_large"


_DIALECTS: dict[str, type[Dialect]] = {
    "low": JPQLDialect,
    "high": JPQLNullsHighDialect,
}


def to_snake_case(name: str) -> str:
    """``userName`` -> ``user_name``."""
    return _CAMEL_BOUNDARY.sub("_", name).lower()


@dataclass(frozen=True)
class JPQLStatement:
    """A parsed JPQL select statement."""

    ql: str
    tree: exp.Select
    parameter_names: frozenset[str]


class JPQLParser:
    """JPQL parser using sqlglot.

    Example:
        >>> statement = JPQLParser().parse("select t.name from Team t")
        >>> statement.parameter_names
        frozenset()
    """

    def __init__(self, null_ordering: str = "low") -> None:
        """Initialize the parser.

        Args:
            null_ordering: Where nulls sort in ORDER BY items without an
                explicit NULLS FIRST/LAST ("low" or "high").
        """
        try:
            self._dialect = _DIALECTS[null_ordering]
        except KeyError:
            raise ValueError(f"Unknown null ordering: {null_ordering!r}") from None

    def parse(self, ql: str) -> JPQLStatement:
        """Parse JPQL text and check it against the metamodel.

        Raises:
            JPQLSyntaxError: If the text is not a single supported select,
                or names an unknown entity, alias or property.
        """
        try:
            statements = sqlglot.parse(ql, read=self._dialect)
        except SqlglotError as e:
            raise JPQLSyntaxError(f"Failed to parse JPQL: {e}") from e

        statements = [s for s in statements if s is not None]
        if not statements:
            raise JPQLSyntaxError("Empty JPQL statement")
        if len(statements) > 1:
            raise JPQLSyntaxError("Multiple statements not supported")

        tree = statements[0]
        if not isinstance(tree, exp.Select):
            raise JPQLSyntaxError(f"Only select statements are supported, got {type(tree).__name__}")

        # Translate once with unbound parameters to surface errors early
        from entity_query.application.query import Query

        JPQLTranslator(parameters=None).build(tree, Query())

        names = frozenset(p.name for p in tree.find_all(exp.Placeholder))
        return JPQLStatement(ql=ql, tree=tree, parameter_names=names)


class JPQLTranslator:
    """Translates a sqlglot select tree into a ``Query``.

    Args:
        parameters: Bound parameter values. None translates every
            parameter as a null constant (structure check only).
    """

    def __init__(self, parameters: dict[str, Any] | None) -> None:
        self._parameters = parameters

    def build(self, select: exp.Select, query: Query) -> Query:
        """Fill ``query`` from a select tree and return it."""
        scope: dict[str, EntityPath] = {}

        for child in select.args.values():
            if isinstance(child, exp.Limit) or isinstance(child, exp.Offset):
                raise JPQLSyntaxError("JPQL has no LIMIT/OFFSET; use set_first_result/set_max_results")

        from_ = _child(select, exp.From)
        if from_ is None:
            raise JPQLSyntaxError("select requires a from clause")
        tables = [from_.this] if from_.this is not None else list(from_.expressions)
        for table in tables:
            query.from_(self._declare(self._entity_path(table), scope))

        for join in select.args.get("joins") or []:
            self._join(join, query, scope)

        projection = [self._expr(_unalias(e), scope) for e in select.expressions]
        if not projection:
            raise JPQLSyntaxError("select requires a projection")
        query.select(*projection)

        if _child(select, exp.Distinct) is not None:
            query.distinct()

        where = _child(select, exp.Where)
        if where is not None:
            query.where(self._expr(where.this, scope))

        group = _child(select, exp.Group)
        if group is not None:
            query.group_by(*(self._expr(e, scope) for e in group.expressions))

        having = _child(select, exp.Having)
        if having is not None:
            query.having(self._expr(having.this, scope))

        order = _child(select, exp.Order)
        if order is not None:
            query.order_by(*(self._ordered(o, scope) for o in order.expressions))

        return query

    def _join(self, join: exp.Join, query: Query, scope: dict[str, EntityPath]) -> None:
        table = join.this
        if not isinstance(table, exp.Table):
            raise JPQLSyntaxError(f"Unsupported join target: {table.sql()}")

        left = (join.side or "").upper() == "LEFT"
        on = join.args.get("on")

        if table.db:
            owner = self._alias(table.db, scope)
            association = self._property(owner, table.name)
            if not isinstance(association, AssociationPath):
                raise JPQLSyntaxError(f"{table.db}.{table.name} is not an association")
            target = association.target(table.alias or f"{owner.alias}_{association.name}")
            self._declare(target, scope)
            if left:
                query.left_join(association, target)
            else:
                query.join(association, target)
        else:
            target = self._declare(self._entity_path(table), scope)
            if on is None and not left:
                # a bare JOIN or a comma: cross product
                query.from_(target)
                return
            if left:
                query.left_join(target)
            else:
                query.join(target)

        if on is not None:
            query.on(self._expr(on, scope))

    def _entity_path(self, table: exp.Expression) -> EntityPath:
        if not isinstance(table, exp.Table):
            raise JPQLSyntaxError(f"Unsupported from item: {table.sql()}")
        try:
            mapping = get_mapping(table.name)
        except KeyError as e:
            raise JPQLSyntaxError(f"Unknown entity '{table.name}'") from e
        return mapping.path_class(table.alias or table.name.lower())

    @staticmethod
    def _declare(path: EntityPath, scope: dict[str, EntityPath]) -> EntityPath:
        if path.alias in scope:
            raise JPQLSyntaxError(f"Alias '{path.alias}' is declared twice")
        scope[path.alias] = path
        return path

    @staticmethod
    def _alias(name: str, scope: dict[str, EntityPath]) -> EntityPath:
        try:
            return scope[name]
        except KeyError:
            raise JPQLSyntaxError(f"Undeclared alias '{name}'") from None

    @staticmethod
    def _property(owner: EntityPath, name: str) -> Expression:
        column = to_snake_case(name)
        mapping = get_mapping(owner)
        is_association = any(a.name == column for a in mapping.associations)
        if not (is_association or mapping.has_column(column)):
            raise JPQLSyntaxError(f"{mapping.name} has no property '{name}'")
        return getattr(owner, column)

    def _ordered(self, node: exp.Expression, scope: dict[str, EntityPath]) -> OrderSpecifier:
        if not isinstance(node, exp.Ordered):
            return OrderSpecifier(self._expr(node, scope))
        order = Order.DESC if node.args.get("desc") else Order.ASC
        nulls = NullHandling.NULLS_FIRST if node.args.get("nulls_first") else NullHandling.NULLS_LAST
        return OrderSpecifier(self._expr(node.this, scope), order, nulls)

    def _expr(self, node: exp.Expression, scope: dict[str, EntityPath]) -> Any:
        """Convert a sqlglot expression to our internal representation."""
        if isinstance(node, exp.Paren):
            return self._expr(node.this, scope)
        elif isinstance(node, exp.Column):
            if node.args.get("db") is not None:
                raise JPQLSyntaxError(f"Implicit joins are not supported: {node.sql()}")
            if not node.table:
                return self._alias(node.name, scope)
            return self._property(self._alias(node.table, scope), node.name)
        elif isinstance(node, exp.Literal):
            if node.is_string:
                return Constant(node.this)
            return Constant(_number(node.this))
        elif isinstance(node, exp.Boolean):
            return Constant(bool(node.this))
        elif isinstance(node, exp.Null):
            return Constant(None)
        elif isinstance(node, exp.Neg):
            operand = self._expr(node.this, scope)
            if isinstance(operand, Constant) and isinstance(operand.value, (int, float)):
                return Constant(-operand.value)
            raise JPQLSyntaxError(f"Unsupported negation: {node.sql()}")
        elif isinstance(node, exp.Placeholder):
            return Constant(self._parameter(node.name))
        elif isinstance(node, tuple(_COMPARISONS)):
            return Comparison(
                self._expr(node.this, scope),
                _COMPARISONS[type(node)],
                self._expr(node.expression, scope),
            )
        elif isinstance(node, exp.And):
            return Logical(LogicalOp.AND, (self._expr(node.this, scope), self._expr(node.expression, scope)))
        elif isinstance(node, exp.Or):
            return Logical(LogicalOp.OR, (self._expr(node.this, scope), self._expr(node.expression, scope)))
        elif isinstance(node, exp.Not):
            inner = node.this
            if isinstance(inner, exp.Is) and isinstance(inner.expression, exp.Null):
                return Comparison(self._expr(inner.this, scope), ComparisonOp.IS_NOT_NULL)
            return Logical(LogicalOp.NOT, (self._expr(inner, scope),))
        elif isinstance(node, exp.Is):
            if not isinstance(node.expression, exp.Null):
                raise JPQLSyntaxError(f"Unsupported IS expression: {node.sql()}")
            return Comparison(self._expr(node.this, scope), ComparisonOp.IS_NULL)
        elif isinstance(node, exp.Like):
            return Comparison(self._expr(node.this, scope), ComparisonOp.LIKE, self._expr(node.expression, scope))
        elif isinstance(node, exp.Between):
            bounds = ValueList((self._expr(node.args["low"], scope), self._expr(node.args["high"], scope)))
            return Comparison(self._expr(node.this, scope), ComparisonOp.BETWEEN, bounds)
        elif isinstance(node, exp.In):
            return Comparison(self._expr(node.this, scope), ComparisonOp.IN, self._value_set(node, scope))
        elif isinstance(node, tuple(_AGGREGATES)):
            return self._aggregate(node, scope)
        elif isinstance(node, exp.Case):
            return self._case(node, scope)
        elif isinstance(node, exp.Concat):
            return Concat(tuple(self._expr(e, scope) for e in node.expressions))
        elif isinstance(node, exp.DPipe):
            return Concat((self._expr(node.this, scope), self._expr(node.expression, scope)))
        elif isinstance(node, exp.Subquery):
            return self._subquery(node.this)
        elif isinstance(node, exp.Select):
            return self._subquery(node)
        raise JPQLSyntaxError(f"Unsupported expression: {node.sql()}")

    def _value_set(self, node: exp.In, scope: dict[str, EntityPath]) -> Expression:
        query = node.args.get("query")
        if query is not None:
            return self._expr(query, scope)
        items: list[Expression] = []
        for item in node.expressions:
            if isinstance(item, exp.Placeholder):
                value = self._parameter(item.name)
                if isinstance(value, (list, tuple, set, frozenset)):
                    items.extend(Constant(v) for v in value)
                    continue
                items.append(Constant(value))
            else:
                items.append(self._expr(item, scope))
        return ValueList(tuple(items))

    def _aggregate(self, node: exp.Expression, scope: dict[str, EntityPath]) -> Aggregate:
        func = _AGGREGATES[type(node)]
        arg = node.this
        if isinstance(arg, exp.Star):
            if func != AggregateFunc.COUNT:
                raise JPQLSyntaxError(f"{func.value}(*) is not supported")
            return Aggregate(func)
        distinct = isinstance(arg, exp.Distinct)
        if distinct:
            arg = arg.expressions[0]
        return Aggregate(func, self._expr(arg, scope), distinct=distinct)

    def _case(self, node: exp.Case, scope: dict[str, EntityPath]) -> Expression:
        subject = node.this
        builder = CaseBuilder(subject=None if subject is None else self._expr(subject, scope))
        for branch in node.args.get("ifs") or []:
            builder = builder.when(self._expr(branch.this, scope)).then(
                self._expr(branch.args["true"], scope)
            )
        default = node.args.get("default")
        if default is None:
            return builder.end()
        return builder.otherwise(self._expr(default, scope))

    def _subquery(self, select: exp.Expression) -> SubQueryExpression:
        if not isinstance(select, exp.Select):
            raise JPQLSyntaxError(f"Unsupported sub-query: {select.sql()}")
        from entity_query.application.query import Query

        return self.build(select, Query()).to_expression()

    def _parameter(self, name: str) -> Any:
        if self._parameters is None:
            return None
        if name not in self._parameters:
            raise InvalidOperationError(f"Parameter '{name}' is not bound")
        return self._parameters[name]


class JPQLQuery:
    """Executable JPQL query with named parameters."""

    def __init__(self, statement: JPQLStatement, query_factory: QueryFactory) -> None:
        self._statement = statement
        self._query_factory = query_factory
        self._parameters: dict[str, Any] = {}
        self._first_result = 0
        self._max_results: int | None = None

    @property
    def ql(self) -> str:
        return self._statement.ql

    def set_parameter(self, name: str, value: Any) -> JPQLQuery:
        """Bind a named parameter.

        Raises:
            InvalidOperationError: If the statement has no such parameter.
        """
        if name not in self._statement.parameter_names:
            raise InvalidOperationError(f"Query has no parameter '{name}': {self.ql}")
        self._parameters[name] = value
        return self

    def set_first_result(self, first: int) -> JPQLQuery:
        self._first_result = first
        return self

    def set_max_results(self, max_results: int | None) -> JPQLQuery:
        self._max_results = max_results
        return self

    def get_result_list(self) -> list[Any]:
        return self._to_query().fetch()

    def get_single_result(self) -> Any:
        """Return the single result, or None when nothing matches.

        Raises:
            NonUniqueResultError: If more than one row matches.
        """
        return self._to_query().fetch_one()

    def _to_query(self) -> Query:
        translator = JPQLTranslator(dict(self._parameters))
        query = translator.build(self._statement.tree, self._query_factory.query())
        return query.offset(self._first_result).limit(self._max_results)


def _child(node: exp.Expression, kind: type[exp.Expression]) -> Any:
    """Return the direct argument of ``node`` that is a ``kind`` node, if any."""
    for value in node.args.values():
        if isinstance(value, kind):
            return value
    return None


def _number(text: str) -> int | float:
    try:
        if any(c in text for c in ".eE"):
            return float(text)
        return int(text)
    except ValueError:
        raise JPQLSyntaxError(f"Invalid numeric literal: {text}") from None


def _unalias(node: exp.Expression) -> exp.Expression:
    return node.this if isinstance(node, exp.Alias) else node
