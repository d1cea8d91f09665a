"""Expression tree for typed queries.

Expressions are immutable value objects. Two expressions built the same
way compare equal and hash alike, which lets result tuples be indexed by
the expression that produced a column:

    >>> tup.get(member.age.avg())

The fluent methods (``eq``, ``between``, ``desc``, ``avg``, ``when`` ...)
live on the typed mixins below; the query engine evaluates the resulting
nodes, it never calls back into them.

Type errors surface at construction time: aggregating or comparing an
expression with an operand of the wrong type raises ``TypeMismatchError``
before any query runs.
"""

from __future__ import annotations

from abc import ABC
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Iterator

from entity_query.domain.exceptions import TypeMismatchError

NUMERIC_TYPES: tuple[type, ...] = (int, float)


class ComparisonOp(Enum):
    """Comparison operators for predicates."""

    EQ = "="
    NE = "<>"
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    IN = "IN"
    NOT_IN = "NOT IN"
    BETWEEN = "BETWEEN"
    IS_NULL = "IS NULL"
    IS_NOT_NULL = "IS NOT NULL"
    LIKE = "LIKE"
    STARTS_WITH = "STARTS WITH"
    CONTAINS = "CONTAINS"
    ENDS_WITH = "ENDS WITH"


class LogicalOp(Enum):
    """Logical operators for combining predicates."""

    AND = "AND"
    OR = "OR"
    NOT = "NOT"


class AggregateFunc(Enum):
    """Aggregate functions."""

    COUNT = "COUNT"
    SUM = "SUM"
    AVG = "AVG"
    MIN = "MIN"
    MAX = "MAX"


class Order(Enum):
    """Sort direction."""

    ASC = "ASC"
    DESC = "DESC"


class NullHandling(Enum):
    """Null placement for an ORDER BY key."""

    DEFAULT = "DEFAULT"
    NULLS_FIRST = "NULLS FIRST"
    NULLS_LAST = "NULLS LAST"


def to_expression(value: Any) -> Expression:
    """Wrap a plain value as a Constant; pass expressions through.

    Objects exposing ``to_expression()`` (sub-queries) are converted by
    that hook.
    """
    if isinstance(value, Expression):
        return value
    if hasattr(value, "to_expression"):
        return value.to_expression()
    return Constant(value)


def _is_numeric(value_type: type | None) -> bool:
    return value_type is not None and value_type is not bool and issubclass(
        value_type, NUMERIC_TYPES
    )


def _check_operand(left: Expression, right: Expression) -> None:
    """Reject comparing a numeric expression with text and vice versa."""
    if not isinstance(right, Constant) or right.value is None:
        return
    left_type = left.value_type
    right_type = type(right.value)
    if left_type is None:
        return
    if _is_numeric(left_type) and issubclass(right_type, str):
        raise TypeMismatchError(f"Cannot compare numeric {left} with text {right}")
    if issubclass(left_type, str) and _is_numeric(right_type):
        raise TypeMismatchError(f"Cannot compare text {left} with number {right}")


class Expression(ABC):
    """Base class for expressions."""

    @property
    def value_type(self) -> type | None:
        """Python type of the values this expression produces, if known."""
        return None

    def children(self) -> tuple[Expression, ...]:
        """Direct sub-expressions (sub-query bodies are not descended into)."""
        return ()

    def walk(self) -> Iterator[Expression]:
        """Depth-first iteration over this expression and its descendants."""
        yield self
        for child in self.children():
            yield from child.walk()

    def _compare(self, op: ComparisonOp, right: Any) -> Comparison:
        right_expr = to_expression(right)
        _check_operand(self, right_expr)
        return Comparison(self, op, right_expr)

    def eq(self, right: Any) -> Comparison:
        return self._compare(ComparisonOp.EQ, right)

    def ne(self, right: Any) -> Comparison:
        return self._compare(ComparisonOp.NE, right)

    def in_(self, *values: Any) -> Comparison:
        """Membership test against literal values, a list, or a sub-query."""
        return Comparison(self, ComparisonOp.IN, _value_set(self, values))

    def not_in(self, *values: Any) -> Comparison:
        return Comparison(self, ComparisonOp.NOT_IN, _value_set(self, values))

    def is_null(self) -> Comparison:
        return Comparison(self, ComparisonOp.IS_NULL)

    def is_not_null(self) -> Comparison:
        return Comparison(self, ComparisonOp.IS_NOT_NULL)

    def count(self) -> Aggregate:
        return Aggregate(AggregateFunc.COUNT, self)

    def count_distinct(self) -> Aggregate:
        return Aggregate(AggregateFunc.COUNT, self, distinct=True)


def _value_set(left: Expression, values: tuple[Any, ...]) -> Expression | ValueList:
    if len(values) == 1:
        only = values[0]
        if isinstance(only, (list, tuple, set, frozenset)):
            values = tuple(only)
        elif not isinstance(only, Expression) and hasattr(only, "to_expression"):
            return only.to_expression()
    items = tuple(to_expression(v) for v in values)
    for item in items:
        _check_operand(left, item)
    return ValueList(items)


class ComparableExpression(Expression):
    """Expression whose values are ordered."""

    def lt(self, right: Any) -> Comparison:
        return self._compare(ComparisonOp.LT, right)

    def loe(self, right: Any) -> Comparison:
        return self._compare(ComparisonOp.LE, right)

    def gt(self, right: Any) -> Comparison:
        return self._compare(ComparisonOp.GT, right)

    def goe(self, right: Any) -> Comparison:
        return self._compare(ComparisonOp.GE, right)

    def between(self, low: Any, high: Any) -> Comparison:
        bounds = ValueList((to_expression(low), to_expression(high)))
        for bound in bounds.items:
            _check_operand(self, bound)
        return Comparison(self, ComparisonOp.BETWEEN, bounds)

    def not_between(self, low: Any, high: Any) -> Logical:
        return self.between(low, high).not_()

    def asc(self) -> OrderSpecifier:
        return OrderSpecifier(self, Order.ASC)

    def desc(self) -> OrderSpecifier:
        return OrderSpecifier(self, Order.DESC)

    def max(self) -> Aggregate:
        return Aggregate(AggregateFunc.MAX, self)

    def min(self) -> Aggregate:
        return Aggregate(AggregateFunc.MIN, self)

    def when(self, value: Any) -> CaseWhen:
        """Start a simple CASE over this expression's value."""
        return CaseBuilder(subject=self).when(value)


class NumberExpression(ComparableExpression):
    """Expression producing numbers."""

    def sum(self) -> Aggregate:
        return Aggregate(AggregateFunc.SUM, self)

    def avg(self) -> Aggregate:
        return Aggregate(AggregateFunc.AVG, self)

    def string_value(self) -> StringValue:
        """Decimal text form of the number."""
        return StringValue(self)


class StringExpression(ComparableExpression):
    """Expression producing text."""

    def like(self, pattern: str) -> Comparison:
        """SQL LIKE: ``%`` matches any run of characters, ``_`` exactly one."""
        return self._compare(ComparisonOp.LIKE, pattern)

    def not_like(self, pattern: str) -> Logical:
        return self.like(pattern).not_()

    def starts_with(self, prefix: str) -> Comparison:
        return self._compare(ComparisonOp.STARTS_WITH, prefix)

    def contains(self, fragment: str) -> Comparison:
        return self._compare(ComparisonOp.CONTAINS, fragment)

    def ends_with(self, suffix: str) -> Comparison:
        return self._compare(ComparisonOp.ENDS_WITH, suffix)

    def concat(self, other: Any) -> Concat:
        parts: tuple[Expression, ...]
        parts = self.parts if isinstance(self, Concat) else (self,)
        return Concat(parts + (to_expression(other),))


class BooleanExpression(Expression):
    """Predicate expression."""

    @property
    def value_type(self) -> type | None:
        return bool

    def and_(self, other: BooleanExpression | None) -> BooleanExpression:
        if other is None:
            return self
        return Logical(LogicalOp.AND, (self, other))

    def or_(self, other: BooleanExpression | None) -> BooleanExpression:
        if other is None:
            return self
        return Logical(LogicalOp.OR, (self, other))

    def not_(self) -> Logical:
        return Logical(LogicalOp.NOT, (self,))

    def __and__(self, other: BooleanExpression) -> BooleanExpression:
        return self.and_(other)

    def __or__(self, other: BooleanExpression) -> BooleanExpression:
        return self.or_(other)

    def __invert__(self) -> Logical:
        return self.not_()


# Nodes


@dataclass(frozen=True)
class Constant(ComparableExpression):
    """Literal value expression."""

    value: Any

    @property
    def value_type(self) -> type | None:
        return None if self.value is None else type(self.value)

    def __str__(self) -> str:
        if isinstance(self.value, str):
            return f"'{self.value}'"
        return str(self.value)


@dataclass(frozen=True)
class ValueList(Expression):
    """Literal list for IN and BETWEEN operands."""

    items: tuple[Expression, ...]

    def children(self) -> tuple[Expression, ...]:
        return self.items

    def __str__(self) -> str:
        return f"({', '.join(str(i) for i in self.items)})"


@dataclass(frozen=True)
class Comparison(BooleanExpression):
    """Comparison predicate (e.g., path = value)."""

    left: Expression
    op: ComparisonOp
    right: Expression | None = None  # None for IS NULL / IS NOT NULL

    def children(self) -> tuple[Expression, ...]:
        if self.right is None:
            return (self.left,)
        return (self.left, self.right)

    def __str__(self) -> str:
        if self.right is None:
            return f"{self.left} {self.op.value}"
        return f"{self.left} {self.op.value} {self.right}"


@dataclass(frozen=True)
class Logical(BooleanExpression):
    """Logical predicate combining other predicates."""

    op: LogicalOp
    operands: tuple[Expression, ...]

    def children(self) -> tuple[Expression, ...]:
        return self.operands

    def __str__(self) -> str:
        if self.op == LogicalOp.NOT:
            return f"NOT ({self.operands[0]})"
        op_str = f" {self.op.value} "
        return f"({op_str.join(str(o) for o in self.operands)})"


@dataclass(frozen=True)
class Aggregate(NumberExpression):
    """Aggregate function expression."""

    func: AggregateFunc
    arg: Expression | None = None  # None for COUNT(*)
    distinct: bool = False

    def __post_init__(self) -> None:
        if self.func in (AggregateFunc.SUM, AggregateFunc.AVG) and self.arg is not None:
            arg_type = self.arg.value_type
            if arg_type is not None and not _is_numeric(arg_type):
                raise TypeMismatchError(
                    f"{self.func.value} requires a numeric expression, got {self.arg}"
                )

    @property
    def value_type(self) -> type | None:
        if self.func == AggregateFunc.COUNT:
            return int
        if self.func == AggregateFunc.AVG:
            return float
        return None if self.arg is None else self.arg.value_type

    def children(self) -> tuple[Expression, ...]:
        return () if self.arg is None else (self.arg,)

    def __str__(self) -> str:
        if self.arg is None:
            return f"{self.func.value}(*)"
        distinct_str = "DISTINCT " if self.distinct else ""
        return f"{self.func.value}({distinct_str}{self.arg})"


@dataclass(frozen=True)
class Case(ComparableExpression):
    """CASE expression; the first matching branch wins.

    With a subject, branch conditions are values compared for equality with
    the subject (simple CASE). Without one they are predicates (searched CASE).
    """

    subject: Expression | None
    branches: tuple[tuple[Expression, Expression], ...]
    otherwise: Expression | None = None

    @property
    def value_type(self) -> type | None:
        for _, result in self.branches:
            if result.value_type is not None:
                return result.value_type
        return None if self.otherwise is None else self.otherwise.value_type

    def children(self) -> tuple[Expression, ...]:
        nodes: list[Expression] = []
        if self.subject is not None:
            nodes.append(self.subject)
        for condition, result in self.branches:
            nodes.extend((condition, result))
        if self.otherwise is not None:
            nodes.append(self.otherwise)
        return tuple(nodes)

    def __str__(self) -> str:
        head = f"CASE {self.subject}" if self.subject is not None else "CASE"
        arms = " ".join(f"WHEN {c} THEN {r}" for c, r in self.branches)
        tail = f" ELSE {self.otherwise}" if self.otherwise is not None else ""
        return f"{head} {arms}{tail} END"


@dataclass(frozen=True)
class Concat(StringExpression):
    """Text concatenation. Non-text parts are rendered with ``str``."""

    parts: tuple[Expression, ...]

    @property
    def value_type(self) -> type | None:
        return str

    def children(self) -> tuple[Expression, ...]:
        return self.parts

    def __str__(self) -> str:
        return f"CONCAT({', '.join(str(p) for p in self.parts)})"


@dataclass(frozen=True)
class StringValue(StringExpression):
    """Text form of a value (``str(value)``)."""

    arg: Expression

    @property
    def value_type(self) -> type | None:
        return str

    def children(self) -> tuple[Expression, ...]:
        return (self.arg,)

    def __str__(self) -> str:
        return f"STR({self.arg})"


@dataclass(frozen=True, eq=False)
class SubQueryExpression(ComparableExpression):
    """A nested query used as a scalar or as a value set.

    Compared by identity: each sub-query object is evaluated once per outer
    query execution.
    """

    query: Any

    @property
    def value_type(self) -> type | None:
        projection = self.query.metadata.projection
        if len(projection) == 1:
            return projection[0].value_type
        return None

    def __str__(self) -> str:
        return f"({self.query})"


@dataclass(frozen=True)
class OrderSpecifier:
    """An ORDER BY key."""

    target: Expression
    order: Order = Order.ASC
    null_handling: NullHandling = NullHandling.DEFAULT

    @property
    def ascending(self) -> bool:
        return self.order == Order.ASC

    def nulls_first(self) -> OrderSpecifier:
        return replace(self, null_handling=NullHandling.NULLS_FIRST)

    def nulls_last(self) -> OrderSpecifier:
        return replace(self, null_handling=NullHandling.NULLS_LAST)

    def __str__(self) -> str:
        text = f"{self.target} {self.order.value}"
        if self.null_handling != NullHandling.DEFAULT:
            text += f" {self.null_handling.value}"
        return text


# Builders


class CaseBuilder:
    """Fluent CASE construction.

    Searched form:
        >>> CaseBuilder().when(member.age.between(0, 20)).then("0-20").otherwise("other")

    Simple form (started from an expression):
        >>> member.age.when(10).then("ten").when(20).then("twenty").otherwise("other")
    """

    def __init__(
        self,
        subject: Expression | None = None,
        branches: tuple[tuple[Expression, Expression], ...] = (),
    ) -> None:
        self._subject = subject
        self._branches = branches

    def when(self, condition: Any) -> CaseWhen:
        condition_expr = to_expression(condition)
        if self._subject is None and not isinstance(condition_expr, BooleanExpression):
            raise TypeMismatchError(f"Searched CASE needs a predicate, got {condition_expr}")
        if self._subject is not None:
            _check_operand(self._subject, condition_expr)
        return CaseWhen(self, condition_expr)

    def otherwise(self, value: Any) -> Case:
        return Case(self._subject, self._branches, to_expression(value))

    def end(self) -> Case:
        """Finish without a default branch (unmatched rows yield None)."""
        return Case(self._subject, self._branches, None)

    def _with_branch(self, condition: Expression, result: Expression) -> CaseBuilder:
        return CaseBuilder(self._subject, self._branches + ((condition, result),))


class CaseWhen:
    """Pending CASE branch awaiting its ``then`` value."""

    def __init__(self, builder: CaseBuilder, condition: Expression) -> None:
        self._builder = builder
        self._condition = condition

    def then(self, value: Any) -> CaseBuilder:
        return self._builder._with_branch(self._condition, to_expression(value))


class Expressions:
    """Factory helpers for expressions that do not start from a path."""

    @staticmethod
    def constant(value: Any) -> Constant:
        return Constant(value)

    @staticmethod
    def cases() -> CaseBuilder:
        return CaseBuilder()

    @staticmethod
    def all_of(*predicates: BooleanExpression | None) -> BooleanExpression | None:
        """AND of the non-None predicates; None if there are none."""
        present = tuple(p for p in predicates if p is not None)
        if not present:
            return None
        if len(present) == 1:
            return present[0]
        return Logical(LogicalOp.AND, present)

    @staticmethod
    def any_of(*predicates: BooleanExpression | None) -> BooleanExpression | None:
        """OR of the non-None predicates; None if there are none."""
        present = tuple(p for p in predicates if p is not None)
        if not present:
            return None
        if len(present) == 1:
            return present[0]
        return Logical(LogicalOp.OR, present)

    @staticmethod
    def count_all() -> Aggregate:
        return Aggregate(AggregateFunc.COUNT)
