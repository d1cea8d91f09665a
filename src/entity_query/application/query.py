"""Typed query builder.

Queries are assembled fluently against query types and handed to the
executor only when a fetch method is called:

    >>> factory.select(member.user_name, member.age)
    ...     .from_(member)
    ...     .join(member.team, team)
    ...     .where(team.name.eq("teamA"), member.age.gt(10))
    ...     .order_by(member.age.desc(), member.user_name.asc().nulls_last())
    ...     .offset(1)
    ...     .limit(2)
    ...     .fetch()

A query projecting a single expression returns plain values (entities or
scalars); a query projecting several returns ``Tuple`` rows.

Sub-queries are built with ``SubQuery`` and are not bound to a persistence
context; they run as part of the query that embeds them.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, Iterator, Sequence, TypeVar

from entity_query.domain.exceptions import InvalidOperationError
from entity_query.domain.value_objects import (
    AssociationPath,
    BooleanExpression,
    Constant,
    EntityPath,
    Expression,
    Expressions,
    OrderSpecifier,
    SubQueryExpression,
    to_expression,
)

if TYPE_CHECKING:
    from entity_query.application.executor import QueryExecutor

T = TypeVar("T")


class JoinType(Enum):
    """Join kinds."""

    INNER = "inner"
    LEFT = "left"


@dataclass(frozen=True)
class JoinSpec:
    """One join of a query.

    Attributes:
        join_type: Inner or left outer.
        target: Alias of the joined entity.
        association: The association followed, or None for an entity
            (theta) join whose condition is given entirely by ``on``.
        on: Extra join condition.
        fetch: Materialize the joined entity together with its owner.
    """

    join_type: JoinType
    target: EntityPath
    association: AssociationPath | None = None
    on: BooleanExpression | None = None
    fetch: bool = False

    def __str__(self) -> str:
        keyword = "left join" if self.join_type == JoinType.LEFT else "inner join"
        if self.fetch:
            keyword += " fetch"
        source = str(self.association) if self.association is not None else self.target.entity_name
        text = f"{keyword} {source} {self.target.alias}"
        if self.on is not None:
            text += f" on {self.on}"
        return text


@dataclass
class QueryMetadata:
    """Everything a query says, in executable form."""

    projection: tuple[Expression, ...] = ()
    sources: tuple[EntityPath, ...] = ()
    joins: tuple[JoinSpec, ...] = ()
    where: BooleanExpression | None = None
    group_by: tuple[Expression, ...] = ()
    having: BooleanExpression | None = None
    order_by: tuple[OrderSpecifier, ...] = ()
    distinct: bool = False
    offset: int = 0
    limit: int | None = None

    @property
    def unique_projection(self) -> bool:
        """True when results are single values rather than tuples."""
        return len(self.projection) == 1

    def declared_aliases(self) -> list[str]:
        """Aliases in declaration order: sources first, then joins."""
        return [s.alias for s in self.sources] + [j.target.alias for j in self.joins]

    def subqueries(self) -> Iterator[SubQueryExpression]:
        """Sub-queries embedded directly in this query (not nested ones)."""
        for expr in self.expressions():
            for node in expr.walk():
                if isinstance(node, SubQueryExpression):
                    yield node

    def expressions(self) -> Iterator[Expression]:
        yield from self.projection
        for join in self.joins:
            if join.on is not None:
                yield join.on
        if self.where is not None:
            yield self.where
        yield from self.group_by
        if self.having is not None:
            yield self.having
        for spec in self.order_by:
            yield spec.target


def _conjunction(current: BooleanExpression | None, predicates: Sequence[Any]) -> BooleanExpression | None:
    return Expressions.all_of(current, *predicates)


class Query(Generic[T]):
    """Fluent query. Builder methods mutate the query and return it."""

    def __init__(self, executor: QueryExecutor | None = None) -> None:
        self._executor = executor
        self._metadata = QueryMetadata()

    @property
    def metadata(self) -> QueryMetadata:
        return self._metadata

    # Building

    def select(self, *exprs: Any) -> Query:
        if not exprs:
            raise InvalidOperationError("select() needs at least one expression")
        self._metadata.projection = tuple(to_expression(e) for e in exprs)
        return self

    def from_(self, *sources: EntityPath) -> Query[T]:
        for source in sources:
            if not isinstance(source, EntityPath):
                raise InvalidOperationError(f"Cannot select from {source!r}: not a query type")
        self._metadata.sources += tuple(sources)
        return self

    def join(self, target: AssociationPath | EntityPath, alias: EntityPath | None = None) -> Query[T]:
        """Inner join.

        Args:
            target: An association (``member.team``) or, for a theta join,
                an entity alias whose condition follows in ``on``.
            alias: Alias for the joined entity when following an association.
                Defaults to ``<owner alias>_<association name>``.
        """
        return self._add_join(JoinType.INNER, target, alias)

    inner_join = join

    def left_join(self, target: AssociationPath | EntityPath, alias: EntityPath | None = None) -> Query[T]:
        """Left outer join; unmatched owners are kept with the joined side absent."""
        return self._add_join(JoinType.LEFT, target, alias)

    def on(self, *predicates: BooleanExpression | None) -> Query[T]:
        """Add conditions to the most recent join."""
        last = self._last_join("on()")
        self._replace_last_join(replace(last, on=_conjunction(last.on, predicates)))
        return self

    def fetch_join(self) -> Query[T]:
        """Mark the most recent join as a fetch join."""
        last = self._last_join("fetch_join()")
        if last.association is None:
            raise InvalidOperationError("fetch_join() requires a join that follows an association")
        self._replace_last_join(replace(last, fetch=True))
        return self

    def where(self, *predicates: BooleanExpression | None) -> Query[T]:
        """AND the given predicates into the filter. None arguments are skipped."""
        self._metadata.where = _conjunction(self._metadata.where, predicates)
        return self

    def group_by(self, *exprs: Expression) -> Query[T]:
        self._metadata.group_by += tuple(exprs)
        return self

    def having(self, *predicates: BooleanExpression | None) -> Query[T]:
        self._metadata.having = _conjunction(self._metadata.having, predicates)
        return self

    def order_by(self, *specs: OrderSpecifier | Expression) -> Query[T]:
        ordered = tuple(s if isinstance(s, OrderSpecifier) else to_expression(s).asc() for s in specs)
        self._metadata.order_by += ordered
        return self

    def distinct(self) -> Query[T]:
        self._metadata.distinct = True
        return self

    def offset(self, offset: int) -> Query[T]:
        if offset < 0:
            raise InvalidOperationError(f"offset must be >= 0, got {offset}")
        self._metadata.offset = offset
        return self

    def limit(self, limit: int | None) -> Query[T]:
        if limit is not None and limit < 0:
            raise InvalidOperationError(f"limit must be >= 0, got {limit}")
        self._metadata.limit = limit
        return self

    # Fetching

    def fetch(self) -> list[T]:
        """Return all results."""
        return self._require_executor().execute(self._metadata).values

    def fetch_one(self) -> T | None:
        """Return the single result, or None when there is none.

        Raises:
            NonUniqueResultError: If more than one row matches.
        """
        return self._require_executor().fetch_unique(self._metadata)

    def fetch_first(self) -> T | None:
        """Return the first result, or None."""
        limited = replace(self._metadata, limit=1)
        values = self._require_executor().execute(limited).values
        return values[0] if values else None

    def fetch_results(self) -> QueryResults[T]:
        """Return one page of results together with the unpaged total."""
        result = self._require_executor().execute(self._metadata)
        return QueryResults(
            results=result.values,
            total=result.total,
            offset=self._metadata.offset,
            limit=self._metadata.limit,
        )

    def fetch_count(self) -> int:
        """Count result rows, ignoring offset and limit."""
        return self._require_executor().count(self._metadata)

    def to_expression(self) -> SubQueryExpression:
        """Embed this query as a sub-query expression."""
        return SubQueryExpression(self)

    def __str__(self) -> str:
        m = self._metadata
        parts = []
        if m.projection:
            head = "select distinct" if m.distinct else "select"
            parts.append(f"{head} {', '.join(str(p) for p in m.projection)}")
        if m.sources:
            parts.append("from " + ", ".join(f"{s.entity_name} {s.alias}" for s in m.sources))
        parts.extend(str(j) for j in m.joins)
        if m.where is not None:
            parts.append(f"where {m.where}")
        if m.group_by:
            parts.append("group by " + ", ".join(str(g) for g in m.group_by))
        if m.having is not None:
            parts.append(f"having {m.having}")
        if m.order_by:
            parts.append("order by " + ", ".join(str(o) for o in m.order_by))
        if m.offset:
            parts.append(f"offset {m.offset}")
        if m.limit is not None:
            parts.append(f"limit {m.limit}")
        return " ".join(parts)

    def _add_join(
        self,
        join_type: JoinType,
        target: AssociationPath | EntityPath,
        alias: EntityPath | None,
    ) -> Query[T]:
        if isinstance(target, AssociationPath):
            joined = alias if alias is not None else target.target(f"{target.alias}_{target.name}")
            spec = JoinSpec(join_type, joined, association=target)
        elif isinstance(target, EntityPath):
            if alias is not None:
                raise InvalidOperationError("An entity join takes no separate alias")
            spec = JoinSpec(join_type, target)
        else:
            raise InvalidOperationError(f"Cannot join {target!r}")
        self._metadata.joins += (spec,)
        return self

    def _last_join(self, caller: str) -> JoinSpec:
        if not self._metadata.joins:
            raise InvalidOperationError(f"{caller} must follow a join")
        return self._metadata.joins[-1]

    def _replace_last_join(self, spec: JoinSpec) -> None:
        self._metadata.joins = self._metadata.joins[:-1] + (spec,)

    def _require_executor(self) -> QueryExecutor:
        if self._executor is None:
            raise InvalidOperationError(
                "Sub-queries cannot be fetched directly; embed them in a query"
            )
        return self._executor


class SubQuery:
    """Entry point for sub-queries.

    Example:
        >>> sub = QMember("member_sub")
        >>> factory.select_from(member).where(
        ...     member.age.eq(SubQuery.select(sub.age.max()).from_(sub))
        ... )
    """

    @staticmethod
    def select(*exprs: Any) -> Query:
        return Query().select(*exprs)

    @staticmethod
    def select_from(source: EntityPath) -> Query:
        return Query().select(source).from_(source)


class QueryFactory:
    """Creates queries bound to one executor (and its unit of work)."""

    def __init__(self, executor: QueryExecutor) -> None:
        self._executor = executor

    def query(self) -> Query:
        """An empty query; projection and sources are added later."""
        return Query(self._executor)

    def select(self, *exprs: Any) -> Query:
        return Query(self._executor).select(*exprs)

    def select_from(self, source: EntityPath) -> Query:
        """Select the entities of one source."""
        return Query(self._executor).select(source).from_(source)

    def select_one(self) -> Query:
        """Select the constant 1; handy for existence checks."""
        return Query(self._executor).select(Constant(1))

    def select_distinct(self, *exprs: Any) -> Query:
        return self.select(*exprs).distinct()


class Tuple:
    """One row of a multi-column projection.

    Columns are read by position or by the expression that produced them:

        >>> row.get(member.user_name)
        >>> row.get(1)
    """

    def __init__(self, projection: tuple[Expression, ...], values: tuple[Any, ...]) -> None:
        self._projection = projection
        self._values = values

    def get(self, key: Expression | int) -> Any:
        """Return a column value.

        Raises:
            KeyError: If the expression is not part of the projection.
            IndexError: If the position is out of range.
        """
        if isinstance(key, int):
            return self._values[key]
        for expr, value in zip(self._projection, self._values):
            if expr is key or expr == key:
                return value
        raise KeyError(f"{key} is not part of the projection")

    def __getitem__(self, key: Expression | int) -> Any:
        return self.get(key)

    def size(self) -> int:
        return len(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def to_list(self) -> list[Any]:
        return list(self._values)

    def __iter__(self) -> Iterator[Any]:
        return iter(self._values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Tuple):
            return NotImplemented
        return self._values == other._values

    def __hash__(self) -> int:
        return hash(self._values)

    def __repr__(self) -> str:
        return f"[{', '.join(repr(v) for v in self._values)}]"


@dataclass
class QueryResults(Generic[T]):
    """A page of results plus the row count without paging."""

    results: list[T] = field(default_factory=list)
    total: int = 0
    offset: int = 0
    limit: int | None = None

    @property
    def is_empty(self) -> bool:
        return not self.results
