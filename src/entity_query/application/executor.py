"""Query Executor using Volcano iterator model.

This module turns query metadata into a tree of pull-based operators and
runs it against the entity stores of a persistence context.

The Volcano model:
    - Each operator is an iterator with open(), next(), close() methods
    - Operators pull rows from their children on demand
    - Blocking operators (aggregate, sort) materialize their input in open()

Pipeline for one query:

    scan -> joins -> filter(where) -> aggregate -> filter(having)
         -> sort -> project -> distinct -> limit -> materialize

Rows bind aliases to stored records (None for the absent side of a left
join). Entities are only built from records in the final materialize step,
so rows cut by paging never reach the identity map.

Predicates use three-valued logic: comparisons involving null are unknown
(None), NOT/AND/OR follow Kleene logic, and filters keep only rows whose
predicate is true.

References:
    - Graefe, "Volcano" (1994)
"""

from __future__ import annotations

import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import cmp_to_key, lru_cache
from typing import Any, Iterator, Mapping

from entity_query.application.query import JoinSpec, JoinType, QueryMetadata, Tuple
from entity_query.domain.entities import Entity, Record
from entity_query.domain.exceptions import (
    EntityQueryError,
    InvalidOperationError,
    NonUniqueResultError,
    TypeMismatchError,
)
from entity_query.domain.metamodel import EntityMapping, get_mapping
from entity_query.domain.value_objects import (
    Aggregate,
    AggregateFunc,
    AssociationPath,
    BooleanExpression,
    Case,
    Comparison,
    ComparisonOp,
    Concat,
    Constant,
    EntityPath,
    Expression,
    Logical,
    LogicalOp,
    NullHandling,
    OrderSpecifier,
    Path,
    StringValue,
    SubQueryExpression,
    ValueList,
)
from entity_query.infrastructure.config import QueryConfig
from entity_query.infrastructure.logging import get_logger
from entity_query.infrastructure.metrics import MetricsRegistry, get_metrics
from entity_query.infrastructure.tracing import trace_span
from entity_query.ports.outbound.persistence_context import FlushMode, PersistenceContext

logger = get_logger(__name__)


@dataclass
class Row:
    """A row flowing through the operator tree.

    Attributes:
        bindings: Alias -> record (None when a left join found no match).
        aggregates: Aggregate values of the group this row stands for.
    """

    bindings: dict[str, Record | None] = field(default_factory=dict)
    aggregates: dict[Expression, Any] = field(default_factory=dict)

    def bind(self, alias: str, record: Record | None) -> Row:
        """Return a copy with one more alias bound."""
        return Row(bindings={**self.bindings, alias: record}, aggregates=self.aggregates)

    def get(self, alias: str) -> Record | None:
        return self.bindings.get(alias)


@dataclass(frozen=True)
class EntityRow:
    """A projected entity before materialization.

    Equality is the entity key, so DISTINCT collapses duplicate entities
    produced by joins.
    """

    entity_name: str
    record: Record = field(compare=False)
    entity_id: int
    fetched: Mapping[str, Record | None] = field(default_factory=dict, compare=False)


@dataclass
class ExecutionResult:
    """Result of query execution."""

    values: list[Any] = field(default_factory=list)
    total: int = 0  # rows before offset/limit


class Operator(ABC):
    """Base class for executor operators (Volcano model)."""

    @abstractmethod
    def open(self) -> None:
        """Initialize the operator."""
        pass

    @abstractmethod
    def next(self) -> Any | None:
        """Return the next row or None if exhausted."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Clean up resources."""
        pass

    def __iter__(self) -> Iterator[Any]:
        """Allow iteration over operator results."""
        self.open()
        try:
            while True:
                row = self.next()
                if row is None:
                    break
                yield row
        finally:
            self.close()


class ExpressionEvaluator:
    """Evaluates expressions against rows.

    Sub-query results are computed before evaluation starts and passed in,
    keyed by the sub-query expression object.
    """

    def __init__(self, subquery_values: dict[int, list[Any]] | None = None) -> None:
        self._subquery_values = subquery_values or {}

    def evaluate(self, expr: Expression, row: Row) -> Any:
        if isinstance(expr, Constant):
            value = expr.value
            return value.id if isinstance(value, Entity) else value
        elif isinstance(expr, EntityPath):
            record = row.get(expr.alias)
            return None if record is None else record.id
        elif isinstance(expr, AssociationPath):
            record = row.get(expr.alias)
            return None if record is None else record.get(expr.column)
        elif isinstance(expr, Path):
            record = row.get(expr.alias)
            return None if record is None else record.get(expr.column)
        elif isinstance(expr, Comparison):
            return self._evaluate_comparison(expr, row)
        elif isinstance(expr, Logical):
            return self._evaluate_logical(expr, row)
        elif isinstance(expr, Aggregate):
            try:
                return row.aggregates[expr]
            except KeyError:
                raise InvalidOperationError(f"Aggregate {expr} used outside of grouping") from None
        elif isinstance(expr, Case):
            return self._evaluate_case(expr, row)
        elif isinstance(expr, Concat):
            parts = [self.evaluate(p, row) for p in expr.parts]
            if any(p is None for p in parts):
                return None
            return "".join(str(p) for p in parts)
        elif isinstance(expr, StringValue):
            value = self.evaluate(expr.arg, row)
            return None if value is None else str(value)
        elif isinstance(expr, SubQueryExpression):
            values = self._subquery_values[id(expr)]
            if len(values) > 1:
                raise NonUniqueResultError(f"Scalar sub-query returned {len(values)} rows: {expr}")
            return values[0] if values else None
        raise InvalidOperationError(f"Cannot evaluate {type(expr).__name__}: {expr}")

    def matches(self, predicate: Expression | None, row: Row) -> bool:
        """True only when the predicate is true (not false, not unknown)."""
        if predicate is None:
            return True
        return self.evaluate(predicate, row) is True

    def _evaluate_comparison(self, expr: Comparison, row: Row) -> bool | None:
        left = self.evaluate(expr.left, row)
        if expr.op == ComparisonOp.IS_NULL:
            return left is None
        if expr.op == ComparisonOp.IS_NOT_NULL:
            return left is not None
        if expr.op in (ComparisonOp.IN, ComparisonOp.NOT_IN):
            found = self._contains(left, self._value_set(expr.right, row))
            if expr.op == ComparisonOp.NOT_IN and found is not None:
                return not found
            return found
        if expr.op == ComparisonOp.BETWEEN:
            low, high = (self.evaluate(bound, row) for bound in expr.right.items)
            if left is None or low is None or high is None:
                return None
            return self._check(lambda: low <= left <= high, expr)
        right = self.evaluate(expr.right, row)
        return self._compare(left, expr.op, right, expr)

    def _value_set(self, right: Expression | None, row: Row) -> list[Any]:
        if isinstance(right, SubQueryExpression):
            return self._subquery_values[id(right)]
        if isinstance(right, ValueList):
            return [self.evaluate(item, row) for item in right.items]
        raise InvalidOperationError(f"IN requires a list or a sub-query, got {right}")

    @staticmethod
    def _contains(left: Any, values: list[Any]) -> bool | None:
        if left is None:
            return None
        if any(v is not None and v == left for v in values):
            return True
        if any(v is None for v in values):
            return None
        return False

    def _compare(self, left: Any, op: ComparisonOp, right: Any, expr: Comparison) -> bool | None:
        """Compare two values with the given operator."""
        if left is None or right is None:
            return None
        if op == ComparisonOp.EQ:
            return left == right
        elif op == ComparisonOp.NE:
            return left != right
        elif op == ComparisonOp.LT:
            return self._check(lambda: left < right, expr)
        elif op == ComparisonOp.LE:
            return self._check(lambda: left <= right, expr)
        elif op == ComparisonOp.GT:
            return self._check(lambda: left > right, expr)
        elif op == ComparisonOp.GE:
            return self._check(lambda: left >= right, expr)
        elif op == ComparisonOp.LIKE:
            return like_pattern(str(right)).fullmatch(str(left)) is not None
        elif op == ComparisonOp.STARTS_WITH:
            return str(left).startswith(str(right))
        elif op == ComparisonOp.CONTAINS:
            return str(right) in str(left)
        elif op == ComparisonOp.ENDS_WITH:
            return str(left).endswith(str(right))
        raise InvalidOperationError(f"Unsupported operator {op.value}")

    @staticmethod
    def _check(compare: Any, expr: Comparison) -> bool:
        try:
            return compare()
        except TypeError as e:
            raise TypeMismatchError(f"Cannot evaluate {expr}: {e}") from e

    def _evaluate_logical(self, expr: Logical, row: Row) -> bool | None:
        if expr.op == LogicalOp.NOT:
            value = self.evaluate(expr.operands[0], row)
            return None if value is None else not value
        if expr.op == LogicalOp.AND:
            result: bool | None = True
            for operand in expr.operands:
                value = self.evaluate(operand, row)
                if value is False:
                    return False
                if value is None:
                    result = None
            return result
        result = False
        for operand in expr.operands:
            value = self.evaluate(operand, row)
            if value is True:
                return True
            if value is None:
                result = None
        return result

    def _evaluate_case(self, expr: Case, row: Row) -> Any:
        if expr.subject is not None:
            subject = self.evaluate(expr.subject, row)
            for condition, result in expr.branches:
                if subject is not None and subject == self.evaluate(condition, row):
                    return self.evaluate(result, row)
        else:
            for condition, result in expr.branches:
                if self.evaluate(condition, row) is True:
                    return self.evaluate(result, row)
        if expr.otherwise is None:
            return None
        return self.evaluate(expr.otherwise, row)


@lru_cache(maxsize=256)
def like_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a SQL LIKE pattern (``%`` any run, ``_`` one character)."""
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.DOTALL)


class SeqScanOperator(Operator):
    """Sequential scan over one entity store, binding each record to an alias."""

    def __init__(self, alias: str, entity_name: str, context: PersistenceContext, metrics: MetricsRegistry) -> None:
        self._alias = alias
        self._entity_name = entity_name
        self._context = context
        self._metrics = metrics
        self._records: Iterator[Record] = iter(())

    def open(self) -> None:
        self._records = self._context.store_for(self._entity_name).scan()

    def next(self) -> Row | None:
        record = next(self._records, None)
        if record is None:
            return None
        self._metrics.rows_scanned_total.labels(entity=self._entity_name).inc()
        return Row(bindings={self._alias: record})

    def close(self) -> None:
        self._records = iter(())


class NestedLoopJoinOperator(Operator):
    """Nested-loop join of the child's rows with every record of one store.

    The inner side is scanned once per open(). A left join emits a child row
    with the alias bound to None when no inner record satisfies the condition.
    """

    def __init__(
        self,
        child: Operator,
        alias: str,
        entity_name: str,
        join_type: JoinType,
        condition: Expression | None,
        evaluator: ExpressionEvaluator,
        context: PersistenceContext,
        metrics: MetricsRegistry,
    ) -> None:
        self._child = child
        self._alias = alias
        self._entity_name = entity_name
        self._join_type = join_type
        self._condition = condition
        self._evaluator = evaluator
        self._context = context
        self._metrics = metrics
        self._inner: list[Record] = []
        self._pending: Iterator[Row] = iter(())

    def open(self) -> None:
        self._child.open()
        self._inner = list(self._context.store_for(self._entity_name).scan())
        self._metrics.rows_scanned_total.labels(entity=self._entity_name).inc(len(self._inner))
        self._pending = iter(())

    def next(self) -> Row | None:
        while True:
            row = next(self._pending, None)
            if row is not None:
                return row
            outer = self._child.next()
            if outer is None:
                return None
            self._pending = iter(self._matches(outer))

    def close(self) -> None:
        self._child.close()
        self._inner = []
        self._pending = iter(())

    def _matches(self, outer: Row) -> list[Row]:
        matched = []
        for record in self._inner:
            candidate = outer.bind(self._alias, record)
            if self._evaluator.matches(self._condition, candidate):
                matched.append(candidate)
        if not matched and self._join_type == JoinType.LEFT:
            matched.append(outer.bind(self._alias, None))
        return matched


class FilterOperator(Operator):
    """Filter operator that applies a predicate."""

    def __init__(self, child: Operator, predicate: Expression, evaluator: ExpressionEvaluator) -> None:
        self._child = child
        self._predicate = predicate
        self._evaluator = evaluator

    def open(self) -> None:
        self._child.open()

    def next(self) -> Row | None:
        while True:
            row = self._child.next()
            if row is None:
                return None
            if self._evaluator.matches(self._predicate, row):
                return row

    def close(self) -> None:
        self._child.close()


class AggregateOperator(Operator):
    """Groups rows and computes aggregates per group.

    Groups come out in order of first appearance. Each output row carries
    the bindings of its group's first row (for group-by expressions) and
    the aggregate values. Without GROUP BY exactly one row is produced,
    even for empty input.
    """

    def __init__(
        self,
        child: Operator,
        group_by: tuple[Expression, ...],
        aggregates: list[Aggregate],
        evaluator: ExpressionEvaluator,
    ) -> None:
        self._child = child
        self._group_by = group_by
        self._aggregates = aggregates
        self._evaluator = evaluator
        self._groups: list[Row] = []
        self._current_idx = 0

    def open(self) -> None:
        self._child.open()
        groups: dict[tuple, list[Row]] = {}
        while True:
            row = self._child.next()
            if row is None:
                break
            key = tuple(self._evaluator.evaluate(g, row) for g in self._group_by)
            groups.setdefault(key, []).append(row)

        if not groups and not self._group_by:
            groups[()] = []

        self._groups = [
            Row(
                bindings=rows[0].bindings if rows else {},
                aggregates={agg: self._compute(agg, rows) for agg in self._aggregates},
            )
            for rows in groups.values()
        ]
        self._current_idx = 0

    def next(self) -> Row | None:
        if self._current_idx >= len(self._groups):
            return None
        row = self._groups[self._current_idx]
        self._current_idx += 1
        return row

    def close(self) -> None:
        self._child.close()
        self._groups = []
        self._current_idx = 0

    def _compute(self, agg: Aggregate, rows: list[Row]) -> Any:
        if agg.arg is None:
            return len(rows)

        values = [self._evaluator.evaluate(agg.arg, row) for row in rows]
        values = [v for v in values if v is not None]
        if agg.distinct:
            values = list(dict.fromkeys(values))

        if agg.func == AggregateFunc.COUNT:
            return len(values)
        if not values:
            return None
        if agg.func == AggregateFunc.SUM:
            return sum(values)
        if agg.func == AggregateFunc.AVG:
            return sum(values) / len(values)
        if agg.func == AggregateFunc.MAX:
            return max(values)
        if agg.func == AggregateFunc.MIN:
            return min(values)
        raise InvalidOperationError(f"Unsupported aggregate {agg.func.value}")


class SortOperator(Operator):
    """Stable multi-key sort with per-key null placement."""

    def __init__(
        self,
        child: Operator,
        order_by: tuple[OrderSpecifier, ...],
        evaluator: ExpressionEvaluator,
        nulls_low: bool = True,
    ) -> None:
        self._child = child
        self._order_by = order_by
        self._evaluator = evaluator
        self._nulls_low = nulls_low
        self._sorted_rows: list[Row] = []
        self._current_idx = 0

    def open(self) -> None:
        self._child.open()
        # Materialize all rows and sort
        decorated = []
        while True:
            row = self._child.next()
            if row is None:
                break
            keys = [self._evaluator.evaluate(spec.target, row) for spec in self._order_by]
            decorated.append((keys, row))

        decorated.sort(key=cmp_to_key(self._compare))
        self._sorted_rows = [row for _, row in decorated]
        self._current_idx = 0

    def next(self) -> Row | None:
        if self._current_idx >= len(self._sorted_rows):
            return None
        row = self._sorted_rows[self._current_idx]
        self._current_idx += 1
        return row

    def close(self) -> None:
        self._child.close()
        self._sorted_rows = []
        self._current_idx = 0

    def _nulls_first(self, spec: OrderSpecifier) -> bool:
        if spec.null_handling == NullHandling.NULLS_FIRST:
            return True
        if spec.null_handling == NullHandling.NULLS_LAST:
            return False
        return spec.ascending if self._nulls_low else not spec.ascending

    def _compare(self, a: tuple[list[Any], Row], b: tuple[list[Any], Row]) -> int:
        for spec, left, right in zip(self._order_by, a[0], b[0]):
            if left is None and right is None:
                continue
            if left is None or right is None:
                first = self._nulls_first(spec)
                return (-1 if first else 1) if left is None else (1 if first else -1)
            try:
                result = (left > right) - (left < right)
            except TypeError as e:
                raise TypeMismatchError(f"Cannot order by {spec.target}: {e}") from e
            if not spec.ascending:
                result = -result
            if result:
                return result
        return 0


class ProjectOperator(Operator):
    """Evaluates the projection, yielding one value tuple per row.

    Entity projections yield ``EntityRow`` placeholders; materialization
    happens after paging.
    """

    def __init__(
        self,
        child: Operator,
        projection: tuple[Expression, ...],
        evaluator: ExpressionEvaluator,
        context: PersistenceContext,
        fetch_plan: dict[str, dict[str, str]],
    ) -> None:
        self._child = child
        self._projection = projection
        self._evaluator = evaluator
        self._context = context
        self._fetch_plan = fetch_plan

    def open(self) -> None:
        self._child.open()

    def next(self) -> tuple | None:
        row = self._child.next()
        if row is None:
            return None
        return tuple(self._project(expr, row) for expr in self._projection)

    def close(self) -> None:
        self._child.close()

    def _project(self, expr: Expression, row: Row) -> Any:
        if isinstance(expr, EntityPath):
            record = row.get(expr.alias)
            if record is None:
                return None
            fetched = {
                name: row.get(target_alias)
                for name, target_alias in self._fetch_plan.get(expr.alias, {}).items()
            }
            return EntityRow(expr.entity_name, record, record.id, fetched)
        if isinstance(expr, AssociationPath):
            target_id = self._evaluator.evaluate(expr, row)
            if target_id is None:
                return None
            target_name = expr.target.entity_name
            record = self._context.store_for(target_name).find_by_id(target_id)
            return None if record is None else EntityRow(target_name, record, record.id)
        return self._evaluator.evaluate(expr, row)


class DistinctOperator(Operator):
    """Drops repeated projected rows, keeping the first occurrence."""

    def __init__(self, child: Operator) -> None:
        self._child = child
        self._seen: set[tuple] = set()

    def open(self) -> None:
        self._child.open()
        self._seen = set()

    def next(self) -> tuple | None:
        while True:
            values = self._child.next()
            if values is None:
                return None
            if values not in self._seen:
                self._seen.add(values)
                return values

    def close(self) -> None:
        self._child.close()
        self._seen = set()


class LimitOperator(Operator):
    """Limit operator: skips ``offset`` rows, then returns at most ``limit``."""

    def __init__(self, child: Operator, limit: int | None, offset: int = 0) -> None:
        self._child = child
        self._limit = limit
        self._offset = offset
        self._returned = 0
        self._offset_done = False

    def open(self) -> None:
        self._child.open()
        self._returned = 0
        self._offset_done = False

    def next(self) -> Any | None:
        # Skip offset rows (only once at the beginning)
        if not self._offset_done:
            self._offset_done = True
            for _ in range(self._offset):
                if self._child.next() is None:
                    return None

        if self._limit is not None and self._returned >= self._limit:
            return None
        row = self._child.next()
        if row is None:
            return None
        self._returned += 1
        return row

    def close(self) -> None:
        self._child.close()


class ListOperator(Operator):
    """Replays already materialized rows."""

    def __init__(self, rows: list[Any]) -> None:
        self._rows = rows
        self._current_idx = 0

    def open(self) -> None:
        self._current_idx = 0

    def next(self) -> Any | None:
        if self._current_idx >= len(self._rows):
            return None
        row = self._rows[self._current_idx]
        self._current_idx += 1
        return row

    def close(self) -> None:
        pass


class QueryExecutor:
    """Executes queries against the stores of a persistence context.

    The executor validates a query, evaluates its sub-queries, builds the
    physical operator tree and runs it using the Volcano iterator model.
    """

    def __init__(
        self,
        context: PersistenceContext,
        config: QueryConfig | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._context = context
        self._config = config or QueryConfig()
        self._metrics = metrics or get_metrics()

    def execute(self, metadata: QueryMetadata) -> ExecutionResult:
        """Run a query and return its (paged) results and unpaged total."""
        kind = self._kind(metadata)
        return self._run_instrumented(kind, metadata, lambda: self._execute(metadata))

    def count(self, metadata: QueryMetadata) -> int:
        """Count result rows, ignoring offset and limit."""
        return self._run_instrumented("count", metadata, lambda: len(self._rows(metadata)))

    def fetch_unique(self, metadata: QueryMetadata) -> Any:
        """Return the only result, None for no result.

        Raises:
            NonUniqueResultError: If more than one row matches.
        """
        values = self.execute(metadata).values
        if len(values) > 1:
            raise NonUniqueResultError(f"Expected at most one result, got {len(values)}")
        return values[0] if values else None

    def _run_instrumented(self, kind: str, metadata: QueryMetadata, run: Any) -> Any:
        start = time.perf_counter()
        with trace_span("query.execute", {"query.kind": kind}) as span:
            try:
                self._validate(metadata, outer_aliases=())
                self._auto_flush()
                result = run()
            except EntityQueryError as e:
                self._metrics.queries_total.labels(kind=kind, status="error").inc()
                logger.warning("query_failed", kind=kind, query=str_query(metadata), error=str(e))
                raise

            duration = time.perf_counter() - start
            rows = result.total if isinstance(result, ExecutionResult) else result
            span.set_attribute("query.rows", rows)
            self._metrics.queries_total.labels(kind=kind, status="success").inc()
            self._metrics.query_latency_seconds.labels(kind=kind).observe(duration)
            logger.debug(
                "query_executed",
                kind=kind,
                rows=rows,
                duration_ms=round(duration * 1000, 3),
            )
            return result

    def _auto_flush(self) -> None:
        if self._config.auto_flush and self._context.flush_mode == FlushMode.AUTO:
            self._context.flush()

    def _execute(self, metadata: QueryMetadata) -> ExecutionResult:
        rows = self._rows(metadata)
        paged = list(LimitOperator(ListOperator(rows), limit=metadata.limit, offset=metadata.offset))
        values = [self._shape(metadata, self._materialize_row(values)) for values in paged]
        return ExecutionResult(values=values, total=len(rows))

    def _rows(self, metadata: QueryMetadata) -> list[tuple]:
        """Projected (unmaterialized) rows before paging."""
        evaluator = ExpressionEvaluator(self._evaluate_subqueries(metadata))
        return list(self._build_operator_tree(metadata, evaluator))

    def _evaluate_subqueries(self, metadata: QueryMetadata) -> dict[int, list[Any]]:
        """Run embedded sub-queries (their own sub-queries first)."""
        results: dict[int, list[Any]] = {}
        set_operands = {
            id(node.right)
            for expr in metadata.expressions()
            for node in expr.walk()
            if isinstance(node, Comparison)
            and node.op in (ComparisonOp.IN, ComparisonOp.NOT_IN)
            and isinstance(node.right, SubQueryExpression)
        }
        for sub in metadata.subqueries():
            if id(sub) in results:
                continue
            sub_metadata = sub.query.metadata
            if len(sub_metadata.projection) != 1:
                raise InvalidOperationError(f"Sub-query must project exactly one expression: {sub}")
            rows = list(LimitOperator(
                ListOperator(self._rows(sub_metadata)),
                limit=sub_metadata.limit,
                offset=sub_metadata.offset,
            ))
            values = [v.entity_id if isinstance(v, EntityRow) else v for (v,) in rows]
            if id(sub) not in set_operands and len(values) > 1:
                raise NonUniqueResultError(f"Scalar sub-query returned {len(values)} rows: {sub}")
            results[id(sub)] = values
            self._metrics.subqueries_total.inc()
        return results

    def _build_operator_tree(self, metadata: QueryMetadata, evaluator: ExpressionEvaluator) -> Operator:
        """Build a physical operator tree from query metadata."""
        first, *others = metadata.sources
        operator: Operator = SeqScanOperator(first.alias, first.entity_name, self._context, self._metrics)

        for source in others:
            operator = NestedLoopJoinOperator(
                operator, source.alias, source.entity_name, JoinType.INNER, None,
                evaluator, self._context, self._metrics,
            )

        for join in metadata.joins:
            operator = NestedLoopJoinOperator(
                operator,
                join.target.alias,
                join.target.entity_name,
                join.join_type,
                self._join_condition(join),
                evaluator,
                self._context,
                self._metrics,
            )

        if metadata.where is not None:
            operator = FilterOperator(operator, metadata.where, evaluator)

        aggregates = self._collect_aggregates(metadata)
        if metadata.group_by or aggregates:
            operator = AggregateOperator(operator, metadata.group_by, aggregates, evaluator)
            if metadata.having is not None:
                operator = FilterOperator(operator, metadata.having, evaluator)

        if metadata.order_by:
            nulls_low = self._config.null_ordering == "low"
            operator = SortOperator(operator, metadata.order_by, evaluator, nulls_low)

        operator = ProjectOperator(
            operator, metadata.projection, evaluator, self._context, self._fetch_plan(metadata)
        )

        if metadata.distinct:
            operator = DistinctOperator(operator)
        return operator

    @staticmethod
    def _join_condition(join: JoinSpec) -> BooleanExpression | None:
        if join.association is None:
            return join.on
        follows = join.association.eq(join.target.id)
        return follows.and_(join.on)

    @staticmethod
    def _fetch_plan(metadata: QueryMetadata) -> dict[str, dict[str, str]]:
        """Owner alias -> {association name: joined alias} for fetch joins."""
        plan: dict[str, dict[str, str]] = {}
        for join in metadata.joins:
            if join.fetch and join.association is not None:
                plan.setdefault(join.association.alias, {})[join.association.name] = join.target.alias
        return plan

    @staticmethod
    def _collect_aggregates(metadata: QueryMetadata) -> list[Aggregate]:
        exprs = list(metadata.projection)
        if metadata.having is not None:
            exprs.append(metadata.having)
        exprs.extend(spec.target for spec in metadata.order_by)

        found: dict[Aggregate, None] = {}
        for expr in exprs:
            for node in expr.walk():
                if isinstance(node, Aggregate):
                    found[node] = None
        return list(found)

    def _materialize_row(self, values: tuple) -> tuple:
        return tuple(
            self._context.materialize(v.entity_name, v.record, v.fetched)
            if isinstance(v, EntityRow)
            else v
            for v in values
        )

    @staticmethod
    def _shape(metadata: QueryMetadata, values: tuple) -> Any:
        if metadata.unique_projection:
            return values[0]
        return Tuple(metadata.projection, values)

    @staticmethod
    def _kind(metadata: QueryMetadata) -> str:
        if not metadata.unique_projection:
            return "tuple"
        if isinstance(metadata.projection[0], (EntityPath, AssociationPath)):
            return "entity"
        return "scalar"

    # Validation

    def _validate(self, metadata: QueryMetadata, outer_aliases: tuple[str, ...]) -> None:
        """Check aliases and columns before any row is scanned.

        Raises:
            InvalidOperationError: For a missing FROM, a duplicate or undeclared
                alias, an unknown column, an association joined onto the wrong
                entity, an aggregate in WHERE, or a correlated sub-query.
        """
        if not metadata.sources:
            raise InvalidOperationError("Query has no FROM clause")
        if not metadata.projection:
            raise InvalidOperationError("Query has no projection")

        scope: dict[str, EntityMapping] = {}

        def declare(path: EntityPath) -> None:
            if path.alias in scope:
                raise InvalidOperationError(f"Alias '{path.alias}' is declared twice")
            scope[path.alias] = get_mapping(path)

        for source in metadata.sources:
            declare(source)

        for join in metadata.joins:
            if join.association is not None:
                self._check_paths(join.association, scope, outer_aliases, "JOIN")
                if join.association.target.entity_name != join.target.entity_name:
                    raise InvalidOperationError(
                        f"Cannot join {join.association} as {join.target.entity_name} "
                        f"'{join.target.alias}'"
                    )
            declare(join.target)
            if join.on is not None:
                self._check_paths(join.on, scope, outer_aliases, "ON")

        for expr in metadata.projection:
            self._check_paths(expr, scope, outer_aliases, "SELECT")
        if metadata.where is not None:
            self._check_paths(metadata.where, scope, outer_aliases, "WHERE")
            if any(isinstance(n, Aggregate) for n in metadata.where.walk()):
                raise InvalidOperationError("Aggregates are not allowed in WHERE; use HAVING")
        for expr in metadata.group_by:
            self._check_paths(expr, scope, outer_aliases, "GROUP BY")
        if metadata.having is not None:
            self._check_paths(metadata.having, scope, outer_aliases, "HAVING")
        for spec in metadata.order_by:
            self._check_paths(spec.target, scope, outer_aliases, "ORDER BY")

        visible = outer_aliases + tuple(scope)
        for sub in metadata.subqueries():
            self._validate(sub.query.metadata, outer_aliases=visible)

    @staticmethod
    def _check_paths(
        expr: Expression,
        scope: dict[str, EntityMapping],
        outer_aliases: tuple[str, ...],
        clause: str,
    ) -> None:
        for node in expr.walk():
            if not isinstance(node, (EntityPath, Path)):
                continue
            mapping = scope.get(node.alias)
            if mapping is None:
                if node.alias in outer_aliases:
                    raise InvalidOperationError(
                        f"Correlated sub-queries are not supported: '{node.alias}' "
                        f"in {clause} belongs to an enclosing query"
                    )
                raise InvalidOperationError(f"Undeclared alias '{node.alias}' in {clause}: {expr}")
            if isinstance(node, AssociationPath):
                if not any(a.name == node.name for a in mapping.associations):
                    raise InvalidOperationError(f"{mapping.name} has no association '{node.name}'")
            elif isinstance(node, Path) and not mapping.has_column(node.column):
                raise InvalidOperationError(f"{mapping.name} has no column '{node.column}'")


def str_query(metadata: QueryMetadata) -> str:
    """Readable one-line form of a query for log events."""
    projection = ", ".join(str(p) for p in metadata.projection)
    sources = ", ".join(f"{s.entity_name} {s.alias}" for s in metadata.sources)
    text = f"select {projection} from {sources}"
    if metadata.joins:
        text += " " + " ".join(str(j) for j in metadata.joins)
    if metadata.where is not None:
        text += f" where {metadata.where}"
    return text
