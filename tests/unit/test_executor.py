"""Unit tests for Query Executor."""

from __future__ import annotations

import pytest

from entity_query.adapters.outbound import StoreRegistry, UnitOfWork
from entity_query.application import (
    AggregateOperator,
    DistinctOperator,
    EntityRow,
    ExpressionEvaluator,
    FilterOperator,
    LimitOperator,
    ListOperator,
    NestedLoopJoinOperator,
    Query,
    QueryExecutor,
    Row,
    SeqScanOperator,
    SortOperator,
    SubQuery,
)
from entity_query.application.executor import like_pattern, str_query
from entity_query.application.query import JoinType
from entity_query.domain.entities import Member, Record, Team
from entity_query.domain.exceptions import (
    InvalidOperationError,
    NonUniqueResultError,
    TypeMismatchError,
)
from entity_query.domain.metamodel import QMember, QTeam, member, team
from entity_query.domain.value_objects import (
    Comparison,
    ComparisonOp,
    Constant,
    EntityId,
    Expressions,
    Logical,
    LogicalOp,
    StringPath,
)
from entity_query.infrastructure.config import QueryConfig
from entity_query.infrastructure.metrics import MetricsRegistry


def member_row(user_name: str | None, age: int | None, team_id: int | None = None, id: int = 1) -> Row:
    """Build a row binding ``member`` to a stored member."""
    record = Record(EntityId(id), {"user_name": user_name, "age": age, "team_id": team_id})
    return Row(bindings={"member": record})


@pytest.fixture
def uow(metrics_registry: MetricsRegistry) -> UnitOfWork:
    """Provide a unit of work holding teamA (member1, member2) and teamB (member3, member4)."""
    unit = UnitOfWork(StoreRegistry(), metrics=metrics_registry)
    team_a = Team("teamA")
    team_b = Team("teamB")
    unit.persist(team_a)
    unit.persist(team_b)
    unit.persist(Member("member1", 10, team_a))
    unit.persist(Member("member2", 20, team_a))
    unit.persist(Member("member3", 30, team_b))
    unit.persist(Member("member4", 40, team_b))
    return unit


@pytest.fixture
def executor(uow: UnitOfWork, metrics_registry: MetricsRegistry) -> QueryExecutor:
    """Create a query executor over the sample unit of work."""
    return QueryExecutor(uow, QueryConfig(), metrics_registry)


@pytest.mark.unit
class TestExpressionEvaluator:
    """Tests for expression evaluation and three-valued logic."""

    @pytest.fixture
    def evaluator(self) -> ExpressionEvaluator:
        return ExpressionEvaluator()

    def test_path_and_constant(self, evaluator: ExpressionEvaluator) -> None:
        """Paths read the bound record; constants evaluate to themselves."""
        row = member_row("member1", 10, team_id=2, id=7)

        assert evaluator.evaluate(member.user_name, row) == "member1"
        assert evaluator.evaluate(member.id, row) == 7
        assert evaluator.evaluate(member, row) == 7
        assert evaluator.evaluate(member.team, row) == 2
        assert evaluator.evaluate(Constant(5), row) == 5

    def test_unbound_alias_is_null(self, evaluator: ExpressionEvaluator) -> None:
        """A path over an absent left-join side evaluates to None."""
        row = member_row("member1", 10).bind("team", None)
        assert evaluator.evaluate(team.name, row) is None

    def test_entity_constant_is_its_id(self, evaluator: ExpressionEvaluator) -> None:
        """Comparing an association with an entity compares ids."""
        team_a = Team("teamA")
        team_a.assign_id(EntityId(2))

        assert evaluator.evaluate(member.team.eq(team_a), member_row("m", 1, team_id=2)) is True
        assert evaluator.evaluate(member.team.eq(team_a), member_row("m", 1, team_id=3)) is False

    def test_comparison_with_null_is_unknown(self, evaluator: ExpressionEvaluator) -> None:
        """Any comparison with null yields None."""
        row = member_row(None, 10)

        assert evaluator.evaluate(member.user_name.eq("member1"), row) is None
        assert evaluator.evaluate(member.user_name.ne("member1"), row) is None
        assert evaluator.evaluate(member.user_name.like("m%"), row) is None
        assert not evaluator.matches(member.user_name.ne("member1"), row)

    def test_null_checks(self, evaluator: ExpressionEvaluator) -> None:
        """IS NULL and IS NOT NULL are never unknown."""
        row = member_row(None, 10)

        assert evaluator.evaluate(member.user_name.is_null(), row) is True
        assert evaluator.evaluate(member.age.is_not_null(), row) is True

    def test_kleene_logic(self, evaluator: ExpressionEvaluator) -> None:
        """AND/OR/NOT follow Kleene logic."""
        row = member_row(None, 10)
        unknown = member.user_name.eq("x")
        true = member.age.eq(10)
        false = member.age.eq(11)

        assert evaluator.evaluate(unknown.and_(false), row) is False
        assert evaluator.evaluate(unknown.and_(true), row) is None
        assert evaluator.evaluate(unknown.or_(true), row) is True
        assert evaluator.evaluate(unknown.or_(false), row) is None
        assert evaluator.evaluate(unknown.not_(), row) is None
        assert evaluator.evaluate(false.not_(), row) is True

    def test_in_with_null_member(self, evaluator: ExpressionEvaluator) -> None:
        """IN is unknown when no value matches and the list has a null."""
        row = member_row("member1", 10)
        values = Comparison(member.age, ComparisonOp.IN, Expressions.constant(None))

        assert evaluator.evaluate(member.age.in_(10, None), row) is True
        assert evaluator.evaluate(member.age.in_(20, None), row) is None
        assert evaluator.evaluate(member.age.not_in(20, 30), row) is True
        with pytest.raises(InvalidOperationError):
            evaluator.evaluate(values, row)

    def test_between(self, evaluator: ExpressionEvaluator) -> None:
        """BETWEEN includes both bounds."""
        assert evaluator.evaluate(member.age.between(10, 20), member_row("m", 10)) is True
        assert evaluator.evaluate(member.age.between(10, 20), member_row("m", 20)) is True
        assert evaluator.evaluate(member.age.between(10, 20), member_row("m", 21)) is False
        assert evaluator.evaluate(member.age.between(10, 20), member_row("m", None)) is None

    def test_text_predicates(self, evaluator: ExpressionEvaluator) -> None:
        """LIKE, starts_with, contains and ends_with are case-sensitive."""
        row = member_row("member1", 10)

        assert evaluator.evaluate(member.user_name.like("member_"), row) is True
        assert evaluator.evaluate(member.user_name.like("%ber%"), row) is True
        assert evaluator.evaluate(member.user_name.like("Member%"), row) is False
        assert evaluator.evaluate(member.user_name.starts_with("mem"), row) is True
        assert evaluator.evaluate(member.user_name.contains("mber"), row) is True
        assert evaluator.evaluate(member.user_name.ends_with("1"), row) is True

    def test_incomparable_values(self, evaluator: ExpressionEvaluator) -> None:
        """Ordering text against a number raises TypeMismatchError."""
        predicate = Comparison(member.user_name, ComparisonOp.GT, Constant(5))
        with pytest.raises(TypeMismatchError):
            evaluator.evaluate(predicate, member_row("member1", 10))

    def test_case(self, evaluator: ExpressionEvaluator) -> None:
        """Simple and searched CASE pick the first matching branch."""
        simple = member.age.when(10).then("ten").when(20).then("twenty").otherwise("other")
        searched = (
            Expressions.cases()
            .when(member.age.between(0, 20)).then("0~20")
            .when(member.age.between(21, 30)).then("21~30")
            .otherwise("other")
        )

        assert evaluator.evaluate(simple, member_row("m", 20)) == "twenty"
        assert evaluator.evaluate(simple, member_row("m", 30)) == "other"
        assert evaluator.evaluate(searched, member_row("m", 25)) == "21~30"
        assert evaluator.evaluate(member.age.when(10).then("ten").end(), member_row("m", 5)) is None

    def test_concat(self, evaluator: ExpressionEvaluator) -> None:
        """Concat renders numbers as text; a null part makes it null."""
        expr = member.user_name.concat("_").concat(member.age.string_value())

        assert evaluator.evaluate(expr, member_row("member1", 10)) == "member1_10"
        assert evaluator.evaluate(expr, member_row(None, 10)) is None

    def test_aggregate_outside_grouping(self, evaluator: ExpressionEvaluator) -> None:
        """An aggregate without grouped values cannot be evaluated."""
        with pytest.raises(InvalidOperationError):
            evaluator.evaluate(member.age.sum(), member_row("m", 10))

    def test_like_pattern_escapes_regex(self) -> None:
        """Regex metacharacters in LIKE patterns are literal."""
        assert like_pattern("a.c%").fullmatch("a.cd")
        assert not like_pattern("a.c%").fullmatch("abcd")

    def test_like_pattern_cache_is_bounded(self) -> None:
        """Compiled patterns are reused and the cache does not grow past its limit."""
        like_pattern.cache_clear()
        for i in range(1000):
            like_pattern(f"p{i}%")

        assert like_pattern("p999%") is like_pattern("p999%")
        info = like_pattern.cache_info()
        assert info.currsize == info.maxsize == 256


@pytest.mark.unit
class TestOperators:
    """Tests for the Volcano operators."""

    def test_seq_scan(self, uow: UnitOfWork, metrics_registry: MetricsRegistry) -> None:
        """SeqScan binds every record to the alias in insertion order."""
        scan = SeqScanOperator("member", "Member", uow, metrics_registry)

        rows = list(scan)

        assert [r.get("member").get("user_name") for r in rows] == [
            "member1", "member2", "member3", "member4"
        ]
        scanned = metrics_registry.registry.get_sample_value(
            "entity_query_rows_scanned_total", {"entity": "Member"}
        )
        assert scanned == 4.0

    def test_filter(self, uow: UnitOfWork, metrics_registry: MetricsRegistry) -> None:
        """Filter keeps rows whose predicate is true."""
        scan = SeqScanOperator("member", "Member", uow, metrics_registry)
        rows = list(FilterOperator(scan, member.age.goe(30), ExpressionEvaluator()))

        assert [r.get("member").get("age") for r in rows] == [30, 40]

    def test_inner_join(self, uow: UnitOfWork, metrics_registry: MetricsRegistry) -> None:
        """An inner join pairs each member with its team."""
        evaluator = ExpressionEvaluator()
        join = NestedLoopJoinOperator(
            SeqScanOperator("member", "Member", uow, metrics_registry),
            "team", "Team", JoinType.INNER, member.team.eq(team.id),
            evaluator, uow, metrics_registry,
        )

        pairs = [(r.get("member").get("user_name"), r.get("team").get("name")) for r in join]

        assert pairs == [
            ("member1", "teamA"), ("member2", "teamA"),
            ("member3", "teamB"), ("member4", "teamB"),
        ]

    def test_left_join_keeps_unmatched(self, uow: UnitOfWork, metrics_registry: MetricsRegistry) -> None:
        """A left join binds None when nothing matches."""
        evaluator = ExpressionEvaluator()
        join = NestedLoopJoinOperator(
            SeqScanOperator("member", "Member", uow, metrics_registry),
            "team", "Team", JoinType.LEFT,
            member.team.eq(team.id).and_(team.name.eq("teamA")),
            evaluator, uow, metrics_registry,
        )

        teams = [r.get("team") for r in join]

        assert [t.get("name") if t else None for t in teams] == ["teamA", "teamA", None, None]

    def test_aggregate_groups_in_first_appearance_order(self) -> None:
        """Groups come out in the order their first row arrived."""
        rows = [member_row("b", 10), member_row("a", 20), member_row("b", 30)]
        agg = AggregateOperator(
            ListOperator(rows), (member.user_name,), [member.age.sum()], ExpressionEvaluator()
        )

        result = [(r.get("member").get("user_name"), r.aggregates[member.age.sum()]) for r in agg]

        assert result == [("b", 40), ("a", 20)]

    def test_aggregate_empty_input(self) -> None:
        """Without GROUP BY an empty input still produces one row."""
        aggregates = [Expressions.count_all(), member.age.sum(), member.age.avg()]
        rows = list(AggregateOperator(ListOperator([]), (), aggregates, ExpressionEvaluator()))

        assert len(rows) == 1
        assert rows[0].aggregates == {
            Expressions.count_all(): 0,
            member.age.sum(): None,
            member.age.avg(): None,
        }

    def test_aggregate_skips_nulls(self) -> None:
        """count(x), sum and avg ignore nulls; count(*) does not."""
        rows = [member_row("a", 10), member_row("b", None), member_row("c", 20)]
        aggregates = [Expressions.count_all(), member.age.count(), member.age.avg()]
        (row,) = list(AggregateOperator(ListOperator(rows), (), aggregates, ExpressionEvaluator()))

        assert row.aggregates[Expressions.count_all()] == 3
        assert row.aggregates[member.age.count()] == 2
        assert row.aggregates[member.age.avg()] == 15.0

    def test_count_distinct(self) -> None:
        """count_distinct counts each value once."""
        rows = [member_row("a", 10), member_row("b", 10), member_row("c", 20)]
        agg = member.age.count_distinct()
        (row,) = list(AggregateOperator(ListOperator(rows), (), [agg], ExpressionEvaluator()))

        assert row.aggregates[agg] == 2

    def test_sort_nulls_low(self) -> None:
        """With low null ordering nulls lead ascending and trail descending."""
        rows = [member_row("b", 1), member_row(None, 2), member_row("a", 3)]

        asc = SortOperator(ListOperator(rows), (member.user_name.asc(),), ExpressionEvaluator())
        desc = SortOperator(ListOperator(rows), (member.user_name.desc(),), ExpressionEvaluator())

        assert [r.get("member").get("user_name") for r in asc] == [None, "a", "b"]
        assert [r.get("member").get("user_name") for r in desc] == ["b", "a", None]

    def test_sort_nulls_high(self) -> None:
        """With high null ordering nulls trail ascending."""
        rows = [member_row(None, 2), member_row("a", 3)]
        sort = SortOperator(
            ListOperator(rows), (member.user_name.asc(),), ExpressionEvaluator(), nulls_low=False
        )

        assert [r.get("member").get("user_name") for r in sort] == ["a", None]

    def test_sort_explicit_null_placement(self) -> None:
        """nulls_last/nulls_first override the default."""
        rows = [member_row(None, 2), member_row("a", 3)]
        last = SortOperator(
            ListOperator(rows), (member.user_name.asc().nulls_last(),), ExpressionEvaluator()
        )
        first = SortOperator(
            ListOperator(rows), (member.user_name.desc().nulls_first(),), ExpressionEvaluator()
        )

        assert [r.get("member").get("user_name") for r in last] == ["a", None]
        assert [r.get("member").get("user_name") for r in first] == [None, "a"]

    def test_sort_is_stable_multi_key(self) -> None:
        """Later keys break ties; full ties keep input order."""
        rows = [
            member_row("b", 100, id=1),
            member_row("a", 100, id=2),
            member_row("c", 50, id=3),
            member_row("a", 100, id=4),
        ]
        sort = SortOperator(
            ListOperator(rows), (member.age.desc(), member.user_name.asc()), ExpressionEvaluator()
        )

        assert [r.get("member").id for r in sort] == [2, 4, 1, 3]

    def test_limit_offset(self) -> None:
        """Limit skips offset rows and caps the rest."""
        rows = list(range(1, 11))

        assert list(LimitOperator(ListOperator(rows), limit=3, offset=2)) == [3, 4, 5]
        assert list(LimitOperator(ListOperator(rows), limit=None, offset=8)) == [9, 10]
        assert list(LimitOperator(ListOperator(rows), limit=5, offset=20)) == []
        assert list(LimitOperator(ListOperator(rows), limit=0)) == []

    def test_distinct_entity_rows(self) -> None:
        """Entity rows with the same key count as duplicates."""
        first = Record(EntityId(1), {"name": "teamA"})
        rows = [
            (EntityRow("Team", first, 1),),
            (EntityRow("Team", first.copy(), 1),),
            (EntityRow("Team", Record(EntityId(2), {"name": "teamB"}), 2),),
        ]

        assert len(list(DistinctOperator(ListOperator(rows)))) == 2

    def test_entity_row_requires_id(self) -> None:
        """An entity row is always keyed by its record's id."""
        record = Record(EntityId(3), {"name": "teamC"})

        with pytest.raises(TypeError):
            EntityRow("Team", record)  # type: ignore[call-arg]
        assert EntityRow("Team", record, record.id).entity_id == 3


@pytest.mark.unit
class TestQueryExecutor:
    """Tests for QueryExecutor."""

    def test_execute_entities(self, executor: QueryExecutor, uow: UnitOfWork) -> None:
        """Entity queries return managed instances."""
        metadata = Query().select(member).from_(member).where(member.age.gt(20)).metadata

        result = executor.execute(metadata)

        assert [m.user_name for m in result.values] == ["member3", "member4"]
        assert all(uow.contains(m) for m in result.values)
        assert result.total == 2

    def test_paging_skips_materialization(self, uow: UnitOfWork, metrics_registry: MetricsRegistry) -> None:
        """Rows cut by paging never enter the identity map."""
        uow.clear()
        executor = QueryExecutor(uow, QueryConfig(), metrics_registry)
        metadata = Query().select(member).from_(member).order_by(member.age.asc()).metadata
        metadata.offset = 3

        result = executor.execute(metadata)

        assert [m.user_name for m in result.values] == ["member4"]
        assert result.total == 4
        assert uow.managed_count == 1

    def test_count_ignores_paging(self, executor: QueryExecutor) -> None:
        """count() reports all rows."""
        metadata = Query().select(member).from_(member).metadata
        metadata.limit = 1

        assert executor.count(metadata) == 4

    def test_fetch_unique(self, executor: QueryExecutor) -> None:
        """fetch_unique returns one value, None, or raises."""
        one = Query().select(member.age).from_(member).where(member.user_name.eq("member2"))
        none = Query().select(member.age).from_(member).where(member.user_name.eq("nobody"))
        many = Query().select(member.age).from_(member)

        assert executor.fetch_unique(one.metadata) == 20
        assert executor.fetch_unique(none.metadata) is None
        with pytest.raises(NonUniqueResultError):
            executor.fetch_unique(many.metadata)

    def test_subquery_scalar(self, executor: QueryExecutor) -> None:
        """A scalar sub-query is evaluated once and compared per row."""
        sub = QMember("member_sub")
        metadata = (
            Query().select(member.user_name).from_(member)
            .where(member.age.eq(SubQuery.select(sub.age.max()).from_(sub)))
            .metadata
        )

        assert executor.execute(metadata).values == ["member4"]

    def test_subquery_in(self, executor: QueryExecutor) -> None:
        """IN accepts a multi-row sub-query."""
        sub = QMember("member_sub")
        metadata = (
            Query().select(member.age).from_(member)
            .where(member.age.in_(SubQuery.select(sub.age).from_(sub).where(sub.age.gt(10))))
            .metadata
        )

        assert executor.execute(metadata).values == [20, 30, 40]

    def test_subquery_scalar_with_many_rows(self, executor: QueryExecutor) -> None:
        """A scalar sub-query with several rows is an error."""
        sub = QMember("member_sub")
        metadata = (
            Query().select(member).from_(member)
            .where(member.age.eq(SubQuery.select(sub.age).from_(sub)))
            .metadata
        )

        with pytest.raises(NonUniqueResultError):
            executor.execute(metadata)

    def test_correlated_subquery_rejected(self, executor: QueryExecutor) -> None:
        """Sub-queries may not reference the enclosing query's aliases."""
        sub = QMember("member_sub")
        metadata = (
            Query().select(member).from_(member)
            .where(member.age.eq(
                SubQuery.select(sub.age.max()).from_(sub).where(sub.team.eq(member.team))
            ))
            .metadata
        )

        with pytest.raises(InvalidOperationError, match="Correlated"):
            executor.execute(metadata)

    def test_failed_query_counted(self, executor: QueryExecutor, metrics_registry: MetricsRegistry) -> None:
        """Failed queries are counted with status=error."""
        with pytest.raises(InvalidOperationError):
            executor.execute(Query().select(member).metadata)

        value = metrics_registry.registry.get_sample_value(
            "entity_query_queries_total", {"kind": "entity", "status": "error"}
        )
        assert value == 1.0

    def test_auto_flush_before_query(self, executor: QueryExecutor, uow: UnitOfWork) -> None:
        """Pending changes are visible to the next query."""
        found = uow.find(Member, EntityId(1))
        found.age = 99

        metadata = Query().select(member.age).from_(member).where(member.id.eq(1)).metadata

        assert executor.execute(metadata).values == [99]

    def test_no_auto_flush(self, uow: UnitOfWork, metrics_registry: MetricsRegistry) -> None:
        """With auto flush disabled the store keeps the old value."""
        executor = QueryExecutor(uow, QueryConfig(auto_flush=False), metrics_registry)
        uow.find(Member, EntityId(1)).age = 99

        metadata = Query().select(member.age).from_(member).where(member.id.eq(1)).metadata

        assert executor.execute(metadata).values == [10]

    def test_str_query(self) -> None:
        """str_query renders the select, from, joins and where clauses."""
        metadata = (
            Query().select(member).from_(member).join(member.team, team)
            .where(team.name.eq("teamA")).metadata
        )

        assert str_query(metadata) == (
            "select member from Member member inner join member.team team "
            "where team.name = 'teamA'"
        )


@pytest.mark.unit
class TestValidation:
    """Tests for checks performed before scanning."""

    def test_missing_from(self, executor: QueryExecutor) -> None:
        with pytest.raises(InvalidOperationError, match="FROM"):
            executor.execute(Query().select(member).metadata)

    def test_missing_projection(self, executor: QueryExecutor) -> None:
        with pytest.raises(InvalidOperationError, match="projection"):
            executor.execute(Query().from_(member).metadata)

    def test_duplicate_alias(self, executor: QueryExecutor) -> None:
        with pytest.raises(InvalidOperationError, match="twice"):
            executor.execute(Query().select(member).from_(member, member).metadata)

    def test_undeclared_alias(self, executor: QueryExecutor) -> None:
        with pytest.raises(InvalidOperationError, match="Undeclared"):
            executor.execute(Query().select(team.name).from_(member).metadata)

    def test_unknown_column(self, executor: QueryExecutor) -> None:
        metadata = Query().select(StringPath("member", "nickname")).from_(member).metadata
        with pytest.raises(InvalidOperationError, match="nickname"):
            executor.execute(metadata)

    def test_association_target_mismatch(self, executor: QueryExecutor) -> None:
        metadata = Query().select(member).from_(member).join(member.team, QMember("other")).metadata
        with pytest.raises(InvalidOperationError, match="Cannot join"):
            executor.execute(metadata)

    def test_aggregate_in_where(self, executor: QueryExecutor) -> None:
        metadata = Query().select(member).from_(member).where(member.age.avg().gt(10)).metadata
        with pytest.raises(InvalidOperationError, match="HAVING"):
            executor.execute(metadata)

    def test_on_sees_only_earlier_aliases(self, executor: QueryExecutor) -> None:
        """An ON clause cannot reference an alias joined after it."""
        later = QTeam("later")
        metadata = (
            Query().select(member).from_(member)
            .join(member.team, team).on(later.name.eq("teamA"))
            .join(later)
            .metadata
        )

        with pytest.raises(InvalidOperationError, match="Undeclared"):
            executor.execute(metadata)

    def test_logical_operands_checked(self, executor: QueryExecutor) -> None:
        """Nested predicates are checked too."""
        predicate = Logical(LogicalOp.OR, (member.age.eq(10), team.name.eq("teamA")))
        with pytest.raises(InvalidOperationError):
            executor.execute(Query().select(member).from_(member).where(predicate).metadata)
