"""Integration tests for typed queries and JPQL over a session."""

import pytest

from entity_query.application import SubQuery, Tuple
from entity_query.domain.entities import Member
from entity_query.domain.exceptions import NonUniqueResultError
from entity_query.domain.metamodel import QMember, member, team
from entity_query.domain.value_objects import Expressions


@pytest.mark.integration
class TestBasicQueries:
    """Selection, filtering and result fetching."""

    def test_start_jpql(self, session, sample_data):
        """A JPQL query with a named parameter finds member1."""
        found = (
            session.create_query("select m from Member m where m.userName = :userName")
            .set_parameter("userName", "member1")
            .get_single_result()
        )

        assert found.user_name == "member1"
        assert found is sample_data.member1

    def test_start_querydsl(self, session, sample_data):
        """A custom alias works like the default one."""
        m = QMember("m1")

        found = session.query_factory.select(m).from_(m).where(m.user_name.eq("member1")).fetch_one()

        assert found.user_name == "member1"

    def test_search(self, session, sample_data):
        """Chained and_ narrows to one member."""
        found = (
            session.query_factory.select_from(member)
            .where(member.user_name.eq("member1").and_(member.age.eq(10)))
            .fetch_one()
        )

        assert found.user_name == "member1"

    def test_search_and_param(self, session, sample_data):
        """Comma-separated predicates are ANDed."""
        found = (
            session.query_factory.select_from(member)
            .where(member.user_name.eq("member1"), member.age.eq(10))
            .fetch_one()
        )

        assert found.user_name == "member1"

    def test_search_conditions(self, session, sample_data):
        """Each condition selects the expected members."""
        qf = session.query_factory

        def names(*predicates):
            return [m.user_name for m in qf.select_from(member).where(*predicates).fetch()]

        assert names(member.user_name.ne("member1")) == ["member2", "member3", "member4"]
        assert names(member.user_name.eq("member1").not_()) == ["member2", "member3", "member4"]
        assert names(member.user_name.is_not_null()) == ["member1", "member2", "member3", "member4"]
        assert names(member.age.in_(10, 20)) == ["member1", "member2"]
        assert names(member.age.not_in(10, 20)) == ["member3", "member4"]
        assert names(member.age.between(10, 30)) == ["member1", "member2", "member3"]
        assert names(member.age.goe(30)) == ["member3", "member4"]
        assert names(member.age.gt(30)) == ["member4"]
        assert names(member.age.loe(30)) == ["member1", "member2", "member3"]
        assert names(member.age.lt(30)) == ["member1", "member2"]
        assert names(member.user_name.like("member%")) == ["member1", "member2", "member3", "member4"]
        assert names(member.user_name.contains("ber3")) == ["member3"]
        assert names(member.user_name.starts_with("member4")) == ["member4"]

    def test_result_fetch(self, session, sample_data):
        """fetch, fetch_one, fetch_first, fetch_results and fetch_count."""
        qf = session.query_factory

        assert len(qf.select_from(member).fetch()) == 4
        with pytest.raises(NonUniqueResultError):
            qf.select_from(member).fetch_one()
        assert qf.select_from(member).fetch_first() is sample_data.member1

        results = qf.select_from(member).fetch_results()
        assert results.total == 4
        assert len(results.results) == 4

        assert qf.select_from(member).fetch_count() == 4

    def test_fetch_one_no_match(self, session, sample_data):
        """fetch_one returns None when nothing matches."""
        assert session.query_factory.select_from(member).where(member.age.gt(100)).fetch_one() is None


@pytest.mark.integration
class TestSortingAndPaging:
    """ORDER BY, null placement, offset and limit."""

    def test_sort(self, session, sample_data):
        """age desc, user_name asc nulls last."""
        session.persist(Member(None, 100))
        session.persist(Member("member5", 100))
        session.persist(Member("member6", 100))

        result = (
            session.query_factory.select_from(member)
            .where(member.age.eq(100))
            .order_by(member.age.desc(), member.user_name.asc().nulls_last())
            .fetch()
        )

        assert result[0].user_name == "member5"
        assert result[1].user_name == "member6"
        assert result[2].user_name is None

    def test_paging(self, session, sample_data):
        """offset 0, limit 2 over user_name desc."""
        result = (
            session.query_factory.select_from(member)
            .order_by(member.user_name.desc())
            .offset(0)
            .limit(2)
            .fetch()
        )

        assert len(result) == 2
        assert result[1].user_name == "member3"

    def test_paging_results(self, session, sample_data):
        """fetch_results reports the unpaged total."""
        results = (
            session.query_factory.select_from(member)
            .order_by(member.user_name.desc())
            .offset(1)
            .limit(2)
            .fetch_results()
        )

        assert results.total == 4
        assert results.offset == 1
        assert results.limit == 2
        assert [m.user_name for m in results.results] == ["member3", "member2"]

    def test_offset_past_end(self, session, sample_data):
        """An offset beyond the rows yields an empty page."""
        results = session.query_factory.select_from(member).offset(10).fetch_results()

        assert results.is_empty
        assert results.total == 4


@pytest.mark.integration
class TestAggregation:
    """Aggregates and grouping."""

    def test_aggregation(self, session, sample_data):
        """count, sum, avg, max and min over all members."""
        result = (
            session.query_factory.select(
                member.count(),
                member.age.sum(),
                member.age.avg(),
                member.age.max(),
                member.age.min(),
            )
            .from_(member)
            .fetch()
        )

        row = result[0]
        assert row.get(member.count()) == 4
        assert row.get(member.age.sum()) == 100
        assert row.get(member.age.avg()) == 25.0
        assert row.get(member.age.max()) == 40
        assert row.get(member.age.min()) == 10

    def test_group(self, session, sample_data):
        """Average age per team."""
        rows = (
            session.query_factory.select(team.name, member.age.avg())
            .from_(member)
            .join(member.team, team)
            .group_by(team.name)
            .fetch()
        )

        team_a, team_b = rows
        assert team_a.get(team.name) == "teamA"
        assert team_a.get(member.age.avg()) == 15.0
        assert team_b.get(team.name) == "teamB"
        assert team_b.get(member.age.avg()) == 35.0

    def test_having(self, session, sample_data):
        """HAVING filters groups."""
        names = (
            session.query_factory.select(team.name)
            .from_(member)
            .join(member.team, team)
            .group_by(team.name)
            .having(member.age.avg().gt(20))
            .fetch()
        )

        assert names == ["teamB"]

    def test_aggregate_over_empty_set(self, session, sample_data):
        """Aggregates without rows give one row: count 0, others None."""
        row = (
            session.query_factory.select(member.count(), member.age.max())
            .from_(member)
            .where(member.age.gt(100))
            .fetch_one()
        )

        assert row.to_list() == [0, None]


@pytest.mark.integration
class TestJoins:
    """Association, theta and ON joins."""

    def test_join(self, session, sample_data):
        """Left join filtered on the team name."""
        result = (
            session.query_factory.select_from(member)
            .left_join(member.team, team)
            .where(team.name.eq("teamA"))
            .fetch()
        )

        assert [m.user_name for m in result] == ["member1", "member2"]

    def test_theta_join(self, session, sample_data):
        """Members whose name equals a team name."""
        session.persist(Member("teamA"))
        session.persist(Member("teamB"))

        result = (
            session.query_factory.select(member)
            .from_(member, team)
            .where(member.user_name.eq(team.name))
            .fetch()
        )

        assert [m.user_name for m in result] == ["teamA", "teamB"]

    def test_join_on_filtering(self, session, sample_data):
        """ON restricts the joined side while keeping every member."""
        result = (
            session.query_factory.select(member, team)
            .from_(member)
            .left_join(member.team, team)
            .on(team.name.eq("teamA"))
            .fetch()
        )

        assert len(result) == 4
        assert [(row.get(member).user_name, row.get(team)) for row in result] == [
            ("member1", sample_data.team_a),
            ("member2", sample_data.team_a),
            ("member3", None),
            ("member4", None),
        ]

    def test_join_on_no_relation(self, session, sample_data):
        """Left join of an unrelated entity on a name match."""
        session.persist(Member("teamA"))
        session.persist(Member("teamB"))
        session.persist(Member("teamC"))

        result = (
            session.query_factory.select(member, team)
            .from_(member)
            .left_join(team)
            .on(member.user_name.eq(team.name))
            .fetch()
        )

        pairs = [(row.get(member).user_name, row.get(team)) for row in result]
        assert len(pairs) == 7
        assert pairs[4] == ("teamA", sample_data.team_a)
        assert pairs[5] == ("teamB", sample_data.team_b)
        assert pairs[6] == ("teamC", None)
        assert all(t is None for _, t in pairs[:4])

    def test_inner_join_on_equals_where(self, session, sample_data):
        """For an inner join ON and WHERE select the same rows."""
        on = (
            session.query_factory.select(member)
            .from_(member)
            .join(member.team, team)
            .on(team.name.eq("teamB"))
            .fetch()
        )
        where = (
            session.query_factory.select(member)
            .from_(member)
            .join(member.team, team)
            .where(team.name.eq("teamB"))
            .fetch()
        )

        assert on == where
        assert [m.user_name for m in on] == ["member3", "member4"]

    def test_distinct_over_join(self, session, sample_data):
        """distinct collapses teams repeated by the join."""
        teams = (
            session.query_factory.select(team)
            .from_(member)
            .join(member.team, team)
            .distinct()
            .fetch()
        )

        assert teams == [sample_data.team_a, sample_data.team_b]


@pytest.mark.integration
class TestFetchJoin:
    """Loading state of associations after a clear."""

    def test_fetch_join_no(self, session, sample_data):
        """Without a fetch join the team stays unloaded."""
        session.flush()
        session.clear()

        found = session.query_factory.select_from(member).where(member.user_name.eq("member1")).fetch_one()

        assert found is not None
        assert not session.is_loaded(found.team_ref)

    def test_fetch_join_use(self, session, sample_data):
        """A fetch join loads the team together with the member."""
        session.flush()
        session.clear()

        found = (
            session.query_factory.select_from(member)
            .join(member.team)
            .fetch_join()
            .where(member.user_name.eq("member1"))
            .fetch_one()
        )

        assert found is not None
        assert session.is_loaded(found.team_ref)
        assert found.team.name == "teamA"

    def test_explicit_load(self, session, sample_data):
        """session.load turns an unloaded team into a loaded one."""
        session.flush()
        session.clear()
        found = session.query_factory.select_from(member).where(member.user_name.eq("member3")).fetch_one()

        loaded = session.load(found, "team")

        assert session.is_loaded(found.team_ref)
        assert loaded.name == "teamB"
        assert [m.user_name for m in loaded.members] == ["member3", "member4"]


@pytest.mark.integration
class TestSubQueries:
    """Scalar and set sub-queries."""

    def test_sub_query(self, session, sample_data):
        """The oldest member."""
        member_sub = QMember("member_sub")

        result = (
            session.query_factory.select_from(member)
            .where(member.age.eq(SubQuery.select(member_sub.age.max()).from_(member_sub)))
            .fetch()
        )

        assert [m.age for m in result] == [40]

    def test_sub_query_goe(self, session, sample_data):
        """Members at least as old as the average."""
        m2 = QMember("m2")

        result = (
            session.query_factory.select_from(member)
            .where(member.age.goe(SubQuery.select(m2.age.avg()).from_(m2)))
            .fetch()
        )

        assert len(result) == 2

    def test_sub_query_in(self, session, sample_data):
        """Members whose age appears in a filtered sub-query."""
        member_sub = QMember("member_sub")

        result = (
            session.query_factory.select_from(member)
            .where(member.age.in_(SubQuery.select(member_sub.age).from_(member_sub).where(member_sub.age.gt(10))))
            .fetch()
        )

        assert [m.age for m in result] == [20, 30, 40]

    def test_sub_query_in_select(self, session, sample_data):
        """A scalar sub-query can be projected."""
        member_sub = QMember("member_sub")
        avg_age = SubQuery.select(member_sub.age.avg()).from_(member_sub)

        rows = session.query_factory.select(member.user_name, avg_age).from_(member).fetch()

        assert [row[1] for row in rows] == [25.0, 25.0, 25.0, 25.0]


@pytest.mark.integration
class TestProjections:
    """CASE, constants and concatenation."""

    def test_basic_case(self, session, sample_data):
        """Simple CASE over age."""
        result = (
            session.query_factory.select(
                member.age.when(10).then("ten").when(20).then("twenty").otherwise("other")
            )
            .from_(member)
            .fetch()
        )

        assert result == ["ten", "twenty", "other", "other"]

    def test_complex_case(self, session, sample_data):
        """Searched CASE with ranges."""
        result = (
            session.query_factory.select(
                Expressions.cases()
                .when(member.age.between(0, 20)).then("0~20")
                .when(member.age.between(21, 30)).then("21~30")
                .otherwise("other")
            )
            .from_(member)
            .fetch()
        )

        assert result == ["0~20", "0~20", "21~30", "other"]

    def test_constant(self, session, sample_data):
        """A constant column and a concatenation."""
        session.flush()
        session.clear()

        first = (
            session.query_factory.select(member.user_name, Expressions.constant("A"))
            .from_(member)
            .fetch_first()
        )
        concat = (
            session.query_factory.select(
                member.user_name.concat("_").concat(member.age.string_value())
            )
            .from_(member)
            .where(member.user_name.eq("member1"))
            .fetch_one()
        )

        assert isinstance(first, Tuple)
        assert first.to_list() == ["member1", "A"]
        assert concat == "member1_10"
