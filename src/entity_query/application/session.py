"""Session - unified entry point for the entity query engine.

A session wires the configured stores, one unit of work, the query
executor and the JPQL front-end together.

Usage:
    from entity_query.application import Session
    from entity_query.domain.entities import Member, Team
    from entity_query.domain.metamodel import member

    with Session() as session:
        team_a = Team("teamA")
        session.persist(team_a)
        session.persist(Member("member1", 10, team_a))

        found = session.query_factory.select_from(member).where(
            member.user_name.eq("member1")
        ).fetch_one()

        jpql = session.create_query(
            "select m from Member m where m.userName = :userName"
        ).set_parameter("userName", "member1")
        assert jpql.get_single_result() is found
"""

from __future__ import annotations

from typing import Any, TypeVar

from entity_query.adapters.inbound.jpql_parser import JPQLParser, JPQLQuery
from entity_query.adapters.outbound.in_memory_store import StoreRegistry
from entity_query.adapters.outbound.unit_of_work import UnitOfWork
from entity_query.application.executor import QueryExecutor
from entity_query.application.query import QueryFactory
from entity_query.domain.exceptions import InvalidOperationError
from entity_query.domain.value_objects import EntityId
from entity_query.infrastructure.config import Config, get_config
from entity_query.infrastructure.logging import get_logger
from entity_query.infrastructure.metrics import MetricsRegistry, get_metrics
from entity_query.ports.outbound.persistence_context import FlushMode

T = TypeVar("T")

logger = get_logger(__name__)


class Session:
    """One unit of work plus the means to query it.

    Thread Safety:
        A session is not thread-safe; use one per thread. Sessions built on
        the same StoreRegistry see each other's inserts.
    """

    def __init__(
        self,
        config: Config | None = None,
        metrics: MetricsRegistry | None = None,
        stores: StoreRegistry | None = None,
    ) -> None:
        """Initialize the session.

        Args:
            config: Configuration. The global one if None.
            metrics: Metrics registry. The global one if None.
            stores: Stores to work against. Fresh ones if None.
        """
        self._config = config or get_config()
        self._metrics = metrics or get_metrics()
        self._stores = stores or StoreRegistry(
            id_start=self._config.store.id_start,
            thread_safe=self._config.store.thread_safe,
        )

        flush_mode = FlushMode.AUTO if self._config.query.auto_flush else FlushMode.COMMIT
        self._unit_of_work = UnitOfWork(self._stores, flush_mode=flush_mode, metrics=self._metrics)
        self._executor = QueryExecutor(self._unit_of_work, self._config.query, self._metrics)
        self._query_factory = QueryFactory(self._executor)
        self._parser = JPQLParser(null_ordering=self._config.query.null_ordering)
        self._closed = False

        logger.debug("session_opened", flush_mode=flush_mode.value)

    @property
    def query_factory(self) -> QueryFactory:
        self._check_open()
        return self._query_factory

    @property
    def unit_of_work(self) -> UnitOfWork:
        return self._unit_of_work

    @property
    def stores(self) -> StoreRegistry:
        return self._stores

    @property
    def is_closed(self) -> bool:
        return self._closed

    def persist(self, entity: Any) -> EntityId:
        """Make an entity managed; its id is assigned immediately."""
        self._check_open()
        return self._unit_of_work.persist(entity)

    def flush(self) -> None:
        self._check_open()
        self._unit_of_work.flush()

    def clear(self) -> None:
        self._check_open()
        self._unit_of_work.clear()

    def contains(self, entity: Any) -> bool:
        return self._unit_of_work.contains(entity)

    def is_loaded(self, target: Any) -> bool:
        """Report whether a reference (``member.team_ref``) or entity is loaded."""
        return self._unit_of_work.is_loaded(target)

    def find(self, entity_class: type[T], entity_id: EntityId) -> T | None:
        self._check_open()
        return self._unit_of_work.find(entity_class, entity_id)

    def load(self, entity: Any, association: str) -> Any:
        """Load an association explicitly (``session.load(member, "team")``)."""
        self._check_open()
        return self._unit_of_work.load(entity, association)

    def create_query(self, ql: str) -> JPQLQuery:
        """Parse a JPQL string into an executable query.

        Raises:
            JPQLSyntaxError: If the text cannot be parsed.
        """
        self._check_open()
        return JPQLQuery(self._parser.parse(ql), self._query_factory)

    def close(self) -> None:
        """Detach everything and refuse further work."""
        if self._closed:
            return
        self._unit_of_work.clear()
        self._closed = True
        logger.debug("session_closed")

    def get_stats(self) -> dict:
        """Get session statistics.

        Returns:
            Dictionary with unit of work and store statistics.
        """
        uow_stats = self._unit_of_work.get_stats()
        return {
            "closed": self._closed,
            "managed": uow_stats["managed"],
            "flush_mode": uow_stats["flush_mode"],
            "stores": {
                s.name: {
                    "size": s.size,
                    "inserts": s.inserts,
                    "updates": s.updates,
                    "scans": s.scans,
                }
                for s in self._stores.get_stats()
            },
        }

    def _check_open(self) -> None:
        if self._closed:
            raise InvalidOperationError("Session is closed")

    def __enter__(self) -> "Session":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        self.close()
