"""Persistence Context port - the unit of work seen by the query engine.

The query engine and the entity model need exactly this surface from
their environment:

    - persist: stage an entity and assign its identity synchronously
    - flush: write managed entity state to the stores
    - clear: detach everything so later loads are freshly materialized
    - is_loaded: report whether a lazy reference has been materialized

plus the hooks the engine uses to turn stored records back into managed
entities.
"""

from __future__ import annotations

from abc import abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping, Protocol, TypeVar

from entity_query.domain.entities import Record
from entity_query.domain.value_objects import EntityId

if TYPE_CHECKING:
    from entity_query.ports.inbound.entity_store import EntityStore

T = TypeVar("T")


class FlushMode(Enum):
    """When managed state is written to the stores."""

    AUTO = "auto"  # before every query
    COMMIT = "commit"  # only on explicit flush()


class PersistenceContext(Protocol):
    """Protocol for the unit of work.

    Thread Safety:
        Not thread-safe. Use one persistence context per thread.
    """

    @property
    @abstractmethod
    def flush_mode(self) -> FlushMode:
        """Return the current flush mode."""
        ...

    @abstractmethod
    def persist(self, entity: Any) -> EntityId:
        """Make a new entity managed and assign its id.

        Raises:
            InvalidOperationError: If the entity is detached (has an id but
                is not managed here).
        """
        ...

    @abstractmethod
    def flush(self) -> None:
        """Write the state of every managed entity to its store."""
        ...

    @abstractmethod
    def clear(self) -> None:
        """Detach all managed entities."""
        ...

    @abstractmethod
    def contains(self, entity: Any) -> bool:
        """Return True if the entity is managed by this context."""
        ...

    @abstractmethod
    def is_loaded(self, target: Any) -> bool:
        """Return True if a reference (or entity) is materialized."""
        ...

    @abstractmethod
    def find(self, entity_class: type[T], entity_id: EntityId) -> T | None:
        """Return the managed entity with this id, loading it if needed."""
        ...

    @abstractmethod
    def load(self, entity: Any, association: str) -> Any:
        """Materialize an association of a managed entity and return its target."""
        ...

    @abstractmethod
    def store_for(self, entity_name: str) -> EntityStore:
        """Return the store holding records of an entity kind."""
        ...

    @abstractmethod
    def materialize(
        self,
        entity_name: str,
        record: Record,
        fetched: Mapping[str, Record | None] | None = None,
    ) -> Any:
        """Turn a record into its managed entity through the identity map.

        Args:
            entity_name: Mapped entity name of the record.
            record: The stored record.
            fetched: Association name -> joined record for fetch joins;
                those associations are materialized eagerly.
        """
        ...
