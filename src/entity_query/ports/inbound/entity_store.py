"""Entity Store port - the table abstraction queries scan.

This inbound port defines the contract for a store holding the records of
one entity kind. Stores assign identity on insert and keep records in
insertion order.

Key concepts:
- Ids are sequential per store and never reused
- Inserts are visible to the very next scan (no flush needed)
- Scans return snapshots, restartable and finite
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, Iterator, Protocol

from entity_query.domain.entities import Record
from entity_query.domain.value_objects import EntityId


@dataclass
class StoreStats:
    """Statistics for store monitoring."""

    name: str
    size: int  # Records currently stored
    inserts: int
    updates: int
    scans: int
    lookups: int


class EntityStore(Protocol):
    """Protocol for entity store operations.

    Thread Safety:
        Inserts and updates are serialized. A scan takes its snapshot
        under the same guard, so it never observes a half-appended
        collection.

    Example:
        record = store.insert({"name": "teamA"})
        assert store.find_by_id(record.id) is not None
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the entity name this store holds."""
        ...

    @abstractmethod
    def insert(self, values: dict[str, Any]) -> Record:
        """Append a record and assign it the next id.

        Args:
            values: Column values (without the id).

        Returns:
            The stored record (a copy).
        """
        ...

    @abstractmethod
    def update(self, entity_id: EntityId, values: dict[str, Any]) -> Record:
        """Overwrite a record's column values.

        Raises:
            KeyError: If no record has this id.
        """
        ...

    @abstractmethod
    def find_by_id(self, entity_id: EntityId) -> Record | None:
        """Return a copy of the record with this id, or None."""
        ...

    @abstractmethod
    def scan(self) -> Iterator[Record]:
        """Iterate over copies of all records in insertion order."""
        ...

    @abstractmethod
    def count(self) -> int:
        """Return the number of stored records."""
        ...

    @abstractmethod
    def get_stats(self) -> StoreStats:
        """Return store statistics for monitoring."""
        ...
