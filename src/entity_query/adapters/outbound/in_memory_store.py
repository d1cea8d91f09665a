"""In-memory entity stores.

Each store is an ordered list of records plus an id index, standing in
for a table. The registry creates one store per mapped entity on demand.

Concurrency:
    A single writer lock serializes insert and update. Scans copy the
    record list under the same lock and then iterate the copy, so readers
    never see a partially appended collection and never block writers
    while iterating.
"""

from __future__ import annotations

import threading
from contextlib import nullcontext
from typing import Any, ContextManager, Dict, Iterator

from entity_query.domain.entities import Record
from entity_query.domain.value_objects import EntityId
from entity_query.ports.inbound.entity_store import StoreStats


class InMemoryEntityStore:
    """Insertion-ordered record store for one entity kind.

    Attributes:
        name: Entity name of the stored records.
    """

    def __init__(self, name: str, id_start: int = 1, thread_safe: bool = True) -> None:
        """Initialize the store.

        Args:
            name: Entity name of the stored records.
            id_start: First id handed out.
            thread_safe: Guard writes and scan snapshots with a lock.

        Raises:
            ValueError: If id_start < 1.
        """
        if id_start < 1:
            raise ValueError(f"id_start must be >= 1, got {id_start}")

        self._name = name
        self._next_id = id_start
        self._lock: ContextManager[Any] = threading.RLock() if thread_safe else nullcontext()

        self._records: list[Record] = []
        self._index: Dict[EntityId, Record] = {}

        # Statistics
        self._insert_count = 0
        self._update_count = 0
        self._scan_count = 0
        self._lookup_count = 0

    @property
    def name(self) -> str:
        return self._name

    def insert(self, values: dict[str, Any]) -> Record:
        with self._lock:
            record = Record(id=EntityId(self._next_id), values=dict(values))
            self._next_id += 1
            self._records.append(record)
            self._index[record.id] = record
            self._insert_count += 1
            return record.copy()

    def update(self, entity_id: EntityId, values: dict[str, Any]) -> Record:
        with self._lock:
            record = self._index.get(entity_id)
            if record is None:
                raise KeyError(f"{self._name}#{entity_id} not found")
            if record.values != values:
                record.values = dict(values)
                record.version += 1
                self._update_count += 1
            return record.copy()

    def find_by_id(self, entity_id: EntityId) -> Record | None:
        with self._lock:
            self._lookup_count += 1
            record = self._index.get(entity_id)
            return None if record is None else record.copy()

    def scan(self) -> Iterator[Record]:
        with self._lock:
            self._scan_count += 1
            snapshot = [record.copy() for record in self._records]
        return iter(snapshot)

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    def __len__(self) -> int:
        return self.count()

    def get_stats(self) -> StoreStats:
        with self._lock:
            return StoreStats(
                name=self._name,
                size=len(self._records),
                inserts=self._insert_count,
                updates=self._update_count,
                scans=self._scan_count,
                lookups=self._lookup_count,
            )


class StoreRegistry:
    """Holds one store per entity name, created on first use."""

    def __init__(self, id_start: int = 1, thread_safe: bool = True) -> None:
        self._id_start = id_start
        self._thread_safe = thread_safe
        self._stores: Dict[str, InMemoryEntityStore] = {}
        self._lock = threading.Lock()

    def get_store(self, name: str) -> InMemoryEntityStore:
        """Return the store for an entity name, creating it if needed."""
        with self._lock:
            store = self._stores.get(name)
            if store is None:
                store = InMemoryEntityStore(
                    name, id_start=self._id_start, thread_safe=self._thread_safe
                )
                self._stores[name] = store
            return store

    def has_store(self, name: str) -> bool:
        return name in self._stores

    def names(self) -> list[str]:
        return list(self._stores)

    def get_stats(self) -> list[StoreStats]:
        return [store.get_stats() for store in self._stores.values()]
