"""Unit of work: identity map, persist/flush/clear and explicit lazy loading.

The unit of work is the persistence context the query engine runs in:

    - persist() inserts into the entity's store right away, so a query in
      the same unit of work sees the row before any flush
    - flush() writes the current state of every managed entity back to
      its store (queries flush first in AUTO mode)
    - clear() empties the identity map; later queries build fresh
      instances whose associations start out Unloaded
    - load() is the only way an Unloaded reference becomes Loaded

Materialization goes through the identity map, so one record maps to one
instance per unit of work. Hydrating a Team also hydrates its member
collection from the Member store, keeping the inverse side consistent.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, TypeVar

from entity_query.adapters.outbound.in_memory_store import InMemoryEntityStore, StoreRegistry
from entity_query.domain.entities import Record
from entity_query.domain.exceptions import InvalidOperationError
from entity_query.domain.metamodel import EntityMapping, InverseMapping, get_mapping
from entity_query.domain.value_objects import EntityId, EntityKey, Loaded, Unloaded
from entity_query.infrastructure.logging import get_logger
from entity_query.infrastructure.metrics import MetricsRegistry, get_metrics
from entity_query.ports.outbound.persistence_context import FlushMode

T = TypeVar("T")

logger = get_logger(__name__)


class UnitOfWork:
    """In-memory persistence context.

    Thread Safety:
        Not thread-safe. The stores it writes to are, so several units of
        work (one per thread) may share a StoreRegistry.
    """

    def __init__(
        self,
        stores: StoreRegistry | None = None,
        flush_mode: FlushMode = FlushMode.AUTO,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        """Initialize the unit of work.

        Args:
            stores: Store registry to read and write. A private one if None.
            flush_mode: AUTO flushes before every query.
            metrics: Metrics registry. The global one if None.
        """
        self._stores = stores or StoreRegistry()
        self._flush_mode = flush_mode
        self._metrics = metrics or get_metrics()
        self._identity_map: Dict[EntityKey, Any] = {}

    @property
    def flush_mode(self) -> FlushMode:
        return self._flush_mode

    @flush_mode.setter
    def flush_mode(self, mode: FlushMode) -> None:
        self._flush_mode = mode

    @property
    def stores(self) -> StoreRegistry:
        return self._stores

    @property
    def managed_count(self) -> int:
        """Number of entities in the identity map."""
        return len(self._identity_map)

    def store_for(self, entity_name: str) -> InMemoryEntityStore:
        return self._stores.get_store(entity_name)

    def persist(self, entity: Any) -> EntityId:
        mapping = self._mapping_of(entity)

        if entity.id is not None:
            key = EntityKey(mapping.name, entity.id)
            if self._identity_map.get(key) is entity:
                return entity.id
            raise InvalidOperationError(f"Detached entity passed to persist: {key}")

        record = self.store_for(mapping.name).insert(mapping.snapshot(entity))
        entity.assign_id(record.id)
        self._identity_map[EntityKey(mapping.name, record.id)] = entity

        self._metrics.entities_persisted_total.labels(entity=mapping.name).inc()
        self._metrics.managed_entities.set(len(self._identity_map))
        logger.debug("entity_persisted", entity=mapping.name, id=record.id)
        return record.id

    def flush(self) -> None:
        """Write every managed entity's state to its store.

        Raises:
            InvalidOperationError: If a managed entity references an entity
                that was never persisted.
        """
        for key, entity in list(self._identity_map.items()):
            mapping = get_mapping(key.entity_name)
            self._check_references(key, entity, mapping)
            self.store_for(mapping.name).update(key.entity_id, mapping.snapshot(entity))

        self._metrics.flushes_total.inc()
        logger.debug("unit_of_work_flushed", managed=len(self._identity_map))

    def clear(self) -> None:
        detached = len(self._identity_map)
        self._identity_map.clear()
        self._metrics.managed_entities.set(0)
        logger.debug("unit_of_work_cleared", detached=detached)

    def detach(self, entity: Any) -> None:
        """Remove one entity from the identity map."""
        if self.contains(entity):
            mapping = self._mapping_of(entity)
            del self._identity_map[EntityKey(mapping.name, entity.id)]
            self._metrics.managed_entities.set(len(self._identity_map))

    def contains(self, entity: Any) -> bool:
        if entity is None or getattr(entity, "id", None) is None:
            return False
        try:
            mapping = get_mapping(entity)
        except KeyError:
            return False
        return self._identity_map.get(EntityKey(mapping.name, entity.id)) is entity

    def is_loaded(self, target: Any) -> bool:
        """Report whether a reference (or entity) is materialized.

        ``Loaded`` references and entity instances are loaded; ``Unloaded``
        references and None are not.
        """
        if target is None:
            return False
        if isinstance(target, (Loaded, Unloaded)):
            return target.is_loaded
        return True

    def find(self, entity_class: type[T], entity_id: EntityId) -> T | None:
        mapping = self._mapping_of(entity_class)
        key = EntityKey(mapping.name, entity_id)
        if key in self._identity_map:
            return self._identity_map[key]

        record = self.store_for(mapping.name).find_by_id(entity_id)
        if record is None:
            return None
        return self.materialize(mapping.name, record)

    def load(self, entity: Any, association: str) -> Any:
        """Materialize an association and switch its reference to Loaded.

        Raises:
            InvalidOperationError: If the entity is not managed here, the
                association is not mapped, or the target no longer exists.
        """
        mapping = self._mapping_of(entity)
        try:
            assoc = mapping.association(association)
        except KeyError as e:
            raise InvalidOperationError(str(e)) from e

        if not self.contains(entity):
            raise InvalidOperationError(
                f"Cannot load {mapping.name}.{association}: entity is not managed"
            )

        ref = assoc.read(entity)
        if ref is None:
            return None
        if isinstance(ref, Loaded):
            return ref.entity

        target = self.find(get_mapping(assoc.target).entity_class, ref.entity_id)
        if target is None:
            raise InvalidOperationError(f"{ref!r} does not exist")
        assoc.bind(entity, Loaded(target))

        self._metrics.lazy_loads_total.labels(association=f"{mapping.name}.{assoc.name}").inc()
        logger.debug(
            "association_loaded",
            entity=mapping.name,
            id=entity.id,
            association=assoc.name,
            target_id=target.id,
        )
        return target

    def materialize(
        self,
        entity_name: str,
        record: Record,
        fetched: Mapping[str, Record | None] | None = None,
    ) -> Any:
        mapping = get_mapping(entity_name)
        key = EntityKey(mapping.name, record.id)
        fetched = fetched or {}

        existing = self._identity_map.get(key)
        if existing is not None:
            for assoc in mapping.associations:
                target_record = fetched.get(assoc.name)
                if target_record is not None and not isinstance(assoc.read(existing), Loaded):
                    target = self.materialize(assoc.target, target_record)
                    assoc.bind(existing, Loaded(target))
            return existing

        entity = mapping.instantiate(record.values)
        entity.assign_id(record.id)
        self._identity_map[key] = entity

        for assoc in mapping.associations:
            target_id = record.get(assoc.column)
            if target_id is None:
                assoc.bind(entity, None)
                continue
            target_record = fetched.get(assoc.name)
            target_key = EntityKey(assoc.target, target_id)
            if target_record is not None:
                assoc.bind(entity, Loaded(self.materialize(assoc.target, target_record)))
            elif target_key in self._identity_map:
                assoc.bind(entity, Loaded(self._identity_map[target_key]))
            else:
                assoc.bind(entity, Unloaded(assoc.target, target_id))

        for inverse in mapping.inverses:
            self._load_inverse(entity, inverse)

        self._metrics.managed_entities.set(len(self._identity_map))
        return entity

    def get_stats(self) -> dict:
        """Unit of work statistics."""
        return {
            "managed": len(self._identity_map),
            "flush_mode": self._flush_mode.value,
            "stores": {s.name: s.size for s in self._stores.get_stats()},
        }

    def _load_inverse(self, entity: Any, inverse: InverseMapping) -> None:
        """Populate a one-to-many collection from the owning side's store."""
        owner_mapping = get_mapping(inverse.owner)
        assoc = owner_mapping.association(inverse.association)
        for record in self.store_for(owner_mapping.name).scan():
            if record.get(assoc.column) != entity.id:
                continue
            owner = self.materialize(owner_mapping.name, record)
            if not isinstance(assoc.read(owner), Loaded):
                assoc.bind(owner, Loaded(entity))

    def _check_references(self, key: EntityKey, entity: Any, mapping: EntityMapping) -> None:
        for assoc in mapping.associations:
            ref = assoc.read(entity)
            if isinstance(ref, Loaded) and ref.entity.id is None:
                raise InvalidOperationError(
                    f"{key} references a transient {assoc.target}; persist it first"
                )

    @staticmethod
    def _mapping_of(entity: Any) -> EntityMapping:
        try:
            return get_mapping(entity)
        except KeyError as e:
            raise InvalidOperationError(str(e)) from e
