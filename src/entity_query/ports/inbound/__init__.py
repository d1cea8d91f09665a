"""Inbound ports - API contracts for the entity query engine.

Inbound ports define the interfaces that the query engine and the unit of
work use to reach stored records.
"""

from entity_query.ports.inbound.entity_store import EntityStore, StoreStats

__all__ = [
    "EntityStore",
    "StoreStats",
]
