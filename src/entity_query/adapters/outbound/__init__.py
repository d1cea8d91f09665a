"""Outbound adapters - implementations of outbound ports.

These adapters implement the stores and the persistence context the
query engine depends on.
"""

from entity_query.adapters.outbound.in_memory_store import InMemoryEntityStore, StoreRegistry
from entity_query.adapters.outbound.unit_of_work import UnitOfWork

__all__ = [
    "InMemoryEntityStore",
    "StoreRegistry",
    "UnitOfWork",
]
