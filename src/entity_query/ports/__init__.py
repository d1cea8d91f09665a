"""Ports layer - interface definitions following Hexagonal Architecture.

Ports are abstract interfaces (protocols) that define contracts:
- Inbound ports: APIs offered to the engine (e.g., EntityStore)
- Outbound ports: Dependencies the engine needs (e.g., PersistenceContext)

Adapters implement these ports with concrete functionality.
"""

from entity_query.ports.inbound import EntityStore, StoreStats
from entity_query.ports.outbound import FlushMode, PersistenceContext

__all__ = [
    # Inbound ports
    "EntityStore",
    "StoreStats",
    # Outbound ports
    "FlushMode",
    "PersistenceContext",
]
