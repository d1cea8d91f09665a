"""Adapters layer - concrete implementations of port interfaces.

Adapters provide the actual implementations:
- Inbound adapters: Handle incoming requests (JPQL text)
- Outbound adapters: Implement external dependencies (stores, unit of work)
"""

from entity_query.adapters.inbound import JPQLParser, JPQLQuery
from entity_query.adapters.outbound import (
    InMemoryEntityStore,
    StoreRegistry,
    UnitOfWork,
)

__all__ = [
    # Inbound adapters
    "JPQLParser",
    "JPQLQuery",
    # Outbound adapters
    "InMemoryEntityStore",
    "StoreRegistry",
    "UnitOfWork",
]
