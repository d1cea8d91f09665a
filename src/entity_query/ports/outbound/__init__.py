"""Outbound ports - interfaces for external dependencies.

Outbound ports define contracts for the collaborators the query engine
depends on: the persistence context (unit of work).
"""

from entity_query.ports.outbound.persistence_context import FlushMode, PersistenceContext

__all__ = [
    "FlushMode",
    "PersistenceContext",
]
