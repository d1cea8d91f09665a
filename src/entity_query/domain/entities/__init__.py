"""Domain entities for the entity query engine.

Entities are objects with identity that have a lifecycle. Unlike value objects,
two entities with the same attributes may not be equal if they have different
identities.

Exports:
    - Entity: Base class carrying the store-assigned id
    - Member: Person with an optional many-to-one Team association
    - Team: Named group; inverse side of Member.team
    - Record: Stored row form of an entity
"""

from entity_query.domain.entities.base import Entity
from entity_query.domain.entities.team import Team
from entity_query.domain.entities.member import Member
from entity_query.domain.entities.record import Record

__all__ = [
    "Entity",
    "Member",
    "Team",
    "Record",
]
