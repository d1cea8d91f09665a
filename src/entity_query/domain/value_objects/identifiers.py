"""Core identifiers for managed entities.

These value objects provide type-safe identifiers used by stores and the
unit of work's identity map.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import NewType


EntityId = NewType("EntityId", int)
"""Identifier assigned by a store on insert. Sequential per store, never reused."""


@dataclass(frozen=True, slots=True)
class EntityKey:
    """Identity-map key - uniquely identifies a managed entity.

    An entity id is only unique within its store, so the key pairs it with
    the entity name.

    Attributes:
        entity_name: Name of the mapped entity (e.g. "Member")
        entity_id: Store-assigned identifier

    Example:
        >>> key = EntityKey("Member", EntityId(3))
        >>> str(key)
        'Member#3'
    """

    entity_name: str
    entity_id: EntityId

    def __post_init__(self) -> None:
        """Validate the key."""
        if not self.entity_name:
            raise ValueError("entity_name must not be empty")
        if self.entity_id < 1:
            raise ValueError(f"entity_id must be positive, got {self.entity_id}")

    def __repr__(self) -> str:
        return f"EntityKey({self.entity_name}#{self.entity_id})"

    def __str__(self) -> str:
        return f"{self.entity_name}#{self.entity_id}"
