"""Explicit lazy references between entities.

A many-to-one association is held as one of two states instead of a
transparent proxy:

    - Unloaded: only the target's identity is known
    - Loaded: the target entity has been materialized

The unit of work is the only component that moves a reference from
Unloaded to Loaded, so the state is always inspectable.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from entity_query.domain.value_objects.identifiers import EntityId


@dataclass(frozen=True, slots=True)
class Unloaded:
    """Reference whose target has not been materialized."""

    entity_name: str
    entity_id: EntityId

    @property
    def is_loaded(self) -> bool:
        return False

    def __repr__(self) -> str:
        return f"Unloaded({self.entity_name}#{self.entity_id})"


@dataclass(frozen=True, slots=True, eq=False)
class Loaded:
    """Reference holding a materialized target entity.

    Equality is identity of the held entity.
    """

    entity: Any

    @property
    def is_loaded(self) -> bool:
        return True

    @property
    def entity_id(self) -> EntityId | None:
        return self.entity.id

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Loaded) and other.entity is self.entity

    def __hash__(self) -> int:
        return id(self.entity)

    def __repr__(self) -> str:
        return f"Loaded({self.entity!r})"


Reference = Union[Unloaded, Loaded]
