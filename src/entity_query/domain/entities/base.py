"""Base class for mapped entities."""

from __future__ import annotations

from entity_query.domain.exceptions import InvalidOperationError
from entity_query.domain.value_objects import EntityId


class Entity:
    """An object with store-assigned identity.

    Entities start detached (``id is None``). The id is set once, when the
    entity is first persisted, and never changes afterwards.
    """

    def __init__(self) -> None:
        self._id: EntityId | None = None

    @property
    def id(self) -> EntityId | None:
        return self._id

    def assign_id(self, entity_id: EntityId) -> None:
        """Set the store-assigned identity.

        Raises:
            InvalidOperationError: If a different id was already assigned.
        """
        if self._id is not None and self._id != entity_id:
            raise InvalidOperationError(
                f"{type(self).__name__} identity is immutable "
                f"(has {self._id}, got {entity_id})"
            )
        self._id = entity_id
