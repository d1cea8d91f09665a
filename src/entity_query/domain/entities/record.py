"""Stored record - the table-row form of an entity.

Stores hold records, not live entity objects. The unit of work snapshots
managed entities into records on persist and flush, and hydrates records
back into entities when queries return them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from entity_query.domain.value_objects import EntityId


@dataclass
class Record:
    """A stored row.

    Attributes:
        id: Store-assigned identifier
        values: Column name -> value (the id is not repeated here)
        version: Incremented on every update

    Example:
        >>> record = Record(EntityId(1), {"name": "teamA"})
        >>> record.get("name")
        'teamA'
        >>> record.get("id")
        1
    """

    id: EntityId
    values: dict[str, Any] = field(default_factory=dict)
    version: int = 0

    def get(self, column: str, default: Any = None) -> Any:
        if column == "id":
            return self.id
        return self.values.get(column, default)

    def __getitem__(self, column: str) -> Any:
        if column == "id":
            return self.id
        try:
            return self.values[column]
        except KeyError as e:
            raise KeyError(f"Column '{column}' not found") from e

    def copy(self) -> Record:
        """Detached copy, safe to hand to readers outside the store lock."""
        return Record(id=self.id, values=dict(self.values), version=self.version)
