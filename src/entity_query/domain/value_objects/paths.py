"""Typed property paths.

A path names a property of an aliased query source: ``member.user_name``
is ``StringPath("member", "user_name")``. Entity paths (``QMember``,
``QTeam``) are the aliases themselves and hand out property paths.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar

from entity_query.domain.value_objects.expressions import (
    Expression,
    NumberExpression,
    StringExpression,
)


class Path:
    """Marker for expressions that read a stored column of an alias."""

    alias: str
    column: str


@dataclass(frozen=True)
class StringPath(StringExpression, Path):
    """Text property."""

    alias: str
    column: str

    @property
    def value_type(self) -> type | None:
        return str

    def __str__(self) -> str:
        return f"{self.alias}.{self.column}"


@dataclass(frozen=True)
class NumberPath(NumberExpression, Path):
    """Numeric property."""

    alias: str
    column: str
    python_type: type = int

    @property
    def value_type(self) -> type | None:
        return self.python_type

    def __str__(self) -> str:
        return f"{self.alias}.{self.column}"


@dataclass(frozen=True)
class AssociationPath(Expression, Path):
    """Many-to-one property; evaluates to the target's id (the foreign key).

    Used as the first argument of ``join``/``left_join`` to follow the
    association, or compared directly (``member.team.is_null()``).
    """

    alias: str
    name: str
    column: str
    target: type[EntityPath]

    @property
    def value_type(self) -> type | None:
        return int

    def __str__(self) -> str:
        return f"{self.alias}.{self.name}"


@dataclass(frozen=True)
class EntityPath(Expression):
    """An aliased query source.

    Subclasses set ``entity_name`` to the mapped entity they range over.
    """

    alias: str

    entity_name: ClassVar[str] = ""

    @property
    def id(self) -> NumberPath:
        return NumberPath(self.alias, "id")

    def __str__(self) -> str:
        return self.alias
