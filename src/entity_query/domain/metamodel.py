"""Query types and entity mappings.

Query types (``QMember``, ``QTeam``) are the typed aliases queries are
written against. Entity mappings tell stores and the unit of work how an
entity is laid out as a record: its stored columns, its many-to-one
associations (stored as a foreign-key column) and the inverse collections
derived from them.

Default aliases mirror the entity names:

    >>> from entity_query.domain.metamodel import member, team
    >>> member.user_name.eq("member1")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, ClassVar

from entity_query.domain.entities import Member, Team
from entity_query.domain.value_objects import (
    AssociationPath,
    EntityPath,
    NumberPath,
    Reference,
    StringPath,
)


@dataclass(frozen=True)
class QTeam(EntityPath):
    """Query type for Team."""

    entity_name: ClassVar[str] = "Team"

    @property
    def name(self) -> StringPath:
        return StringPath(self.alias, "name")


@dataclass(frozen=True)
class QMember(EntityPath):
    """Query type for Member."""

    entity_name: ClassVar[str] = "Member"

    @property
    def user_name(self) -> StringPath:
        return StringPath(self.alias, "user_name")

    @property
    def age(self) -> NumberPath:
        return NumberPath(self.alias, "age", int)

    @property
    def team(self) -> AssociationPath:
        return AssociationPath(self.alias, "team", "team_id", QTeam)


member = QMember("member")
team = QTeam("team")


@dataclass(frozen=True)
class AssociationMapping:
    """A many-to-one association stored as a foreign-key column."""

    name: str
    column: str
    target: str
    read: Callable[[Any], Reference | None]
    bind: Callable[[Any, Reference | None], None]


@dataclass(frozen=True)
class InverseMapping:
    """A one-to-many collection derived from another entity's association."""

    name: str
    owner: str
    association: str


@dataclass(frozen=True)
class EntityMapping:
    """How one entity type is stored and rebuilt."""

    name: str
    entity_class: type
    path_class: type[EntityPath]
    columns: tuple[str, ...]
    factory: Callable[[dict[str, Any]], Any]
    associations: tuple[AssociationMapping, ...] = ()
    inverses: tuple[InverseMapping, ...] = ()

    @property
    def stored_columns(self) -> tuple[str, ...]:
        """All record columns except the id."""
        return self.columns + tuple(a.column for a in self.associations)

    def has_column(self, column: str) -> bool:
        return column == "id" or column in self.stored_columns

    def association(self, name: str) -> AssociationMapping:
        for assoc in self.associations:
            if assoc.name == name:
                return assoc
        raise KeyError(f"{self.name} has no association '{name}'")

    def snapshot(self, entity: Any) -> dict[str, Any]:
        """Record values for an entity's current state."""
        values = {column: getattr(entity, column) for column in self.columns}
        for assoc in self.associations:
            ref = assoc.read(entity)
            values[assoc.column] = None if ref is None else ref.entity_id
        return values

    def instantiate(self, values: dict[str, Any]) -> Any:
        """Build a detached entity from record values (associations unset)."""
        return self.factory(values)


ENTITY_MAPPINGS: dict[str, EntityMapping] = {
    "Team": EntityMapping(
        name="Team",
        entity_class=Team,
        path_class=QTeam,
        columns=("name",),
        factory=lambda values: Team(values.get("name")),
        inverses=(InverseMapping(name="members", owner="Member", association="team"),),
    ),
    "Member": EntityMapping(
        name="Member",
        entity_class=Member,
        path_class=QMember,
        columns=("user_name", "age"),
        factory=lambda values: Member(values.get("user_name"), values.get("age", 0)),
        associations=(
            AssociationMapping(
                name="team",
                column="team_id",
                target="Team",
                read=lambda m: m.team_ref,
                bind=lambda m, ref: m._set_team_ref(ref),
            ),
        ),
    ),
}


def get_mapping(key: Any) -> EntityMapping:
    """Look up a mapping by entity name, entity class, entity instance or query type.

    Raises:
        KeyError: If the key does not name a mapped entity.
    """
    if isinstance(key, str):
        name = key
    elif isinstance(key, EntityPath):
        name = key.entity_name
    elif isinstance(key, type) and issubclass(key, EntityPath):
        name = key.entity_name
    elif isinstance(key, type):
        name = key.__name__
    else:
        name = type(key).__name__
    try:
        return ENTITY_MAPPINGS[name]
    except KeyError:
        raise KeyError(f"No entity mapping for {name!r}") from None
