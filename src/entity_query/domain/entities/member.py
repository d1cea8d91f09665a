"""Member entity.

Member owns the Member -> Team association. The reverse collection on
Team is kept consistent by ``change_team``, the single mutator for the
relationship.
"""

from __future__ import annotations

from entity_query.domain.entities.base import Entity
from entity_query.domain.entities.team import Team
from entity_query.domain.exceptions import InvalidOperationError, ReferenceNotLoadedError
from entity_query.domain.value_objects import Loaded, Reference, Unloaded


class Member(Entity):
    """A person, optionally belonging to one team.

    Example:
        >>> team_a = Team("teamA")
        >>> member = Member("member1", 10, team_a)
        >>> member.team is team_a
        True
        >>> team_a.members == (member,)
        True
    """

    def __init__(
        self,
        user_name: str | None = None,
        age: int = 0,
        team: Team | None = None,
    ) -> None:
        super().__init__()
        self.user_name = user_name
        self.age = age
        self._team_ref: Reference | None = None
        if team is not None:
            self.change_team(team)

    @classmethod
    def of_team(cls, user_name: str | None, age: int, team: Team | None) -> Member:
        """Create a member that must belong to a team.

        Raises:
            InvalidOperationError: If team is None.
        """
        if team is None:
            raise InvalidOperationError("Member.of_team requires a team")
        return cls(user_name, age, team)

    @property
    def team_ref(self) -> Reference | None:
        """The association state: None, Unloaded or Loaded."""
        return self._team_ref

    @property
    def team(self) -> Team | None:
        """The member's team.

        Raises:
            ReferenceNotLoadedError: If the team is only known by id.
                Load it through the unit of work first.
        """
        ref = self._team_ref
        if ref is None:
            return None
        if isinstance(ref, Unloaded):
            raise ReferenceNotLoadedError(
                f"Team#{ref.entity_id} of Member#{self._id} is not loaded"
            )
        return ref.entity

    def change_team(self, team: Team | None) -> None:
        """Move this member to ``team``, keeping both sides consistent.

        Raises:
            InvalidOperationError: If team is None.
        """
        if team is None:
            raise InvalidOperationError("change_team requires a team")

        previous = self._team_ref
        if isinstance(previous, Loaded) and previous.entity is not team:
            previous.entity._remove_member(self)

        self._team_ref = Loaded(team)
        team._add_member(self)

    def _set_team_ref(self, ref: Reference | None) -> None:
        """Install a hydrated reference. Used by the unit of work only."""
        self._team_ref = ref
        if isinstance(ref, Loaded):
            ref.entity._add_member(self)

    def __repr__(self) -> str:
        return f"Member(id={self._id}, user_name={self.user_name!r}, age={self.age})"
