"""Team entity."""

from __future__ import annotations

from typing import TYPE_CHECKING

from entity_query.domain.entities.base import Entity

if TYPE_CHECKING:
    from entity_query.domain.entities.member import Member


class Team(Entity):
    """A named group of members.

    The member collection is the inverse side of ``Member.team``: it is
    read-only here and changes only through ``Member.change_team`` (or when
    the unit of work hydrates a team from its store). A team never owns its
    members' lifecycle.
    """

    def __init__(self, name: str) -> None:
        super().__init__()
        self.name = name
        self._members: list[Member] = []

    @property
    def members(self) -> tuple[Member, ...]:
        """Members in the order they joined."""
        return tuple(self._members)

    def _add_member(self, member: Member) -> None:
        if not any(m is member for m in self._members):
            self._members.append(member)

    def _remove_member(self, member: Member) -> None:
        self._members = [m for m in self._members if m is not member]

    def __repr__(self) -> str:
        return f"Team(id={self._id}, name={self.name!r})"
