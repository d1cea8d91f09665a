"""Exceptions raised by the entity query engine."""


class EntityQueryError(Exception):
    """Base class for all entity query errors."""

    pass


class InvalidOperationError(EntityQueryError):
    """An operation is not valid for the current state or query shape."""

    pass


class ReferenceNotLoadedError(InvalidOperationError):
    """An association was read before the unit of work loaded it."""

    pass


class NonUniqueResultError(EntityQueryError):
    """A single-result query matched more than one row."""

    pass


class TypeMismatchError(EntityQueryError):
    """An expression was built over operands of an incompatible type."""

    pass


class JPQLSyntaxError(EntityQueryError):
    """JPQL text could not be parsed or translated."""

    pass
