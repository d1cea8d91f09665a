"""Value objects for the entity query domain.

Value objects are immutable types that represent domain concepts.
They have no identity - two value objects with the same attributes are equal.

Exports:
    Identifiers:
        - EntityId: Store-assigned entity identifier
        - EntityKey: Identity-map key (entity name, id)

    References:
        - Unloaded, Loaded, Reference: Explicit lazy association states

    Expressions:
        - Expression and its typed mixins, node types and enums
        - OrderSpecifier: ORDER BY key with null placement
        - CaseBuilder, Expressions: Builders for CASE and constants

    Paths:
        - EntityPath, StringPath, NumberPath, AssociationPath
"""

from entity_query.domain.value_objects.identifiers import EntityId, EntityKey
from entity_query.domain.value_objects.references import Loaded, Reference, Unloaded
from entity_query.domain.value_objects.expressions import (
    Aggregate,
    AggregateFunc,
    BooleanExpression,
    Case,
    CaseBuilder,
    CaseWhen,
    ComparableExpression,
    Comparison,
    ComparisonOp,
    Concat,
    Constant,
    Expression,
    Expressions,
    Logical,
    LogicalOp,
    NullHandling,
    NumberExpression,
    Order,
    OrderSpecifier,
    StringExpression,
    StringValue,
    SubQueryExpression,
    ValueList,
    to_expression,
)
from entity_query.domain.value_objects.paths import (
    AssociationPath,
    EntityPath,
    NumberPath,
    Path,
    StringPath,
)

__all__ = [
    # Identifiers
    "EntityId",
    "EntityKey",
    # References
    "Unloaded",
    "Loaded",
    "Reference",
    # Expressions
    "Expression",
    "ComparableExpression",
    "NumberExpression",
    "StringExpression",
    "BooleanExpression",
    "Constant",
    "ValueList",
    "Comparison",
    "ComparisonOp",
    "Logical",
    "LogicalOp",
    "Aggregate",
    "AggregateFunc",
    "Case",
    "CaseBuilder",
    "CaseWhen",
    "Concat",
    "StringValue",
    "SubQueryExpression",
    "Order",
    "NullHandling",
    "OrderSpecifier",
    "Expressions",
    "to_expression",
    # Paths
    "Path",
    "EntityPath",
    "StringPath",
    "NumberPath",
    "AssociationPath",
]
