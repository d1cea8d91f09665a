"""Application layer for the entity query engine.

The application layer orchestrates domain logic to fulfill use cases:
building queries, executing them and wiring a session together.

Exports:
    Session:
        - Session: Main entry point (unit of work + queries)
    Query:
        - Query, QueryFactory, SubQuery: Fluent query construction
        - Tuple, QueryResults: Result shapes
        - QueryMetadata, JoinSpec, JoinType: Executable query description
    Executor:
        - QueryExecutor: Executes queries using Volcano iterator model
        - ExecutionResult: Result of query execution
        - Operator: Base class for executor operators
        - EntityRow: Projected entity awaiting materialization
"""

from entity_query.application.query import (
    JoinSpec,
    JoinType,
    Query,
    QueryFactory,
    QueryMetadata,
    QueryResults,
    SubQuery,
    Tuple,
)
from entity_query.application.executor import (
    AggregateOperator,
    DistinctOperator,
    EntityRow,
    ExecutionResult,
    ExpressionEvaluator,
    FilterOperator,
    LimitOperator,
    ListOperator,
    NestedLoopJoinOperator,
    Operator,
    ProjectOperator,
    QueryExecutor,
    Row,
    SeqScanOperator,
    SortOperator,
)
from entity_query.application.session import Session

__all__ = [
    "Session",
    "Query",
    "QueryFactory",
    "SubQuery",
    "Tuple",
    "QueryResults",
    "QueryMetadata",
    "JoinSpec",
    "JoinType",
    "QueryExecutor",
    "ExecutionResult",
    "ExpressionEvaluator",
    "Row",
    "Operator",
    "SeqScanOperator",
    "NestedLoopJoinOperator",
    "FilterOperator",
    "AggregateOperator",
    "SortOperator",
    "ProjectOperator",
    "DistinctOperator",
    "LimitOperator",
    "ListOperator",
    "EntityRow",
]
