"""Inbound adapters for the entity query engine.

Inbound adapters handle incoming requests and convert them to
internal domain operations.

Exports:
    JPQL Parser:
        - JPQLParser: Parser that checks JPQL text against the metamodel
        - JPQLStatement: A parsed select statement
        - JPQLTranslator: Translation of a parsed statement into a Query
        - JPQLQuery: Executable query with named parameters
"""

from entity_query.adapters.inbound.jpql_parser import (
    JPQLParser,
    JPQLQuery,
    JPQLStatement,
    JPQLTranslator,
    to_snake_case,
)

__all__ = [
    "JPQLParser",
    "JPQLQuery",
    "JPQLStatement",
    "JPQLTranslator",
    "to_snake_case",
]
