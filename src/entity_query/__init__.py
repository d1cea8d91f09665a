"""
Entity Query - typed query construction over an in-memory entity model

A small persistence context (unit of work, identity map, explicit lazy
references) with a fluent, metamodel-driven query builder and a
Volcano-style query engine supporting joins, grouping, sub-queries and paging.
"""

__version__ = "0.1.0"
__author__ = "Systems Engineering Portfolio"
