"""Query composition and identifier validation."""

from metaguard.query.filters import (
    MAX_LIMIT,
    RESERVED_PARAMS,
    Query,
    build_query,
    merge_filters,
    resolve_ref_filter,
    sanitize_client_filter,
)
from metaguard.query.ids import find_by_id, is_object_id, to_id_queries, to_id_query

__all__ = [
    "MAX_LIMIT",
    "Query",
    "RESERVED_PARAMS",
    "build_query",
    "find_by_id",
    "is_object_id",
    "merge_filters",
    "resolve_ref_filter",
    "sanitize_client_filter",
    "to_id_queries",
    "to_id_query",
]
