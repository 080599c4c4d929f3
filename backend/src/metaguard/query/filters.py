"""Query composition.

Combines three filter sources into one query for the document store:

1. client search parameters (untrusted)
2. the collection's ref_filter for the requesting collection (contextual)
3. the list_query hook's filter (server-enforced)

Later sources overwrite earlier ones key by key, so a client can never
change a constraint the server or the reference context sets. Client keys
are also limited to the collection's search fields and stripped of query
operators before the merge.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from metaguard.core.errors import Code, EntityError
from metaguard.core.types import convert_value
from metaguard.metadata.types import Meta

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
MAX_LIMIT = 1000

REQUIRED_PARAMS = ("attr_names", "sort_by", "desc")
# List parameters that are never treated as search values
RESERVED_PARAMS = frozenset(REQUIRED_PARAMS + ("page", "limit", "ref_by_entity", "mode"))

_TEXT_TYPES = ("string", "text")
_TRUE_STRINGS = ("true", "1", "yes", "desc")


@dataclass
class Query:
    """A sanitized, request-scoped query."""

    filter: dict[str, Any] = field(default_factory=dict)
    projection: list[str] = field(default_factory=list)
    sort: list[tuple[str, int]] = field(default_factory=list)
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


def split_names(value: Any) -> list[str]:
    """Accept a list of names or a comma separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple)):
        return [str(part).strip() for part in value if str(part).strip()]
    raise EntityError(Code.INVALID_PARAMS, f"Expected a list of names, got {value!r}")


def _parse_desc(value: Any) -> list[bool]:
    if isinstance(value, bool):
        return [value]
    if isinstance(value, str):
        return [part.strip().lower() in _TRUE_STRINGS for part in value.split(",")]
    if isinstance(value, (list, tuple)):
        return [
            item if isinstance(item, bool) else str(item).strip().lower() in _TRUE_STRINGS
            for item in value
        ]
    raise EntityError(Code.INVALID_PARAMS, f"Invalid desc value {value!r}")


def build_sort(meta: Meta, sort_by: Any, desc: Any) -> list[tuple[str, int]]:
    """Zip sort_by and desc into ordered (field, direction) pairs.

    Fields outside the collection's list fields are dropped; a missing desc
    entry means ascending.
    """
    names = split_names(sort_by)
    directions = _parse_desc(desc)
    allowed = set(meta.subsets.list_fields) | {"_id"}

    sort: list[tuple[str, int]] = []
    for index, name in enumerate(names):
        if name not in allowed or any(s[0] == name for s in sort):
            continue
        descending = directions[index] if index < len(directions) else False
        sort.append((name, -1 if descending else 1))
    return sort


def build_projection(meta: Meta, attr_names: Any) -> list[str]:
    """Intersect the requested attributes with the collection's list fields.

    Keeps list_fields order. When nothing requested is listable the full
    list_fields is returned.
    """
    requested = set(split_names(attr_names))
    projection = [name for name in meta.subsets.list_fields if name in requested]
    return projection or list(meta.subsets.list_fields)


def require_params(params: Mapping[str, Any], names: tuple[str, ...]) -> None:
    """Raise NO_PARAMS naming every key of names absent from params."""
    missing = [key for key in names if key not in params]
    if missing:
        raise EntityError(Code.NO_PARAMS, f"Missing parameters: {', '.join(missing)}")


def _positive_int(params: Mapping[str, Any], key: str, default: int) -> int:
    value = params.get(key)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise EntityError(Code.INVALID_PARAMS, f"'{key}' must be a positive integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise EntityError(Code.INVALID_PARAMS, f"'{key}' must be a positive integer")
    if number < 1:
        raise EntityError(Code.INVALID_PARAMS, f"'{key}' must be a positive integer")
    return number


def resolve_ref_filter(meta: Meta, ref_by_entity: str | None) -> dict[str, Any]:
    """Pick the contextual filter for a requesting collection.

    Falls back to the ``"*"`` entry, then to an empty filter.
    """
    if ref_by_entity and ref_by_entity in meta.ref_filter:
        return dict(meta.ref_filter[ref_by_entity])
    if "*" in meta.ref_filter:
        return dict(meta.ref_filter["*"])
    return {}


def _has_operator(value: Any) -> bool:
    if isinstance(value, dict):
        return True
    if isinstance(value, (list, tuple)):
        return any(isinstance(item, (dict, list, tuple)) for item in value)
    return False


def sanitize_client_filter(meta: Meta, client_params: Mapping[str, Any] | None) -> dict[str, Any]:
    """Turn untrusted search parameters into filter conditions.

    Operator keys, keys outside search_fields and object-valued entries are
    dropped. Text fields match case-insensitively on a literal substring;
    lists become ``$in`` lists; other values are converted to the field's
    type.

    Raises:
        EntityError: INVALID_PARAMS if a value cannot be converted
    """
    if not client_params:
        return {}

    searchable = set(meta.subsets.search_fields)
    result: dict[str, Any] = {}
    for key, value in client_params.items():
        if not isinstance(key, str) or key.startswith("$") or key in RESERVED_PARAMS:
            continue
        if key not in searchable or _has_operator(value):
            continue
        if value is None or value == "":
            continue

        field_def = meta.get_field(key)
        field_type = field_def.type if field_def else "string"
        try:
            if isinstance(value, (list, tuple)):
                result[key] = {"$in": [convert_value(field_type, v) for v in value]}
            elif field_type in _TEXT_TYPES:
                result[key] = {"$regex": re.escape(str(value)), "$options": "i"}
            else:
                result[key] = convert_value(field_type, value)
        except ValueError as e:
            raise EntityError(Code.INVALID_PARAMS, f"Invalid value for '{key}': {e}")
    return result


def merge_filters(
    client_filter: Mapping[str, Any],
    context_filter: Mapping[str, Any],
    server_filter: Mapping[str, Any],
) -> dict[str, Any]:
    """Overlay client, then contextual, then server filters.

    A key set by the contextual or server filter replaces the client's value
    for that key outright.
    """
    merged = dict(client_filter)
    merged.update(context_filter)
    merged.update(server_filter)
    return merged


def build_query(
    meta: Meta,
    params: Mapping[str, Any],
    server_filter: Mapping[str, Any] | None = None,
    client_params: Mapping[str, Any] | None = None,
    ref_by_entity: str | None = None,
    max_limit: int = MAX_LIMIT,
) -> Query:
    """Build a sanitized Query for a list request.

    Args:
        meta: The collection being listed
        params: List parameters; attr_names, sort_by and desc are required
        server_filter: Filter enforced by the server (list_query hook)
        client_params: Untrusted search values
        ref_by_entity: Requesting collection for ref_filter lookup
        max_limit: Upper bound for the page size

    Raises:
        EntityError: NO_PARAMS when a required parameter is missing,
            INVALID_PARAMS for malformed paging or search values
    """
    require_params(params, REQUIRED_PARAMS)

    page = _positive_int(params, "page", DEFAULT_PAGE)
    limit = min(_positive_int(params, "limit", DEFAULT_LIMIT), max_limit)

    merged = merge_filters(
        sanitize_client_filter(meta, client_params),
        resolve_ref_filter(meta, ref_by_entity),
        server_filter or {},
    )

    return Query(
        filter=merged,
        projection=build_projection(meta, params["attr_names"]),
        sort=build_sort(meta, params["sort_by"], params["desc"]),
        page=page,
        limit=limit,
    )
