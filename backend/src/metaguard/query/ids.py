"""Identifier validation.

External identifiers arrive as strings. Anything that is not a 24
character hex string is treated as "not found": no exception, and no
storage access.
"""

from typing import Any, Iterable

from bson import ObjectId

from metaguard.core.types import OBJECT_ID_PATTERN
from metaguard.persistence.adapter import DocumentStore


def is_object_id(raw: Any) -> bool:
    return isinstance(raw, str) and bool(OBJECT_ID_PATTERN.fullmatch(raw))


def to_id_query(raw: Any) -> dict[str, ObjectId] | None:
    """Convert an id string into ``{"_id": ObjectId}``, or None if malformed."""
    if not is_object_id(raw):
        return None
    return {"_id": ObjectId(raw)}


def to_id_queries(raw_list: Iterable[Any] | None, *, strict: bool = False) -> dict[str, Any] | None:
    """Convert a batch of id strings into an ``$in`` query.

    Args:
        raw_list: Candidate id strings
        strict: When True a single malformed entry rejects the whole batch;
            when False malformed entries are dropped

    Returns:
        ``{"_id": {"$in": [...]}}`` or None when no usable id remains (or,
        in strict mode, when any entry is malformed)
    """
    if raw_list is None or isinstance(raw_list, (str, bytes)):
        return None

    ids: list[ObjectId] = []
    for raw in raw_list:
        if is_object_id(raw):
            oid = ObjectId(raw)
            if oid not in ids:
                ids.append(oid)
        elif strict:
            return None

    if not ids:
        return None
    return {"_id": {"$in": ids}}


async def find_by_id(
    store: DocumentStore,
    collection: str,
    raw: Any,
    projection: list[str] | None = None,
) -> dict[str, Any] | None:
    """Read one record by id string, skipping the read when the id is malformed."""
    query = to_id_query(raw)
    if query is None:
        return None
    return await store.find_one(collection, query, projection)
