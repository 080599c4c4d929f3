"""In-memory document store.

Implements the subset of MongoDB query syntax MetaGuard produces:
equality (with array containment), $in, $nin, $ne, $gt, $gte, $lt, $lte,
$exists, $regex (with the "i" option) and top-level $and / $or.
"""

import copy
import re
from typing import Any

from bson import ObjectId

from metaguard.persistence.adapter import SortSpec


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    try:
        if op == "$gt":
            return actual > expected
        if op == "$gte":
            return actual >= expected
        if op == "$lt":
            return actual < expected
        if op == "$lte":
            return actual <= expected
    except TypeError:
        return False
    raise ValueError(f"Unsupported operator '{op}'")


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, list) and not isinstance(expected, list):
        return expected in actual
    return actual == expected


def _match_operators(actual: Any, present: bool, spec: dict[str, Any]) -> bool:
    for op, expected in spec.items():
        if op == "$in":
            if not any(_equals(actual, e) for e in expected):
                return False
        elif op == "$nin":
            if any(_equals(actual, e) for e in expected):
                return False
        elif op == "$ne":
            if _equals(actual, expected):
                return False
        elif op == "$exists":
            if present != bool(expected):
                return False
        elif op == "$regex":
            flags = re.IGNORECASE if "i" in spec.get("$options", "") else 0
            if not isinstance(actual, str) or not re.search(expected, actual, flags):
                return False
        elif op == "$options":
            continue
        elif op in ("$gt", "$gte", "$lt", "$lte"):
            if not _compare(op, actual, expected):
                return False
        else:
            raise ValueError(f"Unsupported operator '{op}'")
    return True


def matches(document: dict[str, Any], filter: dict[str, Any]) -> bool:
    """Check whether a document satisfies a filter."""
    for key, expected in filter.items():
        if key == "$and":
            if not all(matches(document, sub) for sub in expected):
                return False
            continue
        if key == "$or":
            if not any(matches(document, sub) for sub in expected):
                return False
            continue

        present = key in document
        actual = document.get(key)
        if isinstance(expected, dict) and expected and all(k.startswith("$") for k in expected):
            if not _match_operators(actual, present, expected):
                return False
        elif not _equals(actual, expected):
            return False
    return True


def _sort_key(field: str):
    def key(document: dict[str, Any]) -> tuple:
        value = document.get(field)
        # None sorts first, like MongoDB
        return (value is not None, value if value is not None else 0)

    return key


def _project(document: dict[str, Any], projection: list[str] | None) -> dict[str, Any]:
    if projection is None:
        return copy.deepcopy(document)
    result = {"_id": document["_id"]}
    for name in projection:
        if name in document:
            result[name] = copy.deepcopy(document[name])
    return result


class MemoryStore:
    """Document store kept in process memory. Used for tests and demos."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[ObjectId, dict[str, Any]]] = {}

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        self._collections.clear()

    def _docs(self, collection: str) -> dict[ObjectId, dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    async def find(
        self,
        collection: str,
        filter: dict[str, Any],
        projection: list[str] | None = None,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        rows = [d for d in self._docs(collection).values() if matches(d, filter)]
        # Stable multi-key sort: apply the least significant key first
        for field, direction in reversed(sort or []):
            try:
                rows.sort(key=_sort_key(field), reverse=direction < 0)
            except TypeError:
                rows.sort(key=lambda d: str(d.get(field)), reverse=direction < 0)
        rows = rows[skip:]
        if limit:
            rows = rows[:limit]
        return [_project(d, projection) for d in rows]

    async def find_one(
        self,
        collection: str,
        filter: dict[str, Any],
        projection: list[str] | None = None,
    ) -> dict[str, Any] | None:
        rows = await self.find(collection, filter, projection, limit=1)
        return rows[0] if rows else None

    async def count(self, collection: str, filter: dict[str, Any]) -> int:
        return sum(1 for d in self._docs(collection).values() if matches(d, filter))

    async def insert(self, collection: str, document: dict[str, Any]) -> dict[str, Any]:
        stored = copy.deepcopy(document)
        stored.setdefault("_id", ObjectId())
        self._docs(collection)[stored["_id"]] = stored
        return copy.deepcopy(stored)

    async def update(
        self, collection: str, filter: dict[str, Any], fields: dict[str, Any]
    ) -> int:
        matched = [d for d in self._docs(collection).values() if matches(d, filter)]
        for document in matched:
            document.update(copy.deepcopy(fields))
        return len(matched)

    async def delete(self, collection: str, filter: dict[str, Any]) -> int:
        docs = self._docs(collection)
        doomed = [key for key, d in docs.items() if matches(d, filter)]
        for key in doomed:
            del docs[key]
        return len(doomed)
