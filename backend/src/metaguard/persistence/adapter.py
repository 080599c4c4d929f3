"""DocumentStore Protocol: the storage capability EntityService consumes."""

from typing import Any, Protocol, runtime_checkable

# Ordered (field, direction) pairs; direction is 1 ascending or -1 descending
SortSpec = list[tuple[str, int]]


@runtime_checkable
class DocumentStore(Protocol):
    """Interface all document stores must implement.

    Filters use MongoDB query syntax. Records carry their identifier under
    ``_id`` as a bson ObjectId. Every call is a suspension point.
    """

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def find(
        self,
        collection: str,
        filter: dict[str, Any],
        projection: list[str] | None = None,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    async def find_one(
        self,
        collection: str,
        filter: dict[str, Any],
        projection: list[str] | None = None,
    ) -> dict[str, Any] | None: ...

    async def count(self, collection: str, filter: dict[str, Any]) -> int: ...

    async def insert(self, collection: str, document: dict[str, Any]) -> dict[str, Any]: ...

    async def update(
        self, collection: str, filter: dict[str, Any], fields: dict[str, Any]
    ) -> int: ...

    async def delete(self, collection: str, filter: dict[str, Any]) -> int: ...
