"""MongoDB document store using pymongo's asyncio client."""

import logging
from typing import Any

from pymongo import AsyncMongoClient

from metaguard.persistence.adapter import SortSpec

logger = logging.getLogger(__name__)


class MongoStore:
    """Document store backed by a MongoDB database."""

    def __init__(self, url: str, database: str = "metaguard", pool_size: int = 10):
        self.url = url
        self.database_name = database
        self.pool_size = pool_size
        self.client: AsyncMongoClient | None = None
        self._db = None

    async def connect(self) -> None:
        self.client = AsyncMongoClient(self.url, maxPoolSize=self.pool_size)
        self._db = self.client.get_default_database(default=self.database_name)
        logger.info("Connected to MongoDB database '%s'", self._db.name)

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()
            self.client = None
            self._db = None

    def _collection(self, name: str):
        if self._db is None:
            raise RuntimeError("Database not connected")
        return self._db[name]

    @staticmethod
    def _projection(projection: list[str] | None) -> dict[str, int] | None:
        if projection is None:
            return None
        return {name: 1 for name in projection}

    async def find(
        self,
        collection: str,
        filter: dict[str, Any],
        projection: list[str] | None = None,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        cursor = self._collection(collection).find(filter, self._projection(projection))
        if sort:
            cursor = cursor.sort(sort)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return await cursor.to_list()

    async def find_one(
        self,
        collection: str,
        filter: dict[str, Any],
        projection: list[str] | None = None,
    ) -> dict[str, Any] | None:
        return await self._collection(collection).find_one(filter, self._projection(projection))

    async def count(self, collection: str, filter: dict[str, Any]) -> int:
        return await self._collection(collection).count_documents(filter)

    async def insert(self, collection: str, document: dict[str, Any]) -> dict[str, Any]:
        stored = dict(document)
        result = await self._collection(collection).insert_one(stored)
        stored["_id"] = result.inserted_id
        return stored

    async def update(
        self, collection: str, filter: dict[str, Any], fields: dict[str, Any]
    ) -> int:
        if not fields:
            return await self.count(collection, filter)
        result = await self._collection(collection).update_many(filter, {"$set": fields})
        return result.matched_count

    async def delete(self, collection: str, filter: dict[str, Any]) -> int:
        result = await self._collection(collection).delete_many(filter)
        return result.deleted_count
