"""Store configuration and factory."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from metaguard.persistence.adapter import DocumentStore


@dataclass
class StoreConfig:
    """Document store connection configuration.

    Supports memory:// and mongodb:// (or mongodb+srv://) URL schemes.
    """

    url: str
    pool_size: int = 10

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Create config from environment variables.

        Resolution order:
        1. DATABASE_URL env var
        2. Default: memory://
        """
        url = os.environ.get("DATABASE_URL") or "memory://"
        pool_size = int(os.environ.get("METAGUARD_DB_POOL", "10"))
        return cls(url=url, pool_size=pool_size)

    @property
    def is_memory(self) -> bool:
        return self.url.startswith("memory")

    @property
    def is_mongodb(self) -> bool:
        return self.url.startswith("mongodb")


def create_store(config: StoreConfig) -> DocumentStore:
    """Create a document store based on the URL scheme.

    Returns:
        A DocumentStore instance (not yet connected).

    Raises:
        ValueError: For unsupported URL schemes.
    """
    if config.is_memory:
        from metaguard.persistence.memory import MemoryStore

        return MemoryStore()

    if config.is_mongodb:
        from metaguard.persistence.mongo import MongoStore

        return MongoStore(config.url, pool_size=config.pool_size)

    raise ValueError(f"Unsupported database URL scheme: {config.url}")
