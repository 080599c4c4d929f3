"""Persistence layer - document store collaborators."""

from metaguard.persistence.adapter import DocumentStore, SortSpec
from metaguard.persistence.config import StoreConfig, create_store
from metaguard.persistence.memory import MemoryStore

__all__ = ["DocumentStore", "MemoryStore", "SortSpec", "StoreConfig", "create_store"]
