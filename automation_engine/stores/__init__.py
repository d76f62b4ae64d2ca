"""Store implementations."""

from automation_engine.stores.base import EngineStore
from automation_engine.stores.memory_store import InMemoryStore
from automation_engine.stores.postgres_store import PostgresStore

__all__ = ["EngineStore", "InMemoryStore", "PostgresStore"]
