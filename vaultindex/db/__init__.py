"""
Storage layer for the DocuVault index

Provides:
- EntityStore abstraction (InMemory for dev/test, Postgres for prod)
- Undo journal and hash-chained checkpoints
- Connection configuration
"""

from .store import (
    EntityStore,
    InMemoryEntityStore,
    PostgresEntityStore,
    BatchContext,
    StateView,
    Checkpoint,
    EntityStoreError,
    TransientStoreError,
    LockTimeoutError,
    StoreCorruptionError,
    create_entity_store,
)
from .config import DatabaseConfig, EntityStoreDriver, get_database_url

__all__ = [
    "EntityStore",
    "InMemoryEntityStore",
    "PostgresEntityStore",
    "BatchContext",
    "StateView",
    "Checkpoint",
    "EntityStoreError",
    "TransientStoreError",
    "LockTimeoutError",
    "StoreCorruptionError",
    "create_entity_store",
    "DatabaseConfig",
    "EntityStoreDriver",
    "get_database_url",
]
