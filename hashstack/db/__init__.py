"""
Persistence Layer for the hashstack Ledger

Provides:
- BlockStore abstraction (InMemory for dev, SQLite and Postgres for durability)
- Environment-based configuration
"""

from .store import (
    BlockStore,
    InMemoryBlockStore,
    SqliteBlockStore,
    PostgresBlockStore,
    BlockStoreError,
    DuplicateBlockError,
)
from .config import (
    BlockStoreDriver,
    DatabaseConfig,
    LedgerConfig,
    get_blockstore_driver,
    get_database_url,
)

__all__ = [
    "BlockStore",
    "InMemoryBlockStore",
    "SqliteBlockStore",
    "PostgresBlockStore",
    "BlockStoreError",
    "DuplicateBlockError",
    "BlockStoreDriver",
    "DatabaseConfig",
    "LedgerConfig",
    "get_blockstore_driver",
    "get_database_url",
]
