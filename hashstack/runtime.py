"""
Ledger Runtime

Builds the configured BlockStore, hydrates a Ledger from it and verifies the
chain before anything is allowed to write.

Mode is determined by environment variables:
- BLOCKSTORE_DRIVER: Explicit driver selection (memory, sqlite, psycopg2)
- DATABASE_URL or DATABASE_HOST: PostgreSQL (auto-selects psycopg2)
- HASHSTACK_DB_PATH: SQLite file (auto-selects sqlite)
- None set: in-memory (development)

Unlike a best-effort bootstrap, a store that cannot be reached is an error:
the ledger never starts on top of a partially loaded chain.
"""

from contextlib import contextmanager
from typing import Generator, Optional

from .core import Ledger
from .db.config import (
    BlockStoreDriver,
    DatabaseConfig,
    LedgerConfig,
    get_blockstore_driver,
    get_database_url,
)
from .db.store import BlockStore, BlockStoreError, InMemoryBlockStore, SqliteBlockStore
from .observability import get_logger


logger = get_logger(__name__)


def create_block_store(
    driver: Optional[BlockStoreDriver] = None,
    config: Optional[LedgerConfig] = None,
) -> BlockStore:
    """
    Create the BlockStore chosen by configuration.

    Raises:
        BlockStoreError: If the store cannot be opened
    """
    driver = driver or get_blockstore_driver()
    config = config or LedgerConfig.from_env()

    if driver == BlockStoreDriver.MEMORY:
        logger.info("Using in-memory block store (no persistence)")
        return InMemoryBlockStore()

    if driver == BlockStoreDriver.SQLITE:
        logger.info("Using SQLite block store", path=config.db_path)
        return SqliteBlockStore(config.db_path, retries=config.store_retries)

    return _create_psycopg2_store(config)


def _create_psycopg2_store(config: LedgerConfig) -> BlockStore:
    """Create PostgresBlockStore with psycopg2."""
    import psycopg2

    from .db.store import PostgresBlockStore

    db_url = get_database_url()
    db_config = DatabaseConfig.from_url(db_url) if db_url and "://" in db_url else DatabaseConfig.from_env()

    def connection_factory():
        return psycopg2.connect(db_config.to_dsn())

    try:
        connection_factory().close()
    except psycopg2.Error as e:
        raise BlockStoreError(
            f"Could not connect to PostgreSQL at {db_config.to_url(include_password=False)}: {e}"
        ) from e

    store = PostgresBlockStore(connection_factory, retries=config.store_retries)
    store.ensure_schema()
    logger.info(
        "PostgreSQL block store ready",
        host=f"{db_config.host}:{db_config.port}/{db_config.database}",
    )
    return store


def open_ledger(
    store: Optional[BlockStore] = None,
    config: Optional[LedgerConfig] = None,
) -> Ledger:
    """
    Load and verify a Ledger.

    Raises:
        BlockStoreError: If blocks cannot be loaded
        GenesisViolationError, ChainViolationError: If the stored chain is invalid
    """
    config = config or LedgerConfig.from_env()
    owns_store = store is None
    store = store or create_block_store(config=config)

    try:
        block_count = store.get_block_count()
        if block_count == 0:
            logger.info("Empty store - creating fresh ledger")
        else:
            logger.info("Loading blocks from store", block_count=block_count)

        ledger = Ledger.load_from_store(
            store,
            verify=True,
            difficulty=config.difficulty,
            max_mining_iterations=config.max_mining_iterations,
        )
    except Exception:
        if owns_store:
            store.close()
        raise

    logger.info("Chain verified", block_count=ledger.block_count)
    return ledger


@contextmanager
def ledger_session(
    store: Optional[BlockStore] = None,
    config: Optional[LedgerConfig] = None,
) -> Generator[Ledger, None, None]:
    """
    Open a verified ledger and close its store on exit.

    Usage:
        with ledger_session() as ledger:
            tracked = ChangeTrackingStore.from_ledger(ledger)
            tracked.set("a", 1)
    """
    ledger = open_ledger(store=store, config=config)
    try:
        yield ledger
    finally:
        ledger.close()
        logger.info("Ledger closed")
