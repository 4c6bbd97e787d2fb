"""
Block Store Abstraction

This module defines the BlockStore interface and provides three implementations:
- InMemoryBlockStore: For development and testing
- SqliteBlockStore: Single-file durability (the classic hashstack.db layout)
- PostgresBlockStore: For production with a shared database

The BlockStore is responsible for:
- Durable append of one block at a time, keyed by index
- Ordered load of every block
- Failing loudly when a write does not land

The Ledger retains responsibility for:
- Hashing and mining
- Genesis and admission rules
- Whole-chain verification on load

RETRY CONTRACT:
Transient failures (a locked SQLite file, a dropped PostgreSQL connection)
are retried a bounded number of times. Integrity failures (duplicate index)
are never retried. Whatever is left is raised as BlockStoreError.
"""

import sqlite3
import time
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Iterable, Optional, TypeVar, Union

from ..core.block import Block
from ..observability import get_logger
from ..schemas import BlockRow


logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRIES = 3
DEFAULT_RETRY_BACKOFF_S = 0.05


# ============================================================
# EXCEPTIONS
# ============================================================

class BlockStoreError(Exception):
    """Base exception for block store errors (load or append failed)."""
    pass


class DuplicateBlockError(BlockStoreError):
    """Raised when a block with the same index is already stored."""
    pass


# ============================================================
# ROW MAPPING
# ============================================================

def block_to_row(block: Block) -> BlockRow:
    if block.hash is None:
        raise BlockStoreError(f"Block {block.index} has no hash and cannot be stored")
    return BlockRow(
        id=block.index,
        timestamp=str(block.timestamp),
        previous_hash=block.previous_hash,
        data=block.data,
        hash=block.hash,
        nonce=block.nonce,
    )


def row_to_block(row: BlockRow) -> Block:
    return Block(
        index=row.id,
        timestamp=row.timestamp,
        previous_hash=row.previous_hash,
        data=row.data,
        hash=row.hash,
        nonce=row.nonce,
    )


def with_retries(
    operation: Callable[[], T],
    transient: Callable[[Exception], bool],
    retries: int = DEFAULT_RETRIES,
    backoff_s: float = DEFAULT_RETRY_BACKOFF_S,
    description: str = "store operation",
) -> T:
    """
    Run operation, retrying while transient(error) is true.

    At most `retries` extra attempts are made, with linear backoff.
    The last error is re-raised unchanged.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as e:
            if attempt >= retries or not transient(e):
                raise
            attempt += 1
            logger.warning(
                f"Transient failure during {description}, retrying",
                attempt=attempt,
                retries=retries,
                error=str(e),
            )
            time.sleep(backoff_s * attempt)


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class BlockStore(ABC):
    """
    Abstract base class for block persistence.

    Implementations must ensure:
    1. list_all() returns blocks ordered by index ascending
    2. append() either stores the block durably or raises
    3. No duplicate indexes
    """

    @abstractmethod
    def list_all(self) -> list[Block]:
        """
        Load every stored block.

        Returns:
            List of all blocks, ordered by index ascending
        """
        pass

    @abstractmethod
    def append(self, block: Block) -> None:
        """
        Durably store one block keyed by its index.

        Raises:
            DuplicateBlockError: If the index is already stored
            BlockStoreError: If the write did not succeed
        """
        pass

    @abstractmethod
    def get_block_count(self) -> int:
        """Get total number of stored blocks."""
        pass

    def close(self) -> None:
        """Release connections. Safe to call more than once."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryBlockStore(BlockStore):
    """
    In-memory implementation of BlockStore.

    Suitable for:
    - Development
    - Testing

    NOT suitable for:
    - Production (no durability)
    """

    def __init__(self, blocks: Optional[Iterable[Block]] = None):
        self._blocks: list[Block] = sorted(
            (block.model_copy() for block in blocks or ()),
            key=lambda b: b.index,
        )
        self._lock = Lock()

    def append(self, block: Block) -> None:
        with self._lock:
            expected = self._blocks[-1].index + 1 if self._blocks else 0
            if any(stored.index == block.index for stored in self._blocks):
                raise DuplicateBlockError(f"Block {block.index} is already stored")
            if block.index != expected:
                raise BlockStoreError(
                    f"Index gap: expected {expected}, got {block.index}"
                )
            block_to_row(block)
            self._blocks.append(block.model_copy())

    def list_all(self) -> list[Block]:
        with self._lock:
            return [block.model_copy() for block in self._blocks]

    def get_block_count(self) -> int:
        return len(self._blocks)

    def clear(self) -> None:
        """Clear all blocks (for testing only)."""
        with self._lock:
            self._blocks.clear()


# ============================================================
# SQLITE IMPLEMENTATION
# ============================================================

SQLITE_SCHEMA = """
CREATE TABLE IF NOT EXISTS blockchain (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT,
    previousHash TEXT,
    data TEXT,
    hash TEXT,
    nonce INTEGER
)
"""


def _sqlite_is_transient(e: Exception) -> bool:
    return isinstance(e, sqlite3.OperationalError) and (
        "locked" in str(e).lower() or "busy" in str(e).lower()
    )


class SqliteBlockStore(BlockStore):
    """
    SQLite implementation of BlockStore.

    Uses the same `blockchain` table as earlier hashstack databases, so an
    existing hashstack.db opens and verifies unchanged.
    """

    BUSY_TIMEOUT_MS = 5000

    def __init__(
        self,
        path: Union[str, Path] = "hashstack.db",
        retries: int = DEFAULT_RETRIES,
        retry_backoff_s: float = DEFAULT_RETRY_BACKOFF_S,
    ):
        self._path = str(path)
        self._retries = retries
        self._retry_backoff_s = retry_backoff_s
        self._lock = Lock()

        self._conn: Optional[sqlite3.Connection] = None

        existed = self._path != ":memory:" and Path(self._path).exists()
        try:
            self._conn = sqlite3.connect(self._path, check_same_thread=False)
            self._conn.execute(f"PRAGMA busy_timeout={self.BUSY_TIMEOUT_MS};")
            self.ensure_schema()
        except sqlite3.Error as e:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            raise BlockStoreError(f"Could not open SQLite store at {self._path}: {e}") from e

        logger.info(
            "Database loaded" if existed else "Database initialized",
            path=self._path,
        )

    @property
    def path(self) -> str:
        return self._path

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise BlockStoreError(f"SQLite store at {self._path} is closed")
        return self._conn

    def ensure_schema(self) -> None:
        conn = self._connection()
        with conn:
            conn.execute(SQLITE_SCHEMA)

    def append(self, block: Block) -> None:
        row = block_to_row(block)

        def _insert() -> None:
            conn = self._connection()
            with conn:
                conn.execute(
                    "INSERT INTO blockchain (id, timestamp, previousHash, data, hash, nonce) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    row.as_params(),
                )

        with self._lock:
            try:
                with_retries(
                    _insert,
                    _sqlite_is_transient,
                    retries=self._retries,
                    backoff_s=self._retry_backoff_s,
                    description=f"append of block {block.index}",
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateBlockError(f"Block {block.index} is already stored") from e
            except sqlite3.Error as e:
                raise BlockStoreError(f"Could not append block {block.index}: {e}") from e

    def list_all(self) -> list[Block]:
        def _select() -> list[tuple]:
            cursor = self._connection().execute(
                "SELECT id, timestamp, previousHash, data, hash, nonce "
                "FROM blockchain ORDER BY id"
            )
            try:
                return cursor.fetchall()
            finally:
                cursor.close()

        with self._lock:
            try:
                rows = with_retries(
                    _select,
                    _sqlite_is_transient,
                    retries=self._retries,
                    backoff_s=self._retry_backoff_s,
                    description="load of all blocks",
                )
            except sqlite3.Error as e:
                raise BlockStoreError(f"Could not load blocks: {e}") from e

        return [row_to_block(BlockRow.from_tuple(row)) for row in rows]

    def get_block_count(self) -> int:
        with self._lock:
            try:
                return self._connection().execute("SELECT COUNT(*) FROM blockchain").fetchone()[0]
            except sqlite3.Error as e:
                raise BlockStoreError(f"Could not count blocks: {e}") from e

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

POSTGRES_SCHEMA = """
CREATE TABLE IF NOT EXISTS blockchain (
    id BIGINT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    "previousHash" TEXT,
    data TEXT NOT NULL,
    hash TEXT NOT NULL,
    nonce BIGINT NOT NULL
)
"""


class PostgresBlockStore(BlockStore):
    """
    PostgreSQL implementation of BlockStore.

    Provides:
    - Durability (blocks survive restarts)
    - Primary key on the block index (no duplicates)
    - Statement timeout to prevent hanging
    - Bounded retry of dropped connections

    Requirements:
    - psycopg2 for connection

    Usage:
        store = PostgresBlockStore(lambda: psycopg2.connect(config.to_dsn()))
    """

    STATEMENT_TIMEOUT_MS = 10000

    # psycopg2 error code for unique violations
    PGCODE_UNIQUE_VIOLATION = "23505"

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
        retries: int = DEFAULT_RETRIES,
        retry_backoff_s: float = DEFAULT_RETRY_BACKOFF_S,
    ):
        """
        Initialize PostgreSQL block store.

        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            statement_timeout_ms: Max statement execution time (ms). Default 10000.
            retries: Extra attempts after a dropped connection.
            retry_backoff_s: Base backoff between attempts.
        """
        self._connection_factory = connection_factory
        self._statement_timeout_ms = statement_timeout_ms
        self._retries = retries
        self._retry_backoff_s = retry_backoff_s

    @staticmethod
    def _is_transient(e: Exception) -> bool:
        import psycopg2

        return isinstance(e, (psycopg2.OperationalError, psycopg2.InterfaceError))

    def _run(self, work: Callable[[Any], T], description: str) -> T:
        """Run work(cursor) in one transaction on a fresh connection."""
        def _attempt() -> T:
            conn = self._connection_factory()
            cursor = conn.cursor()
            try:
                cursor.execute(
                    f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'"
                )
                result = work(cursor)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise
            finally:
                try:
                    cursor.close()
                finally:
                    conn.close()

        return with_retries(
            _attempt,
            self._is_transient,
            retries=self._retries,
            backoff_s=self._retry_backoff_s,
            description=description,
        )

    def ensure_schema(self) -> None:
        import psycopg2

        try:
            self._run(lambda cursor: cursor.execute(POSTGRES_SCHEMA), "schema creation")
        except psycopg2.Error as e:
            raise BlockStoreError(f"Could not create schema: {e}") from e

    def append(self, block: Block) -> None:
        import psycopg2

        row = block_to_row(block)

        def _insert(cursor) -> None:
            cursor.execute(
                'INSERT INTO blockchain (id, timestamp, "previousHash", data, hash, nonce) '
                "VALUES (%s, %s, %s, %s, %s, %s)",
                row.as_params(),
            )

        try:
            self._run(_insert, f"append of block {block.index}")
        except psycopg2.Error as e:
            if getattr(e, "pgcode", None) == self.PGCODE_UNIQUE_VIOLATION:
                raise DuplicateBlockError(f"Block {block.index} is already stored") from e
            raise BlockStoreError(f"Could not append block {block.index}: {e}") from e

    def list_all(self) -> list[Block]:
        import psycopg2

        def _select(cursor) -> list[tuple]:
            cursor.execute(
                'SELECT id, timestamp, "previousHash", data, hash, nonce '
                "FROM blockchain ORDER BY id"
            )
            return cursor.fetchall()

        try:
            rows = self._run(_select, "load of all blocks")
        except psycopg2.Error as e:
            raise BlockStoreError(f"Could not load blocks: {e}") from e

        return [row_to_block(BlockRow.from_tuple(row)) for row in rows]

    def get_block_count(self) -> int:
        import psycopg2

        def _count(cursor) -> int:
            cursor.execute("SELECT COUNT(*) FROM blockchain")
            return cursor.fetchone()[0]

        try:
            return self._run(_count, "block count")
        except psycopg2.Error as e:
            raise BlockStoreError(f"Could not count blocks: {e}") from e
