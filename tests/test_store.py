"""
Tests for the BlockStore layer, configuration and runtime wiring.
"""

import sqlite3

import psycopg2
import pytest

from hashstack.core import Block, ChainViolationError, Ledger
from hashstack.db import store as store_module
from hashstack.db.config import (
    BlockStoreDriver,
    DatabaseConfig,
    LedgerConfig,
    get_blockstore_driver,
    get_database_url,
)
from hashstack.db.store import (
    BlockStoreError,
    DuplicateBlockError,
    InMemoryBlockStore,
    PostgresBlockStore,
    SqliteBlockStore,
    block_to_row,
    row_to_block,
    with_retries,
)
from hashstack.runtime import create_block_store, ledger_session, open_ledger
from hashstack.schemas import COLUMNS, BlockRow


FIXED_TS = 1700000000000

STORE_ENV_VARS = (
    "BLOCKSTORE_DRIVER",
    "DATABASE_URL",
    "DATABASE_HOST",
    "DATABASE_PORT",
    "DATABASE_NAME",
    "DATABASE_USER",
    "DATABASE_PASSWORD",
    "DATABASE_SSL_MODE",
    "HASHSTACK_DB_PATH",
    "HASHSTACK_DIFFICULTY",
    "HASHSTACK_MAX_MINING_ITERATIONS",
    "HASHSTACK_STORE_RETRIES",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in STORE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def no_sleep(monkeypatch):
    monkeypatch.setattr(store_module.time, "sleep", lambda seconds: None)


def mined_chain(count: int) -> list[Block]:
    ledger = Ledger(difficulty=1, clock=lambda: FIXED_TS)
    for i in range(count):
        ledger.commit(f"payload-{i}")
    return ledger.blocks


class TestRowMapping:
    """Test the block <-> row mapping."""

    def test_round_trip(self):
        block = mined_chain(2)[1]
        row = block_to_row(block)

        assert row.id == block.index
        assert row.timestamp == str(FIXED_TS)
        assert row.previous_hash == block.previous_hash
        assert row_to_block(row) == block

    def test_genesis_row_has_null_previous_hash(self):
        row = block_to_row(mined_chain(1)[0])
        assert row.as_params()[2] is None

    def test_unhashed_block_cannot_be_stored(self):
        with pytest.raises(BlockStoreError, match="no hash"):
            block_to_row(Block(index=0, timestamp=FIXED_TS))

    def test_legacy_column_alias(self):
        row = BlockRow.model_validate({
            "id": 1, "timestamp": "5", "previousHash": "ab", "data": "x", "hash": "cd", "nonce": 2,
        })
        assert row.previous_hash == "ab"


class TestInMemoryBlockStore:
    """Test the development store."""

    def test_append_and_list(self):
        store = InMemoryBlockStore()
        for block in mined_chain(3):
            store.append(block)

        assert store.get_block_count() == 3
        assert [b.index for b in store.list_all()] == [0, 1, 2]

    def test_duplicate_index_rejected(self):
        store = InMemoryBlockStore()
        genesis = mined_chain(1)[0]
        store.append(genesis)

        with pytest.raises(DuplicateBlockError):
            store.append(genesis)
        assert store.get_block_count() == 1

    def test_index_gap_rejected(self):
        store = InMemoryBlockStore()

        with pytest.raises(BlockStoreError, match="Index gap"):
            store.append(mined_chain(3)[2])
        assert store.get_block_count() == 0

    def test_list_returns_copies(self):
        store = InMemoryBlockStore(mined_chain(1))
        store.list_all()[0].data = "tampered"
        assert store.list_all()[0].data == "payload-0"

    def test_clear(self):
        store = InMemoryBlockStore(mined_chain(2))
        store.clear()
        assert store.get_block_count() == 0


class TestSqliteBlockStore:
    """Test the single-file store."""

    @pytest.fixture
    def db_path(self, tmp_path):
        return tmp_path / "hashstack.db"

    def test_table_layout(self, db_path):
        SqliteBlockStore(db_path).close()

        conn = sqlite3.connect(db_path)
        try:
            columns = tuple(row[1] for row in conn.execute("PRAGMA table_info(blockchain)"))
        finally:
            conn.close()
        assert columns == COLUMNS

    def test_chain_survives_reopen(self, db_path):
        store = SqliteBlockStore(db_path)
        ledger = Ledger(block_store=store, difficulty=1, clock=lambda: FIXED_TS)
        for data in ("a", "b", "c"):
            ledger.commit(data)
        expected = [b.to_dict() for b in ledger.blocks]
        ledger.close()

        reopened = SqliteBlockStore(db_path)
        try:
            loaded = Ledger.load_from_store(reopened)
            assert [b.to_dict() for b in loaded.blocks] == expected
            assert loaded.blocks[0].previous_hash is None
            assert reopened.get_block_count() == 3
        finally:
            reopened.close()

    def test_duplicate_index_rejected(self, db_path):
        store = SqliteBlockStore(db_path)
        try:
            genesis = mined_chain(1)[0]
            store.append(genesis)

            with pytest.raises(DuplicateBlockError):
                store.append(genesis)
            assert store.get_block_count() == 1
        finally:
            store.close()

    def test_edited_row_detected_on_load(self, db_path):
        store = SqliteBlockStore(db_path)
        for block in mined_chain(3):
            store.append(block)
        store.close()

        conn = sqlite3.connect(db_path)
        with conn:
            conn.execute("UPDATE blockchain SET data = 'rewritten' WHERE id = 1")
        conn.close()

        reopened = SqliteBlockStore(db_path)
        try:
            with pytest.raises(ChainViolationError) as exc_info:
                Ledger.load_from_store(reopened)
            assert exc_info.value.index == 1
        finally:
            reopened.close()

    def test_unopenable_path(self, tmp_path):
        with pytest.raises(BlockStoreError, match="Could not open"):
            SqliteBlockStore(tmp_path / "missing-dir" / "hashstack.db")

    def test_close_is_idempotent(self, db_path):
        store = SqliteBlockStore(db_path)
        store.close()
        store.close()

    def test_closed_store_raises_store_error(self, db_path):
        store = SqliteBlockStore(db_path)
        store.close()

        with pytest.raises(BlockStoreError, match="is closed"):
            store.append(mined_chain(1)[0])
        with pytest.raises(BlockStoreError, match="is closed"):
            store.list_all()
        with pytest.raises(BlockStoreError, match="is closed"):
            store.get_block_count()


class TestRetries:
    """Test the bounded retry of transient store failures."""

    def test_transient_failure_retried(self, no_sleep):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise sqlite3.OperationalError("database is locked")
            return "ok"

        result = with_retries(flaky, store_module._sqlite_is_transient, retries=3)

        assert result == "ok"
        assert len(calls) == 3

    def test_retries_are_bounded(self, no_sleep):
        calls = []

        def always_locked():
            calls.append(1)
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(sqlite3.OperationalError):
            with_retries(always_locked, store_module._sqlite_is_transient, retries=2)
        assert len(calls) == 3

    def test_non_transient_not_retried(self, no_sleep):
        calls = []

        def broken():
            calls.append(1)
            raise sqlite3.IntegrityError("UNIQUE constraint failed")

        with pytest.raises(sqlite3.IntegrityError):
            with_retries(broken, store_module._sqlite_is_transient, retries=5)
        assert len(calls) == 1


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((sql, params))

    def fetchall(self):
        return list(self.rows)

    def fetchone(self):
        return (len(self.rows),)

    def close(self):
        pass


class FakeConnection:
    def __init__(self, rows=(), fail_with=None):
        self.cursor_obj = FakeCursor(rows)
        self.fail_with = fail_with
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def cursor(self):
        if self.fail_with is not None:
            original_execute = self.cursor_obj.execute
            error = self.fail_with

            def execute(sql, params=None):
                original_execute(sql, params)
                if sql.startswith("INSERT"):
                    raise error

            self.cursor_obj.execute = execute
        return self.cursor_obj

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True

    def close(self):
        self.closed = True


class UniqueViolation(psycopg2.IntegrityError):
    pgcode = "23505"


class TestPostgresBlockStore:
    """Test the PostgreSQL store against a fake psycopg2 connection."""

    def test_dropped_connection_retried(self, no_sleep):
        connections = []

        def factory():
            if not connections:
                connections.append(None)
                raise psycopg2.OperationalError("server closed the connection")
            conn = FakeConnection()
            connections.append(conn)
            return conn

        store = PostgresBlockStore(factory, retries=2)
        store.append(mined_chain(1)[0])

        conn = connections[-1]
        assert len(connections) == 2
        assert conn.committed and conn.closed
        sql, params = conn.cursor_obj.statements[-1]
        assert sql.startswith("INSERT INTO blockchain")
        assert params[0] == 0 and params[2] is None

    def test_statement_timeout_set(self):
        conn = FakeConnection()
        PostgresBlockStore(lambda: conn, statement_timeout_ms=1234).get_block_count()

        assert conn.cursor_obj.statements[0][0] == "SET LOCAL statement_timeout = '1234ms'"

    def test_list_all_maps_rows(self):
        blocks = mined_chain(2)
        rows = [block_to_row(b).as_params() for b in blocks]
        store = PostgresBlockStore(lambda: FakeConnection(rows=rows))

        assert store.list_all() == blocks

    def test_unique_violation_is_duplicate(self, no_sleep):
        conn = FakeConnection(fail_with=UniqueViolation("duplicate key"))
        store = PostgresBlockStore(lambda: conn)

        with pytest.raises(DuplicateBlockError):
            store.append(mined_chain(1)[0])
        assert conn.rolled_back

    def test_unreachable_database(self, no_sleep):
        def factory():
            raise psycopg2.OperationalError("could not connect")

        store = PostgresBlockStore(factory, retries=1)

        with pytest.raises(BlockStoreError, match="Could not load blocks"):
            store.list_all()


class TestConfig:
    """Test environment-driven configuration."""

    def test_ledger_defaults(self, clean_env):
        config = LedgerConfig.from_env()

        assert config.difficulty == 1
        assert config.max_mining_iterations is None
        assert config.store_retries == 3

    def test_ledger_from_env(self, clean_env):
        clean_env.setenv("HASHSTACK_DIFFICULTY", "3")
        clean_env.setenv("HASHSTACK_MAX_MINING_ITERATIONS", "1000")
        clean_env.setenv("HASHSTACK_DB_PATH", "/tmp/chain.db")

        config = LedgerConfig.from_env()

        assert config.difficulty == 3
        assert config.max_mining_iterations == 1000
        assert config.db_path == "/tmp/chain.db"

    def test_negative_difficulty_rejected(self, clean_env):
        clean_env.setenv("HASHSTACK_DIFFICULTY", "-1")

        with pytest.raises(ValueError, match="HASHSTACK_DIFFICULTY"):
            LedgerConfig.from_env()

    def test_driver_defaults_to_memory(self, clean_env):
        assert get_blockstore_driver() == BlockStoreDriver.MEMORY

    def test_driver_from_db_path(self, clean_env):
        clean_env.setenv("HASHSTACK_DB_PATH", "chain.db")
        assert get_blockstore_driver() == BlockStoreDriver.SQLITE

    def test_driver_from_database_url(self, clean_env):
        clean_env.setenv("HASHSTACK_DB_PATH", "chain.db")
        clean_env.setenv("DATABASE_URL", "postgresql://u:p@db:5433/chain")
        assert get_blockstore_driver() == BlockStoreDriver.PSYCOPG2

    def test_explicit_driver_wins(self, clean_env):
        clean_env.setenv("DATABASE_URL", "postgresql://u:p@db:5433/chain")
        clean_env.setenv("BLOCKSTORE_DRIVER", "Memory")
        assert get_blockstore_driver() == BlockStoreDriver.MEMORY

    def test_unknown_driver(self, clean_env):
        clean_env.setenv("BLOCKSTORE_DRIVER", "mongo")

        with pytest.raises(ValueError, match="Unknown BLOCKSTORE_DRIVER"):
            get_blockstore_driver()

    def test_database_url_from_parts(self, clean_env):
        clean_env.setenv("DATABASE_HOST", "db.internal")
        clean_env.setenv("DATABASE_USER", "ledger")

        assert get_database_url() == "postgresql://ledger@db.internal:5432/hashstack?sslmode=prefer"

    def test_database_config_from_url(self):
        config = DatabaseConfig.from_url("postgresql://u:s3cret@db:5433/chain?sslmode=require")

        assert (config.host, config.port, config.database) == ("db", 5433, "chain")
        assert config.user == "u" and config.password == "s3cret"
        assert config.ssl_mode == "require"
        assert "s3cret" not in config.to_url(include_password=False)
        assert "dbname=chain" in config.to_dsn()

    def test_dsn_without_password_keeps_sslmode(self):
        from psycopg2.extensions import parse_dsn

        parsed = parse_dsn(DatabaseConfig(host="db", password="", ssl_mode="require").to_dsn())

        assert "password" not in parsed
        assert parsed["sslmode"] == "require"
        assert parsed["host"] == "db"
        assert parsed["port"] == "5432"

    def test_dsn_quotes_password(self):
        from psycopg2.extensions import parse_dsn

        password = "it's a secret"
        parsed = parse_dsn(DatabaseConfig(user="ledger", password=password).to_dsn())

        assert parsed["password"] == password
        assert parsed["user"] == "ledger"
        assert parsed["sslmode"] == "prefer"


class TestRuntime:
    """Test store selection and ledger hydration."""

    def test_memory_store_by_default(self, clean_env):
        assert isinstance(create_block_store(), InMemoryBlockStore)

    def test_sqlite_store_from_env(self, clean_env, tmp_path):
        clean_env.setenv("HASHSTACK_DB_PATH", str(tmp_path / "chain.db"))

        store = create_block_store()
        try:
            assert isinstance(store, SqliteBlockStore)
            assert store.path == str(tmp_path / "chain.db")
        finally:
            store.close()

    def test_unreachable_postgres_is_an_error(self, clean_env, monkeypatch):
        def refuse(dsn):
            raise psycopg2.OperationalError("connection refused")

        monkeypatch.setattr(psycopg2, "connect", refuse)
        clean_env.setenv("DATABASE_URL", "postgresql://u:p@127.0.0.1:1/chain")

        with pytest.raises(BlockStoreError, match="Could not connect"):
            create_block_store()

    def test_session_persists_between_runs(self, clean_env, tmp_path):
        clean_env.setenv("HASHSTACK_DB_PATH", str(tmp_path / "chain.db"))

        with ledger_session() as ledger:
            ledger.commit("a")
            ledger.commit("b")

        with ledger_session() as ledger:
            assert ledger.block_count == 2
            assert ledger.commit("c").index == 2

    def test_open_ledger_uses_config(self):
        config = LedgerConfig(difficulty=2, max_mining_iterations=None)
        ledger = open_ledger(store=InMemoryBlockStore(), config=config)

        assert ledger.difficulty == 2
        assert ledger.commit("a").hash.startswith("00")

    def test_open_ledger_rejects_tampered_store(self):
        blocks = mined_chain(3)
        blocks[2] = blocks[2].model_copy(update={"data": "rewritten"})

        with pytest.raises(ChainViolationError):
            open_ledger(store=InMemoryBlockStore(blocks), config=LedgerConfig())
