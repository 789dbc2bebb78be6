"""
Database Connection Layer

Supports SQLite (dev, tests) and PostgreSQL (production). Every ledger
operation runs inside one short transaction opened with
``Database.transaction()``; on SQLite that transaction takes the write lock
up front (``BEGIN IMMEDIATE``) so concurrent writers serialize.
"""

import os
import sqlite3
from contextlib import contextmanager, nullcontext
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Balance snapshots, one row per user
CREATE TABLE IF NOT EXISTS balances (
    user_id TEXT PRIMARY KEY,
    amount INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

-- Append-only credit ledger
CREATE TABLE IF NOT EXISTS credit_transactions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    transaction_id TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL,
    amount INTEGER NOT NULL,
    description TEXT,
    related_id TEXT,
    related_type TEXT,
    created_at TEXT NOT NULL
);

-- Plan usage counters, one row per user per billing period
CREATE TABLE IF NOT EXISTS usage_counters (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    courses_created INTEGER NOT NULL DEFAULT 0,
    videos_uploaded INTEGER NOT NULL DEFAULT 0,
    quizzes_generated INTEGER NOT NULL DEFAULT 0,
    ai_questions_asked INTEGER NOT NULL DEFAULT 0,
    ai_questions_today INTEGER NOT NULL DEFAULT 0,
    ai_questions_day TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, period_start)
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_transactions_user_created ON credit_transactions(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_transactions_user_type ON credit_transactions(user_id, type, created_at);
CREATE INDEX IF NOT EXISTS idx_usage_user_period ON usage_counters(user_id, period_start, period_end);
"""

POSTGRES_SCHEMA_SQL = """
-- Balance snapshots
CREATE TABLE IF NOT EXISTS balances (
    user_id TEXT PRIMARY KEY,
    amount INTEGER NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ NOT NULL
);

-- Append-only credit ledger
CREATE TABLE IF NOT EXISTS credit_transactions (
    seq BIGSERIAL PRIMARY KEY,
    transaction_id TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL,
    amount INTEGER NOT NULL,
    description TEXT,
    related_id TEXT,
    related_type TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

-- Usage counters
CREATE TABLE IF NOT EXISTS usage_counters (
    id SERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    period_start TIMESTAMPTZ NOT NULL,
    period_end TIMESTAMPTZ NOT NULL,
    courses_created INTEGER NOT NULL DEFAULT 0,
    videos_uploaded INTEGER NOT NULL DEFAULT 0,
    quizzes_generated INTEGER NOT NULL DEFAULT 0,
    ai_questions_asked INTEGER NOT NULL DEFAULT 0,
    ai_questions_today INTEGER NOT NULL DEFAULT 0,
    ai_questions_day TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    UNIQUE (user_id, period_start)
);

-- Schema version
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_transactions_user_created ON credit_transactions(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_transactions_user_type ON credit_transactions(user_id, type, created_at);
CREATE INDEX IF NOT EXISTS idx_usage_user_period ON usage_counters(user_id, period_start, period_end);
"""


class DatabaseBusy(Exception):
    """Raised when the write lock could not be taken within the allowed wait."""
    pass


class Transaction:
    """
    Handle on an open database transaction.

    Queries are written with ``?`` placeholders; they are rewritten to
    ``%s`` for PostgreSQL.
    """

    def __init__(self, conn: Any, is_postgres: bool):
        self.conn = conn
        self.is_postgres = is_postgres
        self.rowcount = 0

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        if self.is_postgres:
            cursor = self.conn.cursor()
            cursor.execute(query.replace("?", "%s"), params or None)
        else:
            cursor = self.conn.execute(query, params)

        self.rowcount = cursor.rowcount
        if cursor.description:
            return [dict(row) for row in cursor.fetchall()]
        return []


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.transaction() as tx:
            tx.execute("SELECT * FROM balances WHERE user_id = ?", ("u1",))
    """

    BUSY_TIMEOUT_SECONDS = 30.0

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///credit_ledger.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._initialized = False
        self._init_lock = threading.Lock()

        # In-memory SQLite only exists per connection, so all threads share one
        self._memory_conn: Optional[sqlite3.Connection] = None
        self._memory_lock = threading.RLock()

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests switch DATABASE_URL between runs)."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    @property
    def is_memory(self) -> bool:
        return not self.is_postgres and self._get_sqlite_path() == ":memory:"

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "credit_ledger.db"

    def _open_sqlite(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._get_sqlite_path(),
            check_same_thread=False,
            timeout=self.BUSY_TIMEOUT_SECONDS,
            isolation_level=None,  # explicit BEGIN/COMMIT below
        )
        conn.row_factory = sqlite3.Row
        if not self.is_memory:
            # Enable WAL mode for better concurrency
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _sqlite_conn(self) -> sqlite3.Connection:
        if self.is_memory:
            if self._memory_conn is None:
                self._memory_conn = self._open_sqlite()
            return self._memory_conn

        if not hasattr(self._local, 'conn') or self._local.conn is None:
            self._local.conn = self._open_sqlite()
        return self._local.conn

    @contextmanager
    def transaction(self, wait_seconds: Optional[float] = None) -> Generator[Transaction, None, None]:
        """
        Run a block inside one database transaction (thread-safe).

        ``wait_seconds`` bounds how long a SQLite caller waits for the write
        lock; ``DatabaseBusy`` is raised when it runs out. Without it the
        connection's busy timeout applies.
        """
        if self.is_postgres:
            with self._postgres_transaction() as tx:
                yield tx
        else:
            with self._sqlite_transaction(wait_seconds) as tx:
                yield tx

    @contextmanager
    def _sqlite_transaction(self, wait_seconds: Optional[float] = None) -> Generator[Transaction, None, None]:
        """SQLite transaction holding the write lock from the start."""
        guard = self._memory_lock if self.is_memory else None
        if guard is not None and not guard.acquire(timeout=-1 if wait_seconds is None else wait_seconds):
            raise DatabaseBusy(f"In-memory database busy for {wait_seconds:.2f}s")

        try:
            conn = self._sqlite_conn()
            self._begin_immediate(conn, wait_seconds)
            try:
                yield Transaction(conn, is_postgres=False)
                conn.execute("COMMIT")
            except Exception as e:
                conn.execute("ROLLBACK")
                logger.error("transaction_rolled_back", backend="sqlite", error=str(e))
                raise
        finally:
            if guard is not None:
                guard.release()

    def _begin_immediate(self, conn: sqlite3.Connection, wait_seconds: Optional[float]) -> None:
        if wait_seconds is None:
            conn.execute("BEGIN IMMEDIATE")
            return

        conn.execute(f"PRAGMA busy_timeout = {int(max(wait_seconds, 0) * 1000)}")
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                raise DatabaseBusy(f"Database write lock not acquired within {wait_seconds:.2f}s") from e
            raise
        finally:
            conn.execute(f"PRAGMA busy_timeout = {int(self.BUSY_TIMEOUT_SECONDS * 1000)}")

    @contextmanager
    def _postgres_transaction(self) -> Generator[Transaction, None, None]:
        """PostgreSQL transaction on a dedicated connection."""
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")

        conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        try:
            yield Transaction(conn, is_postgres=True)
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error("transaction_rolled_back", backend="postgres", error=str(e))
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._init_lock:
            if self._initialized:
                return

            now = datetime.now(timezone.utc).isoformat(timespec="microseconds")
            if self.is_postgres:
                with self.transaction() as tx:
                    tx.execute(POSTGRES_SCHEMA_SQL)
                    tx.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (?, ?) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
            else:
                with self._memory_lock if self.is_memory else nullcontext():
                    conn = self._sqlite_conn()
                    # executescript manages its own transaction
                    conn.executescript(SCHEMA_SQL)
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a single statement in its own transaction."""
        with self.transaction() as tx:
            return tx.execute(query, params)

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self._local, 'conn') and self._local.conn:
            self._local.conn.close()
            self._local.conn = None
        if self._memory_conn is not None:
            self._memory_conn.close()
            self._memory_conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
