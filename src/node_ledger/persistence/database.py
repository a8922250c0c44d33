"""
Database Connection Layer

Supports SQLite (dev, single node) and PostgreSQL (production) with
automatic schema creation. One backend is chosen per deployment by
DATABASE_URL; the ledgers only see the repository contract.
"""

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional
import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Known devices (earnings must reference one)
CREATE TABLE IF NOT EXISTS devices (
    device_id TEXT PRIMARY KEY,
    registered_at TEXT NOT NULL
);

-- Units of work
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    model TEXT NOT NULL,
    device_id TEXT NOT NULL,
    status TEXT NOT NULL,
    source TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT,
    error_message TEXT,
    total_duration INTEGER NOT NULL DEFAULT 0,
    load_duration INTEGER NOT NULL DEFAULT 0,
    prompt_eval_count INTEGER NOT NULL DEFAULT 0,
    prompt_eval_duration INTEGER NOT NULL DEFAULT 0,
    eval_count INTEGER NOT NULL DEFAULT 0,
    eval_duration INTEGER NOT NULL DEFAULT 0
);

-- Payouts
CREATE TABLE IF NOT EXISTS earnings (
    id TEXT PRIMARY KEY,
    task_id TEXT,
    device_id TEXT NOT NULL,
    block_rewards REAL NOT NULL DEFAULT 0.0,
    job_rewards REAL NOT NULL DEFAULT 0.0,
    source TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (task_id) REFERENCES tasks(id),
    FOREIGN KEY (device_id) REFERENCES devices(device_id)
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_device ON tasks(device_id);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status, source);
CREATE INDEX IF NOT EXISTS idx_tasks_created ON tasks(created_at);
CREATE INDEX IF NOT EXISTS idx_earnings_device ON earnings(device_id);
CREATE INDEX IF NOT EXISTS idx_earnings_task ON earnings(task_id);
CREATE INDEX IF NOT EXISTS idx_earnings_created ON earnings(created_at);
"""

POSTGRES_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS devices (
    device_id TEXT PRIMARY KEY,
    registered_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    model TEXT NOT NULL,
    device_id TEXT NOT NULL,
    status TEXT NOT NULL,
    source TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT,
    error_message TEXT,
    total_duration BIGINT NOT NULL DEFAULT 0,
    load_duration BIGINT NOT NULL DEFAULT 0,
    prompt_eval_count BIGINT NOT NULL DEFAULT 0,
    prompt_eval_duration BIGINT NOT NULL DEFAULT 0,
    eval_count BIGINT NOT NULL DEFAULT 0,
    eval_duration BIGINT NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS earnings (
    id TEXT PRIMARY KEY,
    task_id TEXT REFERENCES tasks(id),
    device_id TEXT NOT NULL REFERENCES devices(device_id),
    block_rewards DOUBLE PRECISION NOT NULL DEFAULT 0.0,
    job_rewards DOUBLE PRECISION NOT NULL DEFAULT 0.0,
    source TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_device ON tasks(device_id);
CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status, source);
CREATE INDEX IF NOT EXISTS idx_tasks_created ON tasks(created_at);
CREATE INDEX IF NOT EXISTS idx_earnings_device ON earnings(device_id);
CREATE INDEX IF NOT EXISTS idx_earnings_task ON earnings(task_id);
CREATE INDEX IF NOT EXISTS idx_earnings_created ON earnings(created_at);
"""


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database("sqlite:///node_ledger.db")
        db.initialize()
        with db.transaction() as conn:
            ...

    transaction() is the per-record atomicity primitive: reads and writes
    issued inside one block commit together. Nested blocks join the
    outermost one.
    """

    def __init__(self, database_url: str = "sqlite:///node_ledger.db"):
        self.database_url = database_url
        self.is_postgres = self.database_url.startswith("postgres")
        self._lock = threading.RLock()
        self._local = threading.local()
        self._sqlite_conn: Optional[sqlite3.Connection] = None
        self._depth = 0
        self._initialized = False

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:] or ":memory:"
        return "node_ledger.db"

    def _open_sqlite(self) -> sqlite3.Connection:
        if self._sqlite_conn is None:
            path = self._get_sqlite_path()
            conn = sqlite3.connect(path, check_same_thread=False, timeout=30.0)
            conn.row_factory = sqlite3.Row
            if path != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._sqlite_conn = conn
        return self._sqlite_conn

    @contextmanager
    def _postgres_connection(self) -> Generator[Any, None, None]:
        """PostgreSQL connection, committed on clean exit."""
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install node-ledger[postgres]")

        conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[Any, None, None]:
        """Run a block of statements atomically."""
        if self.is_postgres:
            current = getattr(self._local, "conn", None)
            if current is not None:
                yield current
                return
            with self._postgres_connection() as conn:
                self._local.conn = conn
                try:
                    yield conn
                finally:
                    self._local.conn = None
            return

        with self._lock:
            conn = self._open_sqlite()
            if self._depth > 0:
                self._depth += 1
                try:
                    yield conn
                finally:
                    self._depth -= 1
                return

            self._depth = 1
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                self._depth = 0

    def _adapt(self, query: str) -> str:
        return query.replace("?", "%s") if self.is_postgres else query

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            now = datetime.now(timezone.utc).isoformat()
            with self.transaction() as conn:
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(POSTGRES_SCHEMA_SQL)
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
                else:
                    conn.executescript(SCHEMA_SQL)
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        with self.transaction() as conn:
            cursor = conn.cursor()
            cursor.execute(self._adapt(query), params)
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []

    def execute_many(self, query: str, params_list: List[tuple]) -> int:
        """Execute a query with multiple parameter sets."""
        if not params_list:
            return 0
        with self.transaction() as conn:
            cursor = conn.cursor()
            cursor.executemany(self._adapt(query), params_list)
            return cursor.rowcount

    def close(self) -> None:
        """Close database connections."""
        with self._lock:
            if self._sqlite_conn is not None:
                self._sqlite_conn.close()
                self._sqlite_conn = None
                self._initialized = False


def get_database(database_url: str) -> Database:
    """Create and initialize a database for the given URL."""
    db = Database(database_url)
    db.initialize()
    return db
