"""SQLite database management with WAL mode and migrations."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

# Database schema
SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

-- Local identities (authenticated and guest)
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    auth_provider TEXT NOT NULL,
    email TEXT,
    display_name TEXT,
    preferences JSON,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_users_email ON users(email);
CREATE INDEX IF NOT EXISTS idx_users_updated ON users(updated_at);

-- Logged events
CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    timestamp DATETIME NOT NULL,
    quality TEXT NOT NULL,
    notes TEXT,
    latitude REAL,
    longitude REAL,
    location_name TEXT,
    owner_id TEXT,
    sync_state TEXT NOT NULL DEFAULT 'pending_upload',
    migration_state TEXT NOT NULL DEFAULT 'none',
    updated_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_owner_ts ON events(owner_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_events_sync ON events(owner_id, sync_state);

-- Per-user sync progress
CREATE TABLE IF NOT EXISTS sync_cursors (
    user_id TEXT PRIMARY KEY,
    last_full_sync_at DATETIME,
    last_incremental_sync_at DATETIME
);

-- Last remote analytics result per user, metric and range
CREATE TABLE IF NOT EXISTS analytics_cache (
    user_id TEXT NOT NULL,
    metric TEXT NOT NULL,
    range_key TEXT NOT NULL,
    payload JSON NOT NULL,
    fetched_at DATETIME NOT NULL,
    PRIMARY KEY (user_id, metric, range_key)
);

-- Cached AI insights
CREATE TABLE IF NOT EXISTS ai_insights (
    user_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    period_key TEXT NOT NULL,
    content TEXT NOT NULL,
    fetched_at DATETIME NOT NULL,
    PRIMARY KEY (user_id, kind, period_key)
);

-- Custom AI questions asked, for the daily limit
CREATE TABLE IF NOT EXISTS ai_question_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    day DATE NOT NULL,
    question TEXT,
    asked_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_question_user_day ON ai_question_log(user_id, day);

-- Configuration store
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
"""


class Transaction:
    """Statement executor bound to an open transaction (lock already held)."""

    def __init__(self, connection: aiosqlite.Connection):
        self._connection = connection

    async def execute(self, query: str, params: tuple[Any, ...] = ()) -> int:
        cursor = await self._connection.execute(query, params)
        return cursor.rowcount

    async def fetch_one(self, query: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        async with self._connection.execute(query, params) as cursor:
            row = await cursor.fetchone()
            return dict(row) if row else None

    async def fetch_all(self, query: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        async with self._connection.execute(query, params) as cursor:
            return [dict(row) for row in await cursor.fetchall()]


class Database:
    """SQLite database manager with WAL mode.

    A single connection is shared; every statement runs under one
    ``asyncio.Lock`` so writes are serialized and readers never see a
    transaction half applied.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Initialize database connection with WAL mode."""
        if self._connection is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            isolation_level=None,  # Autocommit mode, we handle transactions manually
        )

        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA foreign_keys=ON")
        await self._connection.execute("PRAGMA busy_timeout=5000")

        self._connection.row_factory = aiosqlite.Row

        await self._init_schema()

        logger.info(f"Database connected: {self.db_path}")

    async def _init_schema(self) -> None:
        """Initialize database schema."""
        conn = self._require_connection()

        await conn.executescript(SCHEMA)

        async with conn.execute("SELECT MAX(version) FROM schema_version") as cursor:
            row = await cursor.fetchone()
            current_version = row[0] if row and row[0] else 0

        if current_version < SCHEMA_VERSION:
            await conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            logger.info(f"Schema updated to version {SCHEMA_VERSION}")

    def _require_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("Database not connected")
        return self._connection

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """Run several statements atomically.

        Statements must go through the yielded ``Transaction``; calling the
        locking helpers on ``Database`` inside the block would deadlock.
        """
        conn = self._require_connection()

        async with self._lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield Transaction(conn)
                await conn.execute("COMMIT")
            except BaseException:
                await conn.execute("ROLLBACK")
                raise

    async def execute(self, query: str, params: tuple[Any, ...] = ()) -> int:
        """Execute a query and return last row ID."""
        conn = self._require_connection()

        async with self._lock:
            cursor = await conn.execute(query, params)
            return cursor.lastrowid or 0

    async def execute_rowcount(self, query: str, params: tuple[Any, ...] = ()) -> int:
        """Execute a query and return the number of affected rows."""
        conn = self._require_connection()

        async with self._lock:
            cursor = await conn.execute(query, params)
            return cursor.rowcount

    async def fetch_one(self, query: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        """Fetch a single row."""
        conn = self._require_connection()

        async with self._lock:
            async with conn.execute(query, params) as cursor:
                row = await cursor.fetchone()
                if row:
                    return dict(row)
                return None

    async def fetch_all(self, query: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        """Fetch all rows."""
        conn = self._require_connection()

        async with self._lock:
            async with conn.execute(query, params) as cursor:
                rows = await cursor.fetchall()
                return [dict(row) for row in rows]

    async def insert(self, table: str, data: dict[str, Any]) -> int:
        """Insert a row into a table."""
        columns = ", ".join(data.keys())
        placeholders = ", ".join("?" * len(data))
        query = f"INSERT INTO {table} ({columns}) VALUES ({placeholders})"
        return await self.execute(query, tuple(data.values()))

    async def upsert(self, table: str, data: dict[str, Any]) -> int:
        """Insert a row, replacing any row with the same primary key."""
        columns = ", ".join(data.keys())
        placeholders = ", ".join("?" * len(data))
        query = f"INSERT OR REPLACE INTO {table} ({columns}) VALUES ({placeholders})"
        return await self.execute(query, tuple(data.values()))

    async def check_integrity(self) -> bool:
        """Check database integrity."""
        conn = self._require_connection()

        async with self._lock:
            async with conn.execute("PRAGMA integrity_check") as cursor:
                row = await cursor.fetchone()
                is_ok = row is not None and row[0] == "ok"

        if not is_ok:
            logger.error("Database integrity check failed!")
        return is_ok

    async def get_size_mb(self) -> float:
        """Get database file size in MB."""
        if self.db_path.exists():
            return self.db_path.stat().st_size / (1024 * 1024)
        return 0.0

    # Config helpers
    async def get_config(self, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        row = await self.fetch_one("SELECT value FROM config WHERE key = ?", (key,))
        if row:
            return row["value"]
        return default

    async def set_config(self, key: str, value: Any) -> None:
        """Set a configuration value."""
        await self.execute(
            """INSERT INTO config (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
               ON CONFLICT(key) DO UPDATE SET value = ?, updated_at = CURRENT_TIMESTAMP""",
            (key, str(value), str(value)),
        )

    async def delete_config(self, key: str) -> None:
        await self.execute("DELETE FROM config WHERE key = ?", (key,))
