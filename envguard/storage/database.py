"""
Database — single-file SQLite store behind a parameterized execute/fetch API.

The core only relies on:
- ``execute(sql, *args)`` for mutations (returns affected row count)
- ``fetch(sql, *args)`` / ``fetchrow(sql, *args)`` for reads
- ``transaction()`` for atomic multi-statement writes
- uniqueness and foreign-key constraint enforcement

One process owns the file; writes are serialized through a single
transaction lock on the connection.
"""
import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Any, Optional
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import aiosqlite

from ..exceptions import UniquenessViolation, NotFoundError

logger = logging.getLogger("envguard.storage")

Row = dict[str, Any]

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS environments (
        id TEXT PRIMARY KEY,
        name TEXT UNIQUE NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS variables (
        id TEXT PRIMARY KEY,
        environment_id TEXT NOT NULL,
        key TEXT NOT NULL,
        value TEXT,
        encrypted INTEGER NOT NULL DEFAULT 0,
        is_secret INTEGER NOT NULL DEFAULT 0,
        tags TEXT NOT NULL DEFAULT '',
        description TEXT NOT NULL DEFAULT '',
        rotation_enabled INTEGER NOT NULL DEFAULT 0,
        rotation_period_days INTEGER CHECK (rotation_period_days > 0),
        last_rotated TEXT,
        next_rotation TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (environment_id) REFERENCES environments(id) ON DELETE CASCADE,
        UNIQUE (environment_id, key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT UNIQUE NOT NULL,
        timestamp TEXT NOT NULL,
        action TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT,
        old_value TEXT,
        new_value TEXT,
        user_id TEXT,
        user_name TEXT,
        ip_address TEXT,
        details TEXT,
        fingerprint TEXT NOT NULL,
        chain_fingerprint TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rotation_history (
        id TEXT PRIMARY KEY,
        variable_id TEXT NOT NULL,
        rotated_at TEXT NOT NULL,
        old_value_hash TEXT NOT NULL,
        new_value_hash TEXT NOT NULL,
        rotated_by TEXT NOT NULL,
        reason TEXT NOT NULL DEFAULT '',
        FOREIGN KEY (variable_id) REFERENCES variables(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_variables_env ON variables(environment_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_logs(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_logs(action)",
    "CREATE INDEX IF NOT EXISTS idx_rotation_variable ON rotation_history(variable_id)",
)


def _translate(err: sqlite3.IntegrityError) -> Exception | None:
    message = str(err)
    if "UNIQUE" in message:
        return UniquenessViolation(f"Duplicate record: {message}")
    if "FOREIGN KEY" in message:
        return NotFoundError(f"Referenced record does not exist: {message}")
    return None


class _Executor:
    """Parameterized statement helpers shared by the database and transactions."""

    _conn: aiosqlite.Connection

    async def execute(self, sql: str, *args: Any) -> int:
        try:
            cursor = await self._conn.execute(sql, args)
        except sqlite3.IntegrityError as err:
            translated = _translate(err)
            if translated is None:
                raise
            raise translated from err
        try:
            return cursor.rowcount
        finally:
            await cursor.close()

    async def fetch(self, sql: str, *args: Any) -> list[Row]:
        async with self._conn.execute(sql, args) as cursor:
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def fetchrow(self, sql: str, *args: Any) -> Optional[Row]:
        async with self._conn.execute(sql, args) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def fetchval(self, sql: str, *args: Any) -> Any:
        async with self._conn.execute(sql, args) as cursor:
            row = await cursor.fetchone()
        return row[0] if row is not None else None


class Transaction(_Executor):
    """A connection handle inside ``BEGIN`` … ``COMMIT``."""

    def __init__(self, conn: aiosqlite.Connection):
        self._conn = conn


class Database(_Executor):
    """Owns the aiosqlite connection to the local store."""

    def __init__(self, path: Path | str):
        self._path = str(path)
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> str:
        return self._path

    async def connect(self) -> "Database":
        if self._conn is not None:
            return self
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        # autocommit mode: transactions are opened explicitly below
        self._conn = await aiosqlite.connect(self._path, isolation_level=None)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA foreign_keys = ON")
        for statement in SCHEMA:
            await self._conn.execute(statement)
        logger.debug("Opened store at %s", self._path)
        return self

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            logger.debug("Closed store at %s", self._path)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        """Run statements atomically; rolls back on any exception."""
        if self._conn is None:
            raise RuntimeError("Database is not connected")
        async with self._write_lock:
            await self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield Transaction(self._conn)
            except BaseException:
                await self._conn.execute("ROLLBACK")
                raise
            await self._conn.execute("COMMIT")
