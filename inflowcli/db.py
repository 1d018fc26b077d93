"""SQLite cache backend for inflowcli.

Stores volume caches and transaction ledgers as JSON documents, one row per
cache key, with the same envelope/TTL semantics as the file backend.
All database operations are async (aiosqlite).

Schema:
  - schema_version: applied migration level
  - documents: cache_key → JSON document + fetch time + TTL
"""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

import aiosqlite

from inflowcli.exceptions import CacheUnavailableError

DEFAULT_DB_PATH = Path.home() / ".inflowcli" / "inflow.db"

# SQL schema, applied on connect if tables do not exist
_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS documents (
    cache_key    TEXT PRIMARY KEY,
    document     TEXT NOT NULL,
    fetched_at   REAL NOT NULL,
    ttl_seconds  INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_documents_expiry ON documents(fetched_at, ttl_seconds);
"""

SCHEMA_VERSION = 1


class Database:
    """
    Async SQLite document store.

    Usage:
        db = Database(":memory:")
        await db.connect()
        await db.set("volume-0xabc-2025", {...}, ttl_seconds=86400)
        await db.close()

    Or as async context manager:
        async with Database(path) as db:
            ...
    """

    def __init__(self, db_path: str = str(DEFAULT_DB_PATH)) -> None:
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Open DB connection and run schema migrations."""
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._apply_schema()
        except (aiosqlite.Error, OSError) as e:
            raise CacheUnavailableError(f"Failed to connect to database: {e}") from e

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # ──────────────────────────────────────────────────────────
    # Document store
    # ──────────────────────────────────────────────────────────

    async def get(self, key: str, ignore_expiry: bool = False) -> Any | None:
        """Return the stored document if fresh (or if ignore_expiry), else None."""
        conn = self._require_conn()
        try:
            async with conn.execute(
                "SELECT document, fetched_at, ttl_seconds FROM documents WHERE cache_key = ?",
                (key,),
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise CacheUnavailableError(f"Cannot read cache entry {key!r}: {e}") from e

        if not row:
            return None

        expires_at = row["fetched_at"] + row["ttl_seconds"]
        if not ignore_expiry and time.time() > expires_at:
            return None  # Expired

        return json.loads(row["document"])

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Store a document, replacing any previous version."""
        conn = self._require_conn()
        try:
            document = json.dumps(value)
            await conn.execute(
                """
                INSERT OR REPLACE INTO documents (cache_key, document, fetched_at, ttl_seconds)
                VALUES (?, ?, ?, ?)
                """,
                (key, document, time.time(), ttl_seconds),
            )
            await conn.commit()
        except (aiosqlite.Error, TypeError, ValueError) as e:
            raise CacheUnavailableError(f"Cannot write cache entry {key!r}: {e}") from e

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def delete(self, key: str) -> bool:
        conn = self._require_conn()
        try:
            async with conn.execute(
                "DELETE FROM documents WHERE cache_key = ?", (key,)
            ) as cursor:
                deleted = cursor.rowcount
            await conn.commit()
        except aiosqlite.Error as e:
            raise CacheUnavailableError(f"Cannot delete cache entry {key!r}: {e}") from e
        return deleted > 0

    async def prune(self) -> int:
        """Delete expired documents. Returns number deleted."""
        conn = self._require_conn()
        try:
            async with conn.execute(
                "DELETE FROM documents WHERE fetched_at + ttl_seconds < ?",
                (time.time(),),
            ) as cursor:
                deleted = cursor.rowcount
            await conn.commit()
        except aiosqlite.Error as e:
            raise CacheUnavailableError(f"Cannot prune cache: {e}") from e
        return deleted

    async def list_keys(self, prefix: str = "") -> list[str]:
        """List stored keys (expired ones included), optionally by prefix."""
        conn = self._require_conn()
        keys = []
        async with conn.execute(
            "SELECT cache_key FROM documents WHERE cache_key LIKE ? ORDER BY cache_key",
            (prefix + "%",),
        ) as cursor:
            async for row in cursor:
                keys.append(row["cache_key"])
        return keys

    # ──────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────

    def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise CacheUnavailableError("Database is not connected")
        return self._conn

    async def _apply_schema(self) -> None:
        """Apply schema migrations idempotently."""
        assert self._conn is not None
        await self._conn.executescript(_SCHEMA)
        await self._conn.execute(
            "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        await self._conn.commit()
