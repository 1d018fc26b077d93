"""
Persistent JSON document store for volume caches and transaction ledgers.

Two backends implement the same CacheStore contract:
  - FileCacheStore: one `<key>.json` file per document under a directory.
  - Database (inflowcli.db): one SQLite row per document.

Every document is wrapped in an envelope:
    {"data": <document>, "expires": <epoch ms>, "lastUpdated": <epoch ms>}

Writers are serialized per key. The file backend writes to a temp file in the
same directory and os.replace()s it into place, so readers never observe a
partially written document.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import tempfile
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from inflowcli.exceptions import CacheUnavailableError

if TYPE_CHECKING:
    from inflowcli.config import InflowConfig

_SAFE_KEY_RE = re.compile(r"^[A-Za-z0-9._-]+$")


@runtime_checkable
class CacheStore(Protocol):
    """Opaque get/set/exists contract used by the pipeline and the service."""

    async def get(self, key: str, ignore_expiry: bool = False) -> Any | None:
        """Return the stored document, or None if missing (or expired)."""
        ...

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Store a JSON-serialisable document for ttl_seconds."""
        ...

    async def exists(self, key: str) -> bool:
        """True if the key holds an unexpired document."""
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def prune(self) -> int:
        """Delete expired documents. Returns the number removed."""
        ...

    async def close(self) -> None:
        ...


def make_envelope(value: Any, ttl_seconds: int, now: float | None = None) -> dict[str, Any]:
    now_ms = int((now if now is not None else time.time()) * 1000)
    return {"data": value, "expires": now_ms + ttl_seconds * 1000, "lastUpdated": now_ms}


def envelope_expired(envelope: dict[str, Any], now: float | None = None) -> bool:
    now_ms = (now if now is not None else time.time()) * 1000
    return float(envelope.get("expires", 0)) < now_ms


class FileCacheStore:
    """JSON-file backend. Safe for concurrent writers within one event loop."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory).expanduser()
        self._locks: dict[str, asyncio.Lock] = {}

    async def get(self, key: str, ignore_expiry: bool = False) -> Any | None:
        path = self._path(key)
        try:
            raw = await asyncio.to_thread(self._read, path)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise CacheUnavailableError(f"Cannot read cache entry {key!r}: {e}") from e

        if not isinstance(raw, dict) or "data" not in raw:
            return raw  # bare document written by an older tool
        if not ignore_expiry and envelope_expired(raw):
            return None
        return raw["data"]

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        path = self._path(key)
        envelope = make_envelope(value, ttl_seconds)
        async with self._lock_for(key):
            try:
                await asyncio.to_thread(self._atomic_write, path, envelope)
            except (OSError, TypeError, ValueError) as e:
                raise CacheUnavailableError(f"Cannot write cache entry {key!r}: {e}") from e

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def delete(self, key: str) -> bool:
        path = self._path(key)
        async with self._lock_for(key):
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise CacheUnavailableError(f"Cannot delete cache entry {key!r}: {e}") from e
        return True

    async def prune(self) -> int:
        if not self.directory.exists():
            return 0
        removed = 0
        for path in sorted(self.directory.glob("*.json")):
            try:
                raw = self._read(path)
            except (OSError, json.JSONDecodeError):
                continue
            if isinstance(raw, dict) and "expires" in raw and envelope_expired(raw):
                if await self.delete(path.stem):
                    removed += 1
        return removed

    async def close(self) -> None:
        return None

    # ──────────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────────

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY_RE.match(key):
            raise CacheUnavailableError(f"Unsafe cache key: {key!r}")
        return self.directory / f"{key}.json"

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @staticmethod
    def _read(path: Path) -> Any:
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    @staticmethod
    def _atomic_write(path: Path, envelope: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(envelope, f, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise


def get_store(config: InflowConfig) -> CacheStore:
    """
    Factory: return the configured cache backend.

    The SQLite backend must be connected before use (`await store.connect()`
    or `async with store:`); open_store() does that for callers.
    """
    backend = config.cache.backend
    if backend == "file":
        return FileCacheStore(config.cache.dir)
    if backend == "sqlite":
        from inflowcli.db import Database

        db_path = config.cache.db_path
        if db_path != ":memory:":
            db_path = str(Path(db_path).expanduser())
        return Database(db_path)
    raise ValueError(f"Unsupported cache backend: {backend!r}")


async def open_store(config: InflowConfig) -> CacheStore:
    """Build the configured store and connect it if it needs a connection."""
    store = get_store(config)
    connect = getattr(store, "connect", None)
    if connect is not None:
        await connect()
    return store
