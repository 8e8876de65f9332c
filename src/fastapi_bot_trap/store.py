"""Key-value state store backends for FastAPI Bot Trap.

Every piece of bot trap state (bans, rate counters, maze hits, metric
counters, the event log and per-site config) lives in a flat string-keyed
byte store. The store offers no transactions; higher layers do plain
read-then-write and tolerate lost updates.
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional, Union

from fastapi_bot_trap.exceptions import StoreError

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Abstract base class for bot trap state storage backends."""

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Return the value stored at ``key`` or None if absent."""
        pass

    @abstractmethod
    async def set(self, key: str, value: bytes) -> None:
        """Store ``value`` at ``key``, replacing any previous value."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``. Deleting a missing key is not an error."""
        pass

    @abstractmethod
    async def list_keys(self, prefix: str = "") -> List[str]:
        """Return all keys starting with ``prefix``."""
        pass


class MemoryKeyValueStore(KeyValueStore):
    """In-memory store for tests and single-process deployments."""

    def __init__(self):
        self._data: Dict[str, bytes] = {}
        self._lock = Lock()

    async def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def list_keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [key for key in self._data if key.startswith(prefix)]


class SQLiteKeyValueStore(KeyValueStore):
    """SQLite-backed store that keeps state across restarts.

    Each operation opens its own connection, so one instance can be shared
    between worker threads.
    """

    def __init__(self, db_path: Union[str, Path] = "bot_trap.db"):
        self.db_path = str(db_path)
        self._lock = Lock()
        self._init_database()

    def _init_database(self) -> None:
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS kv (
                        key TEXT PRIMARY KEY,
                        value BLOB NOT NULL
                    )
                """)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot initialise store at {self.db_path}: {e}") from e

    async def get(self, key: str) -> Optional[bytes]:
        try:
            with self._lock, sqlite3.connect(self.db_path) as conn:
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Read of {key!r} failed: {e}") from e
        return bytes(row[0]) if row else None

    async def set(self, key: str, value: bytes) -> None:
        try:
            with self._lock, sqlite3.connect(self.db_path) as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
                    (key, sqlite3.Binary(value)),
                )
        except sqlite3.Error as e:
            raise StoreError(f"Write of {key!r} failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            with self._lock, sqlite3.connect(self.db_path) as conn:
                conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        except sqlite3.Error as e:
            raise StoreError(f"Delete of {key!r} failed: {e}") from e

    async def list_keys(self, prefix: str = "") -> List[str]:
        # LIKE treats _ and % as wildcards, so filter the prefix in Python
        try:
            with self._lock, sqlite3.connect(self.db_path) as conn:
                rows = conn.execute("SELECT key FROM kv ORDER BY key").fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Key listing failed: {e}") from e
        return [row[0] for row in rows if row[0].startswith(prefix)]


async def read_int(store: KeyValueStore, key: str) -> int:
    """Read a decimal counter, collapsing missing or corrupt values to 0.

    Store errors propagate; corrupt values are deleted.
    """
    raw = await store.get(key)
    if raw is None:
        return 0
    try:
        return int(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        logger.warning(f"Discarding corrupt counter at {key!r}")
        await store.delete(key)
        return 0


async def increment_int(store: KeyValueStore, key: str) -> int:
    """Read-modify-write a decimal counter and return the new value."""
    value = await read_int(store, key) + 1
    await store.set(key, str(value).encode("utf-8"))
    return value
