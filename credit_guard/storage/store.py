"""
Key-value store backends.

Every ledger, abuse-guard and rate-limit counter lives behind the
``Store`` interface. Mutations that check and change a counter go
through ``Store.update`` so the check and the write happen in one
atomic step, never as a separate read followed by a write.
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection

logger = logging.getLogger(__name__)

Value = Dict[str, Any]
Mutator = Callable[[Optional[Value]], Optional[Value]]


class Store(ABC):
    """Abstract key-value store with TTL and atomic update."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock

    @abstractmethod
    def get(self, key: str) -> Optional[Value]:
        """Return the live value for ``key`` or None if absent or expired."""

    @abstractmethod
    def set(self, key: str, value: Value, ttl_seconds: int) -> None:
        """Write ``value`` under ``key`` expiring ``ttl_seconds`` from now."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key`` if present."""

    @abstractmethod
    def update(self, key: str, mutate: Mutator, ttl_seconds: int) -> Optional[Value]:
        """Atomically apply ``mutate`` to the current value of ``key``.

        ``mutate`` receives the live value (or None) and returns the new
        value, or None to delete the key. The result is written with a
        refreshed TTL and returned. Updates are serialised across all
        keys: no other update can interleave between the read and the
        write, and ``mutate`` may ``get`` other keys to decide.

        ``mutate`` may raise to abort; the stored value is then left
        untouched and the exception propagates.
        """

    @abstractmethod
    def purge_expired(self) -> int:
        """Drop expired entries and return how many were removed."""

    def add_to_set(self, key: str, member: str, ttl_seconds: int) -> int:
        """Atomically add ``member`` to the set at ``key`` and return its size."""
        def _add(current: Optional[Value]) -> Value:
            members = list(current["members"]) if current else []
            if member not in members:
                members.append(member)
            return {"members": members}

        result = self.update(key, _add, ttl_seconds)
        return len(result["members"])

    def _expiry(self, ttl_seconds: int) -> float:
        return self._clock() + ttl_seconds


class MemoryStore(Store):
    """In-process store guarded by a re-entrant lock.

    Data is lost on restart; suitable for development and single-process
    deployments.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self._entries: Dict[str, Tuple[Value, float]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> Optional[Value]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def get(self, key: str) -> Optional[Value]:
        with self._lock:
            value = self._live(key)
            return json.loads(json.dumps(value)) if value is not None else None

    def set(self, key: str, value: Value, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (json.loads(json.dumps(value)), self._expiry(ttl_seconds))

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def update(self, key: str, mutate: Mutator, ttl_seconds: int) -> Optional[Value]:
        with self._lock:
            current = self._live(key)
            snapshot = json.loads(json.dumps(current)) if current is not None else None
            new_value = mutate(snapshot)
            if new_value is None:
                self._entries.pop(key, None)
                return None
            self._entries[key] = (json.loads(json.dumps(new_value)), self._expiry(ttl_seconds))
            return json.loads(json.dumps(new_value))

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, exp) in self._entries.items() if now >= exp]
            for key in expired:
                del self._entries[key]
            return len(expired)


class SQLiteStore(Store):
    """Persistent store backed by a single SQLite table.

    ``update`` runs inside ``BEGIN IMMEDIATE``: the reserved lock is taken
    before the read, so concurrent updates on any key are serialised by
    SQLite itself, across threads and processes.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.db_path = db_path
        initialize_schema(db_path)

    def _read(self, conn, key: str) -> Optional[Value]:
        row = conn.execute(
            "SELECT value, expires_at FROM kv_entry WHERE key = ?", (key,)
        ).fetchone()
        if row is None or self._clock() >= row[1]:
            return None
        return json.loads(row[0])

    def _write(self, conn, key: str, value: Value, ttl_seconds: int) -> None:
        conn.execute(
            """
            INSERT INTO kv_entry (key, value, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                           expires_at = excluded.expires_at
            """,
            (key, json.dumps(value), self._expiry(ttl_seconds)),
        )

    def get(self, key: str) -> Optional[Value]:
        conn = get_connection(self.db_path)
        try:
            return self._read(conn, key)
        finally:
            conn.close()

    def set(self, key: str, value: Value, ttl_seconds: int) -> None:
        conn = get_connection(self.db_path)
        try:
            self._write(conn, key, value, ttl_seconds)
        finally:
            conn.close()

    def delete(self, key: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM kv_entry WHERE key = ?", (key,))
        finally:
            conn.close()

    def update(self, key: str, mutate: Mutator, ttl_seconds: int) -> Optional[Value]:
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                new_value = mutate(self._read(conn, key))
                if new_value is None:
                    conn.execute("DELETE FROM kv_entry WHERE key = ?", (key,))
                else:
                    self._write(conn, key, new_value, ttl_seconds)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
            return new_value
        finally:
            conn.close()

    def purge_expired(self) -> int:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM kv_entry WHERE expires_at <= ?", (self._clock(),)
            )
            return cursor.rowcount
        finally:
            conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the kv_entry table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_entry (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL NOT NULL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_kv_entry_expires ON kv_entry (expires_at)"
        )
    finally:
        conn.close()


def create_store(backend: str, path: str = DEFAULT_DB_PATH) -> Store:
    """Build the configured store backend.

    Called once at startup; the returned store is passed to every
    component that needs one.

    Raises:
        ValueError: If backend is unknown
    """
    if backend == "memory":
        logger.warning("Using in-memory store; ledger data is lost on restart")
        return MemoryStore()
    if backend == "sqlite":
        logger.info("Using SQLite store at %s", path)
        return SQLiteStore(path)
    raise ValueError(f"Unknown store backend: {backend}")
