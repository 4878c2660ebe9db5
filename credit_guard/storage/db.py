"""
Database connection management.

Provides SQLite connections for the persistent key-value backend.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "credit_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 10.0) -> sqlite3.Connection:
    """Create and return a SQLite connection in autocommit mode.

    Transactions are opened explicitly by callers (``BEGIN IMMEDIATE``)
    so that read-modify-write sequences hold the write lock from the
    first read until commit.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a competing writer to release its lock

    Returns:
        SQLite connection with explicit transaction control
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.execute("PRAGMA busy_timeout = %d" % int(timeout * 1000))
    return conn
