"""
Database connection management.

Provides SQLite connections and write transactions for the ledger.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "jump_guard.db"
DEFAULT_BUSY_TIMEOUT = 5.0


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_BUSY_TIMEOUT) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection is in autocommit mode; writes that must be atomic go
    through ``write_transaction``.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before failing

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def write_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block under ``BEGIN IMMEDIATE``.

    The write lock is taken up front, so every read inside the block sees
    the state that the block's writes are applied to.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def is_conflict(error: sqlite3.OperationalError) -> bool:
    """Whether an operational error is a lock conflict rather than a defect."""
    message = str(error).lower()
    return "locked" in message or "busy" in message
