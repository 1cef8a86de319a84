"""Shared SQLite helpers: WAL connections and immediate-mode transactions."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


def wal_connect(db_path: str | Path, row_factory: bool = False) -> sqlite3.Connection:
    """Open SQLite connection with WAL journal mode.

    Args:
        db_path: Path to database file.
        row_factory: If True, set conn.row_factory = sqlite3.Row.
    """
    conn = sqlite3.connect(str(db_path), timeout=30.0)
    conn.execute("PRAGMA journal_mode=WAL")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def immediate_transaction(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """Open a connection and hold a RESERVED lock for a read-modify-write.

    BEGIN IMMEDIATE blocks other writers until commit, so a read inside the
    block sees the state the write will be applied to.
    """
    conn = sqlite3.connect(str(db_path), timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()
