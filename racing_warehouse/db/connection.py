"""
SQLite connection management.

Provides a context manager ``get_connection()`` that:
  - Enables foreign key enforcement (production child tables reference their
    parents, so this must be ON for every warehouse connection).
  - Enables WAL journal mode so the HTTP surface can read while a merge runs.
  - Sets a busy timeout to handle lock contention between concurrent triggers.
  - Uses ``sqlite3.Row`` factory so rows behave like dicts.
  - Commits on clean exit, rolls back on exception.

``isolation_level=None`` puts the connection in autocommit mode: every
multi-statement unit of work (a relation merge, a lease acquisition) opens
its own explicit ``BEGIN IMMEDIATE`` via ``SQLiteWarehouse.transaction()``.

Usage::

    from racing_warehouse.db.connection import get_connection

    with get_connection("data/db/racing_warehouse.db") as conn:
        conn.execute("SELECT * FROM ingestion_metadata")
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

logger = logging.getLogger(__name__)


def open_connection(
    db_path: str,
    wal_mode: bool = True,
    busy_timeout_ms: int = 5000,
) -> sqlite3.Connection:
    """Open and configure a SQLite connection (caller closes it).

    Args:
        db_path: Path to the SQLite database file, or ``":memory:"``.
        wal_mode: If ``True``, enable WAL journal mode.
        busy_timeout_ms: Milliseconds to wait on a locked database.

    Returns:
        An open, configured ``sqlite3.Connection`` in autocommit mode.
    """
    if db_path != ":memory:":
        db_file = Path(db_path)
        db_file.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(
        db_path,
        timeout=busy_timeout_ms / 1000,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row

    # These pragmas must be set before any DML/DDL
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms};")

    if wal_mode and db_path != ":memory:":
        conn.execute("PRAGMA journal_mode = WAL;")

    return conn


@contextmanager
def get_connection(
    db_path: str,
    wal_mode: bool = True,
    busy_timeout_ms: int = 5000,
) -> Generator[sqlite3.Connection, None, None]:
    """Context manager yielding a configured SQLite connection.

    The database file (and any parent directories) are created if they do
    not already exist. Any transaction still open on exit is committed on a
    clean exit and rolled back on exception.

    Args:
        db_path: Path to the SQLite database file. Use ``":memory:"`` for
            in-memory databases (useful in tests).
        wal_mode: If ``True``, enable WAL journal mode for better concurrency.
        busy_timeout_ms: Milliseconds to wait when the database is locked
            before raising ``OperationalError``.

    Yields:
        An open, configured ``sqlite3.Connection``.

    Raises:
        sqlite3.OperationalError: If the database cannot be opened or is locked.
    """
    conn = open_connection(db_path, wal_mode=wal_mode, busy_timeout_ms=busy_timeout_ms)

    try:
        yield conn
        if conn.in_transaction:
            conn.commit()

    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise

    finally:
        conn.close()
