"""
Shared pytest fixtures for the Racing Warehouse test suite.

Provides:
  - ``in_memory_db``: A fresh in-memory SQLite connection with the full
    schema applied. Created anew for each test that requests it.
  - ``blob_store``: A ``LocalBlobStore`` rooted in the test's tmp dir.
  - ``warehouse``: ``SQLiteWarehouse`` over ``in_memory_db`` + ``blob_store``.
  - ``app_config``: An ``AppConfig`` pointing every path into tmp.
  - ``put_blob``: writes a blob with an optional pinned creation time.
"""

from __future__ import annotations

import os
import sqlite3
from datetime import datetime
from typing import Callable, Generator, Optional

import pytest

from racing_warehouse.config import AppConfig, LoggingConfig, StorageConfig, WarehouseConfig
from racing_warehouse.db.connection import open_connection
from racing_warehouse.db.schema import apply_schema
from racing_warehouse.storage.blob_store import LocalBlobStore
from racing_warehouse.warehouse.sqlite_warehouse import SQLiteWarehouse


# ── Database fixture ──────────────────────────────────────────────────────────

@pytest.fixture
def in_memory_db() -> Generator[sqlite3.Connection, None, None]:
    """Yield a fresh in-memory SQLite connection with the full schema applied.

    Foreign key enforcement is ON. Connection is closed after the test.
    """
    conn = open_connection(":memory:")
    apply_schema(conn)
    yield conn
    conn.close()


# ── Blob store / warehouse / config ───────────────────────────────────────────

@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def warehouse(in_memory_db, blob_store) -> SQLiteWarehouse:
    return SQLiteWarehouse(in_memory_db, blob_store=blob_store, batch_size=2)


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    return AppConfig(
        storage=StorageConfig(root_dir=str(tmp_path / "blobs")),
        warehouse=WarehouseConfig(db_path=str(tmp_path / "db" / "warehouse.db")),
        logging=LoggingConfig(log_file=""),
    )


# ── Helpers ───────────────────────────────────────────────────────────────────

def _set_created_at(store: LocalBlobStore, key: str, created_at: datetime) -> None:
    ns = int(created_at.timestamp()) * 1_000_000_000 + created_at.microsecond * 1000
    os.utime(store.root / key, ns=(ns, ns))


@pytest.fixture
def put_blob(blob_store) -> Callable[..., str]:
    """Return ``put(key, text, created_at=None) -> key`` writing into ``blob_store``.

    ``created_at`` pins the object's creation time (file mtime), which is
    what watermark discovery compares against.
    """

    def put(key: str, text: str, created_at: Optional[datetime] = None) -> str:
        with blob_store.open_write(key) as out:
            out.write(text)
        if created_at is not None:
            _set_created_at(blob_store, key, created_at)
        return key

    return put

