"""
Collaborator wiring shared by the CLI and the HTTP surface.

Usage::

    config = load_config()
    store = build_blob_store(config.storage)
    with open_warehouse(config, store) as warehouse:
        IngestionCoordinator(config, store, warehouse).ingest("horse_data/")
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from racing_warehouse.config import AppConfig
from racing_warehouse.db.connection import get_connection
from racing_warehouse.db.schema import apply_schema
from racing_warehouse.storage.blob_store import BlobStore
from racing_warehouse.storage.factory import build_blob_store
from racing_warehouse.warehouse.sqlite_warehouse import SQLiteWarehouse

__all__ = ["build_blob_store", "open_warehouse"]


@contextmanager
def open_warehouse(
    config: AppConfig,
    blob_store: Optional[BlobStore] = None,
    db_path: Optional[str] = None,
) -> Iterator[SQLiteWarehouse]:
    """Open the configured warehouse with its schema applied.

    Args:
        config: Application config (``warehouse`` section is used).
        blob_store: Store used to resolve bulk-load URIs.
        db_path: Overrides ``config.warehouse.db_path``.
    """
    wh = config.warehouse
    with get_connection(
        db_path or wh.db_path, wal_mode=wh.wal_mode, busy_timeout_ms=wh.busy_timeout_ms
    ) as conn:
        apply_schema(conn)
        yield SQLiteWarehouse(conn, blob_store=blob_store, batch_size=wh.load_batch_size)
