"""
SQLite implementation of the analytical warehouse.

Provides the operations the ingestion coordinator needs:

  - ``query()`` / ``execute()`` / ``executemany()``: parameterized SQL.
  - ``load_ndjson()``: bulk load one or more NDJSON objects (addressed by
    blob store URI) into a named relation with a declared schema. Write
    disposition ``WRITE_TRUNCATE`` replaces the relation; ``WRITE_APPEND``
    adds to it.
  - ``drop_relation()`` / ``list_relations()``: staging relation management.
  - ``bounded_by(deadline)``: interrupts long-running statements through
    SQLite's progress handler once the deadline has passed.

Loaded relations get two lineage columns, ``_source_uri`` and
``_line_number``, ahead of the declared columns. Declared columns carry no
type affinity so values are stored exactly as decoded; nested objects and
arrays are stored as canonical JSON text.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Optional, Sequence

from racing_warehouse.db.repositories.base import BaseRepository
from racing_warehouse.errors import IngestionTimeoutError, WarehouseError
from racing_warehouse.storage.blob_store import BlobStore
from racing_warehouse.utils.deadline import Deadline
from racing_warehouse.warehouse.relations import validate_identifier

logger = logging.getLogger(__name__)

WRITE_TRUNCATE = "WRITE_TRUNCATE"
WRITE_APPEND = "WRITE_APPEND"
_WRITE_DISPOSITIONS = frozenset({WRITE_TRUNCATE, WRITE_APPEND})

LINEAGE_COLUMNS = ("_source_uri", "_line_number")

# SQLite VM instructions between progress-handler callbacks.
_PROGRESS_INTERVAL = 1000


def canonical_json(value: Any) -> str:
    """Serialize ``value`` to canonical JSON text (sorted keys, compact)."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _storage_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return canonical_json(value)
    return value


class SQLiteWarehouse(BaseRepository):
    """Warehouse operations over one SQLite connection.

    Attributes:
        conn: Open connection (autocommit mode, see ``db.connection``).
        blob_store: Store used to resolve URIs passed to ``load_ndjson()``.
        batch_size: Rows per ``executemany`` during bulk loads.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        blob_store: Optional[BlobStore] = None,
        batch_size: int = 500,
    ) -> None:
        super().__init__(conn)
        self.blob_store = blob_store
        self.batch_size = batch_size
        self._deadline: Optional[Deadline] = None

    # ── SQL ────────────────────────────────────────────────────────────────────

    def query(self, sql: str, params: tuple[Any, ...] | dict[str, Any] = ()) -> list[dict[str, Any]]:
        """Run a SELECT and return rows as plain dicts."""
        try:
            return [dict(row) for row in self.fetchall(sql, params)]
        except sqlite3.Error as exc:
            raise self.translate_error(exc, "query") from exc

    def total_changes(self) -> int:
        """Rows modified since the connection was opened (all statements)."""
        return self.conn.total_changes

    def row_count(self, relation: str) -> int:
        row = self.fetchone(f'SELECT COUNT(*) AS n FROM "{validate_identifier(relation)}";')
        assert row is not None
        return int(row["n"])

    # ── Relations ──────────────────────────────────────────────────────────────

    def list_relations(self, prefix: str = "") -> list[str]:
        """Return table names starting with ``prefix``, sorted."""
        rows = self.fetchall(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' "
            "ORDER BY name;"
        )
        return [r["name"] for r in rows if r["name"].startswith(prefix)]

    def relation_exists(self, relation: str) -> bool:
        row = self.fetchone(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?;", (relation,)
        )
        return row is not None

    def drop_relation(self, relation: str) -> None:
        """Drop ``relation`` if it exists."""
        try:
            self.execute(f'DROP TABLE IF EXISTS "{validate_identifier(relation)}";')
        except sqlite3.Error as exc:
            raise self.translate_error(exc, f"drop {relation}") from exc
        logger.debug("Dropped relation %s", relation)

    # ── Bulk load ──────────────────────────────────────────────────────────────

    def load_ndjson(
        self,
        relation: str,
        uris: Sequence[str],
        columns: Sequence[str],
        write_disposition: str = WRITE_TRUNCATE,
    ) -> int:
        """Bulk-load NDJSON objects into ``relation``.

        Each non-blank line must decode to a JSON object. Fields not listed in
        ``columns`` are ignored; missing fields load as NULL.

        Args:
            relation: Target relation name.
            uris: Blob store URIs, loaded in the order given.
            columns: Declared column names.
            write_disposition: ``WRITE_TRUNCATE`` (replace) or ``WRITE_APPEND``.

        Returns:
            Number of rows loaded.

        Raises:
            WarehouseError: On an undecodable line or any SQL failure.
            IngestionTimeoutError: If a bound deadline expires mid-load.
        """
        if self.blob_store is None:
            raise WarehouseError("load_ndjson requires a blob store.")
        if write_disposition not in _WRITE_DISPOSITIONS:
            raise WarehouseError(f"Unknown write disposition '{write_disposition}'.")

        validate_identifier(relation)
        column_list = list(LINEAGE_COLUMNS) + [validate_identifier(c) for c in columns]
        quoted = ", ".join(f'"{c}"' for c in column_list)
        insert_sql = (
            f'INSERT INTO "{relation}" ({quoted}) '
            f"VALUES ({', '.join('?' for _ in column_list)});"
        )
        column_defs = ", ".join(
            ['"_source_uri" TEXT NOT NULL', '"_line_number" INTEGER NOT NULL']
            + [f'"{c}"' for c in columns]
        )

        loaded = 0
        try:
            # The relation exists (possibly empty) even if the row load below
            # is interrupted, so a timed-out run leaves it for inspection.
            if write_disposition == WRITE_TRUNCATE:
                self.execute(f'DROP TABLE IF EXISTS "{relation}";')
            self.execute(f'CREATE TABLE IF NOT EXISTS "{relation}" ({column_defs});')
            with self.transaction():
                for uri in uris:
                    rows = self._decode_rows(uri, columns)
                    for batch in _batched(rows, self.batch_size):
                        self._check_deadline(f"load {relation}")
                        self.executemany(insert_sql, batch)
                        loaded += len(batch)
        except sqlite3.Error as exc:
            raise self.translate_error(exc, f"load {relation}") from exc

        logger.info("Loaded %d rows from %d object(s) into %s", loaded, len(uris), relation)
        return loaded

    def _decode_rows(self, uri: str, columns: Sequence[str]) -> Iterator[tuple[Any, ...]]:
        assert self.blob_store is not None
        key = self.blob_store.key_for_uri(uri)
        with self.blob_store.open_read(key) as stream:
            for line_number, line in enumerate(stream, start=1):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError as exc:
                    raise WarehouseError(f"{uri}:{line_number}: invalid JSON: {exc}") from exc
                if not isinstance(record, dict):
                    raise WarehouseError(f"{uri}:{line_number}: expected a JSON object.")
                yield (uri, line_number) + tuple(
                    _storage_value(record.get(c)) for c in columns
                )

    # ── Deadlines ──────────────────────────────────────────────────────────────

    @contextmanager
    def bounded_by(self, deadline: Optional[Deadline]) -> Iterator[None]:
        """Interrupt statements that are still running when ``deadline`` passes."""
        if deadline is None or not deadline.bounded:
            yield
            return
        previous = self._deadline
        self._deadline = deadline
        self.conn.set_progress_handler(lambda: 1 if deadline.expired else 0, _PROGRESS_INTERVAL)
        try:
            yield
        finally:
            self.conn.set_progress_handler(None, _PROGRESS_INTERVAL)
            self._deadline = previous

    def _check_deadline(self, step: str) -> None:
        if self._deadline is not None:
            self._deadline.check(step)

    def translate_error(self, exc: sqlite3.Error, what: str) -> Exception:
        """Map a sqlite3 error to the domain exception for ``what``."""
        if self._deadline is not None and self._deadline.expired:
            return IngestionTimeoutError(
                f"Deadline of {self._deadline.seconds}s exceeded during {what}."
            )
        return WarehouseError(f"Warehouse {what} failed: {exc}")


def _batched(rows: Iterable[tuple[Any, ...]], size: int) -> Iterator[list[tuple[Any, ...]]]:
    batch: list[tuple[Any, ...]] = []
    for row in rows:
        batch.append(row)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
