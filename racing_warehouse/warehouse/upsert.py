"""
Generic upsert executor driven by ``UpsertSpec``.

One statement shape serves every production relation::

    INSERT INTO t (k.., c.., created_date, last_updated_date) VALUES (...)
    ON CONFLICT (k..) DO UPDATE SET
        c = excluded.c, ..., last_updated_date = excluded.last_updated_date
    WHERE t.c IS NOT excluded.c OR ...

Matched rows get every mapped column overwritten, but only when at least one
of them differs; an identical row is left alone (``created_date`` and
``last_updated_date`` included). Re-merging the same rows is therefore a
pure no-op.

Counts: ``inserted`` is the growth in row count, ``updated`` is the number of
rows the statement modified minus ``inserted``. Callers collapse duplicate
keys before merging, so each key is written at most once per call and the
two numbers are exact.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Sequence

from racing_warehouse.warehouse.relations import UpsertSpec
from racing_warehouse.warehouse.sqlite_warehouse import SQLiteWarehouse

logger = logging.getLogger(__name__)

BOOKKEEPING_COLUMNS = ("created_date", "last_updated_date")


def build_upsert_sql(spec: UpsertSpec) -> str:
    """Render the parameterized upsert statement for ``spec``."""
    insert_cols = list(spec.columns) + list(BOOKKEEPING_COLUMNS)
    placeholders = ", ".join("?" for _ in insert_cols)
    conflict = ", ".join(spec.key_columns)

    if not spec.update_columns:
        return (
            f"INSERT INTO {spec.relation} ({', '.join(insert_cols)}) VALUES ({placeholders}) "
            f"ON CONFLICT ({conflict}) DO NOTHING;"
        )

    assignments = ",\n        ".join(
        [f"{c} = excluded.{c}" for c in spec.update_columns]
        + ["last_updated_date = excluded.last_updated_date"]
    )
    changed = "\n       OR ".join(
        f"{spec.relation}.{c} IS NOT excluded.{c}" for c in spec.update_columns
    )
    return (
        f"INSERT INTO {spec.relation} ({', '.join(insert_cols)})\n"
        f"VALUES ({placeholders})\n"
        f"ON CONFLICT ({conflict}) DO UPDATE SET\n"
        f"        {assignments}\n"
        f"WHERE {changed};"
    )


def execute_upsert(
    warehouse: SQLiteWarehouse,
    spec: UpsertSpec,
    rows: Sequence[dict[str, Any]],
    run_timestamp: str,
) -> tuple[int, int]:
    """Merge ``rows`` into ``spec.relation`` in one transaction.

    Args:
        warehouse: Target warehouse.
        spec: Relation merge specification.
        rows: Projected rows keyed by column name (keys already unique).
        run_timestamp: ISO timestamp written to the bookkeeping columns.

    Returns:
        ``(inserted, updated)`` counts.

    Raises:
        WarehouseError: If the statement fails (the transaction is rolled back).
        IngestionTimeoutError: If a bound deadline interrupts the statement.
    """
    if not rows:
        return 0, 0

    sql = build_upsert_sql(spec)
    params = [
        tuple(row.get(c) for c in spec.columns) + (run_timestamp, run_timestamp)
        for row in rows
    ]

    try:
        with warehouse.transaction():
            before_rows = warehouse.row_count(spec.relation)
            before_changes = warehouse.total_changes()
            warehouse.executemany(sql, params)
            changed = warehouse.total_changes() - before_changes
            inserted = warehouse.row_count(spec.relation) - before_rows
    except sqlite3.Error as exc:
        raise warehouse.translate_error(exc, f"merge into {spec.relation}") from exc

    updated = changed - inserted
    logger.info(
        "Merged %s: rows=%d inserted=%d updated=%d",
        spec.relation, len(rows), inserted, updated,
    )
    return inserted, updated
