"""
Watermark store: the ``ingestion_metadata`` table.

One row per source prefix holding the creation time of the newest cleaned
snapshot already ingested for that source. A missing row means epoch zero.

``advance()`` is a single atomic upsert and is **monotonic**: the stored value
only moves forward. Two overlapping ingestion runs for the same prefix can
therefore finish in any order and the row still ends at the maximum creation
time either of them observed. Timestamps are stored as fixed-width ISO-8601
text (see ``utils.time_utils.to_iso``), so the SQL text comparison in the
``WHERE`` clause is a chronological comparison.
"""

from __future__ import annotations

import logging
from datetime import datetime

from racing_warehouse.db.repositories.base import BaseRepository
from racing_warehouse.utils.time_utils import EPOCH, from_iso, to_iso

logger = logging.getLogger(__name__)


class WatermarkStore(BaseRepository):
    """Read/advance per-source ingestion watermarks."""

    def get(self, prefix: str) -> datetime:
        """Return the watermark for ``prefix`` (``EPOCH`` if none recorded)."""
        row = self.fetchone(
            "SELECT last_processed_time FROM ingestion_metadata WHERE prefix = ?;",
            (prefix,),
        )
        if row is None:
            return EPOCH
        return from_iso(row["last_processed_time"])

    def advance(self, prefix: str, timestamp: datetime) -> None:
        """Upsert the watermark for ``prefix``, never moving it backwards.

        Args:
            prefix: Source prefix, e.g. ``"horse_data/"``.
            timestamp: Creation time of the newest snapshot just ingested.
        """
        value = to_iso(timestamp)
        self.execute(
            """
            INSERT INTO ingestion_metadata (prefix, last_processed_time)
            VALUES (?, ?)
            ON CONFLICT(prefix) DO UPDATE SET
                last_processed_time = excluded.last_processed_time,
                updated_at          = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE excluded.last_processed_time > ingestion_metadata.last_processed_time;
            """,
            (prefix, value),
        )
        if self.changes() == 0:
            logger.info(
                "Watermark for %s not advanced: %s is not later than the stored value.",
                prefix, value,
            )
        else:
            logger.info("Watermark for %s advanced to %s", prefix, value)

    def all(self) -> dict[str, datetime]:
        """Return every recorded watermark keyed by prefix."""
        rows = self.fetchall(
            "SELECT prefix, last_processed_time FROM ingestion_metadata ORDER BY prefix;"
        )
        return {r["prefix"]: from_iso(r["last_processed_time"]) for r in rows}
