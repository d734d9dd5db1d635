"""
Per-source ingestion lease: the ``ingestion_leases`` table.

Guards the discover → advance-watermark critical section so two overlapping
``ingest`` calls for the same prefix do not both stage and merge the same
snapshots. Acquisition is one conditional upsert: it succeeds when no row
exists, when the existing lease has expired, or when the caller already holds
it. The TTL bounds how long a crashed holder can block the source.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import timedelta
from typing import Iterator, Optional

from racing_warehouse.db.repositories.base import BaseRepository
from racing_warehouse.errors import LeaseUnavailableError
from racing_warehouse.utils.time_utils import to_iso, utcnow

logger = logging.getLogger(__name__)


class LeaseRepository(BaseRepository):
    """Acquire, release and inspect per-source leases."""

    def try_acquire(self, source_prefix: str, holder: str, ttl_seconds: int) -> bool:
        """Attempt to take the lease for ``source_prefix``.

        Returns:
            ``True`` if ``holder`` now owns the lease.
        """
        now = utcnow()
        self.execute(
            """
            INSERT INTO ingestion_leases (source_prefix, holder, acquired_at, expires_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(source_prefix) DO UPDATE SET
                holder      = excluded.holder,
                acquired_at = excluded.acquired_at,
                expires_at  = excluded.expires_at
            WHERE ingestion_leases.expires_at <= excluded.acquired_at
               OR ingestion_leases.holder = excluded.holder;
            """,
            (
                source_prefix,
                holder,
                to_iso(now),
                to_iso(now + timedelta(seconds=ttl_seconds)),
            ),
        )
        return self.changes() == 1

    def release(self, source_prefix: str, holder: str) -> None:
        """Delete the lease row if ``holder`` still owns it."""
        self.execute(
            "DELETE FROM ingestion_leases WHERE source_prefix = ? AND holder = ?;",
            (source_prefix, holder),
        )

    def current_holder(self, source_prefix: str) -> Optional[str]:
        """Return the holder of an unexpired lease, or ``None``."""
        row = self.fetchone(
            "SELECT holder FROM ingestion_leases WHERE source_prefix = ? AND expires_at > ?;",
            (source_prefix, to_iso(utcnow())),
        )
        return row["holder"] if row else None

    @contextmanager
    def hold(self, source_prefix: str, holder: str, ttl_seconds: int) -> Iterator[None]:
        """Hold the lease for the duration of the ``with`` block.

        Raises:
            LeaseUnavailableError: If another holder owns an unexpired lease.
        """
        if not self.try_acquire(source_prefix, holder, ttl_seconds):
            raise LeaseUnavailableError(
                f"Ingestion for '{source_prefix}' is already running "
                f"(lease held by {self.current_holder(source_prefix)})."
            )
        logger.debug("Lease acquired: %s by %s", source_prefix, holder)
        try:
            yield
        finally:
            self.release(source_prefix, holder)
            logger.debug("Lease released: %s by %s", source_prefix, holder)
