"""
Incremental ingestion stage: cleaned snapshots → production relations.

One ``ingest(prefix)`` call is one logical unit of work::

    Idle → Discovering → Staging → Merging(relation_i) → Cleanup → WatermarkAdvanced
                 └──────→ NoNewData

  1. Discovering: read the watermark for ``prefix``; list ``CLEANED_*.ndjson``
     directly under it; fetch creation times with a bounded thread pool; keep
     snapshots strictly newer than the watermark, oldest first. None left →
     ``IngestionReport(status="no_new_data")``.
  2. Staging: bulk-load the selected snapshots into a freshly named staging
     relation (replace disposition) using the source's declared schema.
  3. Merging: flatten staged rows (``pipeline.flatten``) and merge each
     relation in dependency order; each merge is one warehouse transaction.
  4. Cleanup: drop the staging relation.
  5. WatermarkAdvanced: move the watermark to the newest processed snapshot's
     creation time (monotonic upsert).

The whole sequence runs under a per-source lease, so a concurrent call for
the same prefix fails fast with ``LeaseUnavailableError``. A caller-supplied
timeout bounds the load and merge statements; on timeout or any other failure
the watermark is left untouched and the staging relation is kept (and
logged) for diagnosis. ``sweep_staging`` removes such leftovers later.

Retrying after a failure is safe: merges are idempotent and the watermark did
not move, so the same snapshots are rediscovered.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional

from racing_warehouse.db.repositories.lease_repo import LeaseRepository
from racing_warehouse.db.repositories.watermark_repo import WatermarkStore
from racing_warehouse.errors import IngestionError, InputValidationError
from racing_warehouse.models.meta import RunMetadata
from racing_warehouse.models.results import IngestionReport, RelationMergeStats
from racing_warehouse.pipeline.base import PipelineStage
from racing_warehouse.pipeline.flatten import project
from racing_warehouse.storage.blob_store import BlobMetadata
from racing_warehouse.storage.naming import is_cleaned_key
from racing_warehouse.utils.deadline import Deadline
from racing_warehouse.utils.time_utils import to_iso, utcnow
from racing_warehouse.warehouse.relations import (
    SourceSpec,
    get_source,
    staging_relation_name,
)
from racing_warehouse.warehouse.sqlite_warehouse import WRITE_TRUNCATE, SQLiteWarehouse
from racing_warehouse.warehouse.upsert import execute_upsert

logger = logging.getLogger(__name__)


class IngestionCoordinator(PipelineStage):
    """Discover, stage, flatten, merge and advance the watermark for one source."""

    stage_name = "ingest"

    def ingest(self, prefix: str, timeout_seconds: Optional[float] = None) -> IngestionReport:
        """Audited entry point.

        Args:
            prefix: Source prefix, one of ``warehouse.relations.SOURCES``.
            timeout_seconds: Deadline for the run; defaults to
                ``pipeline.ingest_timeout_seconds``. Must be shorter than
                ``pipeline.lease_ttl_seconds`` because the lease is not renewed.
        """
        return self.run(prefix=prefix, timeout_seconds=timeout_seconds)

    def _execute(  # type: ignore[override]
        self,
        run: RunMetadata,
        prefix: str,
        timeout_seconds: Optional[float] = None,
        **kwargs: Any,
    ) -> IngestionReport:
        if not isinstance(prefix, str) or not prefix:
            raise InputValidationError("Missing or invalid required field: prefix")
        source = get_source(prefix)
        if self.warehouse is None:
            raise IngestionError("IngestionCoordinator requires a warehouse.")

        ttl = self.config.pipeline.lease_ttl_seconds
        if timeout_seconds is None:
            timeout_seconds = self.config.pipeline.ingest_timeout_seconds
        elif not 0 < timeout_seconds < ttl:
            raise InputValidationError(
                f"timeout_seconds must be > 0 and < the {ttl}s lease TTL, got {timeout_seconds}."
            )
        deadline = Deadline(timeout_seconds)

        leases = LeaseRepository(self.warehouse.conn)
        with leases.hold(prefix, run.run_slug, ttl):
            return self._ingest(source, self.warehouse, deadline)

    # ── Steps ──────────────────────────────────────────────────────────────────

    def _ingest(
        self, source: SourceSpec, warehouse: SQLiteWarehouse, deadline: Deadline
    ) -> IngestionReport:
        watermarks = WatermarkStore(warehouse.conn)
        watermark = watermarks.get(source.prefix)
        logger.info("[%s] Discovering snapshots newer than %s", source.prefix, to_iso(watermark))

        new_snapshots = [m for m in self.discover(source.prefix) if m.created_at > watermark]
        if not new_snapshots:
            logger.info("[%s] No new cleaned snapshots since %s", source.prefix, to_iso(watermark))
            return IngestionReport(
                prefix=source.prefix,
                status="no_new_data",
                last_processed_time=watermark,
            )

        staging = staging_relation_name(source, utcnow())
        try:
            with warehouse.bounded_by(deadline):
                deadline.check("stage")
                logger.info(
                    "[%s] Staging %d snapshot(s) into %s",
                    source.prefix, len(new_snapshots), staging,
                )
                warehouse.load_ndjson(
                    staging,
                    [self.blob_store.uri_for(m.key) for m in new_snapshots],
                    [name for name, _ in source.staging_columns],
                    write_disposition=WRITE_TRUNCATE,
                )
                relations = self._merge(source, warehouse, staging, deadline)
        except Exception:
            logger.error(
                "[%s] Ingestion failed; watermark unchanged, staging relation %s left for diagnosis.",
                source.prefix, staging,
            )
            raise

        warehouse.drop_relation(staging)
        newest = max(m.created_at for m in new_snapshots)
        watermarks.advance(source.prefix, newest)

        return IngestionReport(
            prefix=source.prefix,
            status="ingested",
            processed_files=[m.key for m in new_snapshots],
            last_processed_time=watermarks.get(source.prefix),
            staging_relation=staging,
            relations=relations,
        )

    def discover(self, prefix: str) -> list[BlobMetadata]:
        """List cleaned snapshots under ``prefix`` with metadata, oldest first."""
        keys = [k for k in self.blob_store.list_keys(prefix) if is_cleaned_key(k, prefix)]
        if not keys:
            return []
        workers = min(self.config.pipeline.metadata_concurrency, len(keys))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            metadata = list(pool.map(self.blob_store.metadata, keys))
        return sorted(metadata, key=lambda m: (m.created_at, m.key))

    def _merge(
        self,
        source: SourceSpec,
        warehouse: SQLiteWarehouse,
        staging: str,
        deadline: Deadline,
    ) -> list[RelationMergeStats]:
        deadline.check("flatten")
        staged_rows = warehouse.query(f'SELECT * FROM "{staging}" ORDER BY rowid;')
        streams = project(source, staged_rows)

        run_timestamp = to_iso(utcnow())
        stats: list[RelationMergeStats] = []
        for stream in streams:
            relation = stream.spec.relation
            deadline.check(f"merge {relation}")
            logger.info("[%s] Merging %s", source.prefix, relation)
            inserted, updated = execute_upsert(
                warehouse, stream.spec, stream.values(), run_timestamp
            )
            stats.append(
                RelationMergeStats(
                    relation=relation,
                    rows_in=stream.rows_in,
                    inserted=inserted,
                    updated=updated,
                    skipped=stream.skipped,
                )
            )
        return stats
