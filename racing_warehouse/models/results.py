"""
Result models returned by the pipeline stages.

All result models are frozen: a stage builds its result once at the end of a
run and hands it to the caller (CLI, HTTP surface, tests) unchanged.

Each result exposes ``rows_processed`` and ``is_noop`` so ``PipelineStage.run``
can record the audit row without knowing the concrete result type. ``is_noop``
marks an idempotent short-circuit (nothing to merge, already cleaned, no new
data since the watermark), a successful outcome that is distinct from both
work done and an error.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class StageResult(BaseModel):
    """Common shape of every stage result."""

    model_config = ConfigDict(frozen=True)

    @property
    def rows_processed(self) -> int:
        return 0

    @property
    def is_noop(self) -> bool:
        return False


class MergeResult(StageResult):
    """Outcome of ``ShardMerger.merge_shards``.

    Attributes:
        master_file: Key of the new master snapshot; ``None`` when no shard
            matched (nothing was written).
        merged_count: Number of shards concatenated.
        shard_keys: The merged shard keys, in merge order.
    """

    master_file: Optional[str] = None
    merged_count: int = 0
    shard_keys: list[str] = []

    @property
    def rows_processed(self) -> int:
        return self.merged_count

    @property
    def is_noop(self) -> bool:
        return self.master_file is None


class CleanResult(StageResult):
    """Outcome of cleaning one master snapshot."""

    master_file: str
    cleaned_file: str
    initial_count: int
    removed_count: int
    final_count: int
    cleaned_created_at: datetime

    @property
    def rows_processed(self) -> int:
        return self.final_count


class CleanSkipped(StageResult):
    """The cleaned snapshot for ``master_file`` already existed."""

    master_file: str
    cleaned_file: str

    @property
    def is_noop(self) -> bool:
        return True


class CleanPrefixResult(StageResult):
    """Outcome of cleaning every master snapshot under a prefix."""

    prefix: str
    processed: list[CleanResult] = []
    skipped: list[CleanSkipped] = []

    @property
    def rows_processed(self) -> int:
        return sum(r.final_count for r in self.processed)

    @property
    def is_noop(self) -> bool:
        return not self.processed


class RelationMergeStats(BaseModel):
    """Per-relation counts for one ingestion run.

    Attributes:
        relation: Production relation name.
        rows_in: Rows projected from staging (before skips and collapsing).
        inserted: Keys that did not exist before the merge.
        updated: Existing rows whose mapped columns changed.
        skipped: Rows dropped because a key column was null.
    """

    model_config = ConfigDict(frozen=True)

    relation: str
    rows_in: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0


IngestionStatus = Literal["ingested", "no_new_data"]


class IngestionReport(StageResult):
    """Outcome of ``IngestionCoordinator.ingest``.

    Attributes:
        prefix: Source prefix ingested.
        status: ``"ingested"`` or ``"no_new_data"``.
        processed_files: Keys of the cleaned snapshots merged, oldest first.
        last_processed_time: Watermark after the run.
        staging_relation: Name of the staging relation used (already dropped).
        relations: Per-relation merge counts, in merge order.
    """

    prefix: str
    status: IngestionStatus
    processed_files: list[str] = []
    last_processed_time: datetime
    staging_relation: Optional[str] = None
    relations: list[RelationMergeStats] = []

    @property
    def rows_processed(self) -> int:
        return sum(r.inserted + r.updated for r in self.relations)

    @property
    def is_noop(self) -> bool:
        return self.status == "no_new_data"


class SweepResult(StageResult):
    """Staging relations dropped by the out-of-band sweep."""

    dropped: list[str] = []

    @property
    def rows_processed(self) -> int:
        return len(self.dropped)

    @property
    def is_noop(self) -> bool:
        return not self.dropped


class ScrapeResult(StageResult):
    """Outcome of one scraper batch.

    Attributes:
        entity: Entity type scraped (``horse``, ``jockey``, ...).
        start_id: First id of the requested range.
        requested: Size of the requested id range.
        attempted: Ids actually dispatched before the pool stopped.
        fetched: Records found.
        misses: Not-found (or failed) fetches.
        stopped_early: ``True`` if the consecutive-miss cutoff fired.
        shard_file: Key of the written shard, ``None`` if nothing was found.
    """

    entity: str
    start_id: int
    requested: int
    attempted: int
    fetched: int
    misses: int
    stopped_early: bool
    shard_file: Optional[str] = None

    @property
    def rows_processed(self) -> int:
        return self.fetched

    @property
    def is_noop(self) -> bool:
        return self.shard_file is None
