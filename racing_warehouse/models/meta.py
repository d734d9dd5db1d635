"""
Run metadata: the pipeline audit log.

Every trigger of a pipeline stage (scrape, merge, clean, ingest, sweep)
records one ``RunMetadata`` row with a complete ``config_snapshot`` so any
run can be reproduced by restoring that config and re-invoking the stage.

``RunMetadata`` is the **only** Pydantic model in the system that is NOT
frozen: its ``status``, ``rows_processed``, ``error_message``, and
``finished_at`` fields must be updated as the pipeline stage executes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator

VALID_PIPELINE_STAGES = frozenset({
    "scrape", "merge_shards", "clean_master", "ingest", "sweep_staging",
})
VALID_RUN_STATUSES = frozenset({"started", "success", "failed", "skipped"})


class RunMetadata(BaseModel):
    """Pipeline execution audit record.

    Attributes:
        run_id: Auto-assigned DB PK; ``None`` before insertion.
        run_slug: UUID4 string uniquely identifying this run.
        pipeline_stage: Which stage produced this run record.
        status: ``started`` → ``success`` | ``skipped`` | ``failed``.
            ``skipped`` marks an idempotent no-op (nothing to merge, already
            cleaned, no new data since the watermark).
        source_prefix: Source prefix the run operated on, if any.
        config_snapshot: Full ``AppConfig.model_dump()`` at run start time.
        rows_processed: Count of records processed.
        error_message: Error description if ``status == "failed"``.
        started_at: UTC datetime when the run began.
        finished_at: UTC datetime when the run completed or failed.
    """

    # Not frozen: status, rows_processed, etc. are updated during execution
    model_config = ConfigDict(frozen=False)

    run_id: Optional[int] = None
    run_slug: str
    pipeline_stage: str
    status: str = "started"
    source_prefix: Optional[str] = None
    config_snapshot: dict[str, Any]
    rows_processed: int = 0
    error_message: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None

    @field_validator("pipeline_stage")
    @classmethod
    def validate_pipeline_stage(cls, v: str) -> str:
        if v not in VALID_PIPELINE_STAGES:
            raise ValueError(
                f"Unknown pipeline_stage '{v}'. Must be one of {sorted(VALID_PIPELINE_STAGES)}."
            )
        return v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in VALID_RUN_STATUSES:
            raise ValueError(
                f"Unknown status '{v}'. Must be one of {sorted(VALID_RUN_STATUSES)}."
            )
        return v

    # ── Transitions ────────────────────────────────────────────────────────────

    def finish(self, result: Any) -> None:
        """Close the run from a stage result (``skipped`` for a no-op)."""
        self._close("skipped" if result.is_noop else "success")
        self.rows_processed = result.rows_processed

    def fail(self, exc: BaseException) -> None:
        """Close the run as ``failed`` with the exception type and message."""
        self._close("failed")
        self.error_message = f"{type(exc).__name__}: {exc}"

    def _close(self, status: str) -> None:
        if self.status != "started":
            raise ValueError(f"Run {self.run_slug} already closed as '{self.status}'.")
        self.status = status
        self.finished_at = datetime.now(tz=timezone.utc)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()
