"""
Out-of-band staging sweep.

Failed or timed-out ingestion runs leave their ``stg_*`` relation in place
for diagnosis. This stage drops every staging relation whose embedded
creation time is older than ``max_age_hours`` (default
``pipeline.staging_max_age_hours``). Relations whose name does not parse are
left alone.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Optional

from racing_warehouse.errors import InputValidationError, WarehouseError
from racing_warehouse.models.meta import RunMetadata
from racing_warehouse.models.results import SweepResult
from racing_warehouse.pipeline.base import PipelineStage
from racing_warehouse.utils.time_utils import utcnow
from racing_warehouse.warehouse.relations import STAGING_PREFIX, parse_staging_relation

logger = logging.getLogger(__name__)


class StagingSweeper(PipelineStage):
    """Drop orphaned staging relations."""

    stage_name = "sweep_staging"

    def sweep_staging(self, max_age_hours: Optional[float] = None) -> SweepResult:
        return self.run(max_age_hours=max_age_hours)

    def _execute(  # type: ignore[override]
        self, run: RunMetadata, max_age_hours: Optional[float] = None, **kwargs: Any
    ) -> SweepResult:
        if self.warehouse is None:
            raise WarehouseError("StagingSweeper requires a warehouse.")
        if max_age_hours is None:
            max_age_hours = self.config.pipeline.staging_max_age_hours
        if max_age_hours < 0:
            raise InputValidationError(f"max_age_hours must be >= 0, got {max_age_hours}.")

        cutoff = utcnow() - timedelta(hours=max_age_hours)
        dropped: list[str] = []
        for name in self.warehouse.list_relations(STAGING_PREFIX):
            created_at = parse_staging_relation(name)
            if created_at is None:
                logger.warning("Not sweeping %s: unrecognised staging name", name)
                continue
            if created_at < cutoff:
                self.warehouse.drop_relation(name)
                dropped.append(name)

        logger.info("Swept %d staging relation(s) older than %.1fh", len(dropped), max_age_hours)
        return SweepResult(dropped=dropped)
