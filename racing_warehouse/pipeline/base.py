"""
Abstract base class for all pipeline stages.

Every stage follows the same contract:
  1. Receive ``AppConfig`` and its collaborators (blob store, optional
     warehouse) at construction. Collaborators are injected, never created
     inside the stage, so tests substitute fakes freely.
  2. ``run(**kwargs)`` is the sole public API.
  3. ``run()`` creates a ``RunMetadata`` record, calls ``_execute()``,
     and persists the run record with final status.
  4. ``_execute()`` is the stage-specific implementation (overridden by
     subclasses) and returns a ``StageResult``.

Status transitions: ``started → success`` for work done, ``started →
skipped`` for idempotent no-ops (``result.is_noop``), ``started → failed``
when ``_execute()`` raises. Errors are always re-raised after recording.

Usage::

    class MyStage(PipelineStage):
        stage_name = "merge_shards"

        def _execute(self, run: RunMetadata, **kwargs) -> MergeResult:
            return MergeResult(master_file=None, merged_count=0)

    stage = MyStage(config=app_config, blob_store=store, warehouse=warehouse)
    result = stage.run(prefix="horse_data/")
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional
from uuid import uuid4

from racing_warehouse.config import AppConfig
from racing_warehouse.models.meta import RunMetadata
from racing_warehouse.models.results import StageResult
from racing_warehouse.storage.blob_store import BlobStore
from racing_warehouse.utils.time_utils import utcnow
from racing_warehouse.warehouse.sqlite_warehouse import SQLiteWarehouse

logger = logging.getLogger(__name__)


class PipelineStage(ABC):
    """Abstract base for all pipeline stages.

    Subclasses must:
      1. Set ``stage_name`` class variable.
      2. Implement ``_execute(run, **kwargs) -> StageResult``.

    Attributes:
        stage_name: String identifier matching a valid ``RunMetadata.pipeline_stage``.
        config: The application configuration for this run.
        blob_store: Object storage the stage reads and writes.
        warehouse: Warehouse handle; when ``None`` run records are not persisted.
    """

    stage_name: str  # Override in subclass

    def __init__(
        self,
        config: AppConfig,
        blob_store: BlobStore,
        warehouse: Optional[SQLiteWarehouse] = None,
    ) -> None:
        self.config = config
        self.blob_store = blob_store
        self.warehouse = warehouse

    def run(self, **kwargs: Any) -> Any:
        """Execute this pipeline stage.

        Args:
            **kwargs: Stage-specific keyword arguments passed to ``_execute()``.

        Returns:
            The stage's ``StageResult``.

        Raises:
            Exception: Re-raises any exception from ``_execute()`` after
                recording ``status='failed'`` in the run record.
        """
        run = RunMetadata(
            run_slug=str(uuid4()),
            pipeline_stage=self.stage_name,
            source_prefix=kwargs.get("prefix"),
            config_snapshot=self.config.model_dump(mode="json"),
            started_at=utcnow(),
        )
        context = {"stage": self.stage_name, "run_slug": run.run_slug}
        logger.info(
            "Stage [%s] starting | run_slug=%s", self.stage_name, run.run_slug, extra=context
        )
        self._persist_run(run)

        try:
            result: StageResult = self._execute(run=run, **kwargs)

        except Exception as exc:
            run.fail(exc)
            logger.error(
                "Stage [%s] FAILED: %s | run_slug=%s",
                self.stage_name, exc, run.run_slug,
                extra=context,
            )
            self._persist_run(run)
            raise

        run.finish(result)
        logger.info(
            "Stage [%s] %s | rows=%d | run_slug=%s",
            self.stage_name, run.status, run.rows_processed, run.run_slug,
            extra=context,
        )
        self._persist_run(run)
        return result

    @abstractmethod
    def _execute(self, run: RunMetadata, **kwargs: Any) -> StageResult:
        """Stage-specific implementation.

        Args:
            run: The in-progress ``RunMetadata`` record (mutable).
            **kwargs: Stage-specific parameters.

        Returns:
            The stage's result model.
        """
        ...

    def _persist_run(self, run: RunMetadata) -> None:
        """Insert or update the ``RunMetadata`` record.

        Uses an import inside the method to avoid circular dependencies.
        Logs errors rather than raising; run persistence failure must not
        mask the original pipeline error.
        """
        if self.warehouse is None:
            return
        try:
            from racing_warehouse.db.repositories.run_repo import RunMetadataRepository

            repo = RunMetadataRepository(self.warehouse.conn)
            if run.run_id is None:
                run.run_id = repo.insert_run(run)
            else:
                repo.update_run(run)
        except Exception as exc:
            logger.error(
                "Failed to persist RunMetadata for run_slug=%s: %s",
                run.run_slug, exc,
            )
