"""
Scrape stage: origin service → one shard per batch.

A batch covers ids ``start_id .. start_id + batch_size - 1``. Ids are fetched
through a ``BoundedWorkerPool``; once the last ``scraper.miss_cutoff``
completed fetches were all misses the pool stops dispatching (the id space is
assumed exhausted) and lets in-flight fetches drain.

Records found are sorted by id and written as a single shard::

    <entity>_data/shard_<startId>_<maxFetchedId>_<YYYY_MM_DD_hh:mm:ss>.ndjson

No shard is written when nothing was found.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

from racing_warehouse.config import AppConfig
from racing_warehouse.errors import InputValidationError, ScrapeError
from racing_warehouse.models.meta import RunMetadata
from racing_warehouse.models.results import ScrapeResult
from racing_warehouse.pipeline.base import PipelineStage
from racing_warehouse.scraping.homas_client import ENTITY_PREFIXES, HomasClient
from racing_warehouse.scraping.worker_pool import BoundedWorkerPool
from racing_warehouse.storage.blob_store import BlobStore
from racing_warehouse.storage.naming import NDJSON_CONTENT_TYPE, shard_key
from racing_warehouse.utils.time_utils import utcnow
from racing_warehouse.warehouse.sqlite_warehouse import SQLiteWarehouse

logger = logging.getLogger(__name__)


class ScrapeStage(PipelineStage):
    """Fetch one id batch from the origin service and write a shard.

    Attributes:
        client_factory: Builds the ``HomasClient`` for a run; defaults to
            ``HomasClient.from_config(config.scraper)``.
    """

    stage_name = "scrape"

    def __init__(
        self,
        config: AppConfig,
        blob_store: BlobStore,
        warehouse: Optional[SQLiteWarehouse] = None,
        client_factory: Optional[Callable[[], HomasClient]] = None,
    ) -> None:
        super().__init__(config, blob_store, warehouse)
        self.client_factory = client_factory or (
            lambda: HomasClient.from_config(self.config.scraper)
        )

    def scrape_batch(
        self, entity: str, start_id: int, batch_size: Optional[int] = None
    ) -> ScrapeResult:
        if entity not in ENTITY_PREFIXES:
            raise InputValidationError(
                f"Unknown entity '{entity}'. Must be one of {sorted(ENTITY_PREFIXES)}."
            )
        return self.run(
            prefix=ENTITY_PREFIXES[entity],
            entity=entity,
            start_id=start_id,
            batch_size=batch_size or self.config.scraper.default_batch_size,
        )

    def _execute(  # type: ignore[override]
        self,
        run: RunMetadata,
        prefix: str,
        entity: str,
        start_id: int,
        batch_size: int,
        **kwargs: Any,
    ) -> ScrapeResult:
        if start_id < 1:
            raise InputValidationError(f"start_id must be >= 1, got {start_id}.")
        if batch_size < 1:
            raise InputValidationError(f"batch_size must be >= 1, got {batch_size}.")

        cfg = self.config.scraper
        pool = BoundedWorkerPool(concurrency=cfg.concurrency, window=cfg.miss_cutoff)
        ids = range(start_id, start_id + batch_size)
        logger.info(
            "Scraping %s ids %d..%d (concurrency=%d)",
            entity, ids[0], ids[-1], cfg.concurrency,
        )

        with self.client_factory() as client:
            report = pool.run(ids, lambda entity_id: client.fetch(entity, entity_id))

        hits = sorted(report.hits, key=lambda o: o.item)
        logger.info(
            "Scraped %s: %d found, %d missed, %d dispatched%s",
            entity, len(hits), report.misses, report.dispatched,
            " (stopped early)" if report.stopped_early else "",
        )

        shard_file = None
        if hits:
            shard_file = shard_key(prefix, start_id, hits[-1].item, utcnow())
            try:
                with self.blob_store.open_write(shard_file, content_type=NDJSON_CONTENT_TYPE) as out:
                    for outcome in hits:
                        out.write(json.dumps(outcome.value, ensure_ascii=False))
                        out.write("\n")
            except OSError as exc:
                raise ScrapeError(f"Failed to write shard {shard_file}: {exc}") from exc
            logger.info("Shard written: %s (%d records)", shard_file, len(hits))

        return ScrapeResult(
            entity=entity,
            start_id=start_id,
            requested=batch_size,
            attempted=report.dispatched,
            fetched=len(hits),
            misses=report.misses,
            stopped_early=report.stopped_early,
            shard_file=shard_file,
        )
