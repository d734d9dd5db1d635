"""
HTTP trigger surface for the three pipeline components.

Endpoints::

    POST /merge-shards   {"prefix", "outputPrefix", "pattern"}
    POST /clean-master   {"prefix"}
    POST /ingest         {"prefix"}
    GET  /health

Status codes:

  200  work done (body is the camelCase result)
  204  idempotent no-op (nothing to clean, no new cleaned snapshots)
  400  missing or invalid input; no side effects
  409  another ingestion holds the lease for the prefix
  504  ingestion deadline exceeded
  500  anything else, body ``{"error": "..."}``

``mergedCount == 0`` is a normal 200 for ``/merge-shards``.

Each request opens its own warehouse connection; endpoints are plain ``def``
functions so FastAPI runs them in its worker threadpool.
"""

from __future__ import annotations

import logging
from contextlib import AbstractContextManager
from typing import Any, Callable, Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from racing_warehouse import __version__
from racing_warehouse.config import AppConfig
from racing_warehouse.errors import (
    IngestionTimeoutError,
    InputValidationError,
    LeaseUnavailableError,
)
from racing_warehouse.models.results import CleanPrefixResult, IngestionReport, MergeResult
from racing_warehouse.pipeline.clean_master import SnapshotCleaner
from racing_warehouse.pipeline.ingest import IngestionCoordinator
from racing_warehouse.pipeline.merge_shards import ShardMerger
from racing_warehouse.runtime import build_blob_store, open_warehouse
from racing_warehouse.storage.blob_store import BlobStore
from racing_warehouse.utils.time_utils import to_iso
from racing_warehouse.warehouse.sqlite_warehouse import SQLiteWarehouse

logger = logging.getLogger(__name__)

WarehouseFactory = Callable[[BlobStore], AbstractContextManager[SQLiteWarehouse]]


# ── Request bodies ────────────────────────────────────────────────────────────
# Fields are optional at the schema level so a missing field becomes a 400
# with a domain message instead of a 422.

class MergeShardsRequest(BaseModel):
    prefix: Optional[str] = None
    outputPrefix: Optional[str] = None
    pattern: Optional[str] = None


class PrefixRequest(BaseModel):
    prefix: Optional[str] = None


# ── Response bodies ───────────────────────────────────────────────────────────

def merge_response(result: MergeResult) -> dict[str, Any]:
    return {"masterFile": result.master_file, "mergedCount": result.merged_count}


def clean_response(result: CleanPrefixResult) -> dict[str, Any]:
    return {
        "prefix": result.prefix,
        "processed": [
            {
                "masterFile": r.master_file,
                "cleanedFile": r.cleaned_file,
                "initialCount": r.initial_count,
                "removedCount": r.removed_count,
                "finalCount": r.final_count,
                "cleanedCreatedAt": to_iso(r.cleaned_created_at),
            }
            for r in result.processed
        ],
    }


def ingest_response(report: IngestionReport) -> dict[str, Any]:
    return {
        "prefix": report.prefix,
        "processedFiles": report.processed_files,
        "lastProcessedTime": to_iso(report.last_processed_time),
        "stagingRelation": report.staging_relation,
        "relations": [
            {
                "relation": s.relation,
                "rowsIn": s.rows_in,
                "inserted": s.inserted,
                "updated": s.updated,
                "skipped": s.skipped,
            }
            for s in report.relations
        ],
    }


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


# ── App factory ───────────────────────────────────────────────────────────────

def create_app(
    config: AppConfig,
    blob_store: Optional[BlobStore] = None,
    warehouse_factory: Optional[WarehouseFactory] = None,
) -> FastAPI:
    """Build the FastAPI app.

    Args:
        config: Application config.
        blob_store: Store shared by all requests; built from
            ``config.storage`` when omitted.
        warehouse_factory: ``store -> context manager[SQLiteWarehouse]``;
            defaults to ``runtime.open_warehouse``.
    """
    store = blob_store or build_blob_store(config.storage)
    open_wh: WarehouseFactory = warehouse_factory or (lambda s: open_warehouse(config, s))

    app = FastAPI(
        title="Racing Warehouse",
        description="Triggers for shard merge, snapshot cleaning and incremental ingestion.",
        version=__version__,
        debug=config.debug,
    )

    @app.exception_handler(RequestValidationError)
    async def _bad_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(400, f"Invalid request body: {exc.errors()}")

    def invoke(operation: str, action: Callable[[SQLiteWarehouse], Any]) -> Any:
        try:
            with open_wh(store) as warehouse:
                return action(warehouse)
        except InputValidationError as exc:
            return _error(400, str(exc))
        except LeaseUnavailableError as exc:
            return _error(409, str(exc))
        except IngestionTimeoutError as exc:
            return _error(504, str(exc))
        except Exception as exc:
            logger.exception("%s failed", operation)
            return _error(500, str(exc))

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.post("/merge-shards", response_model=None)
    def merge_shards(body: MergeShardsRequest) -> Any:
        def action(warehouse: SQLiteWarehouse) -> Any:
            if not body.pattern:
                raise InputValidationError("Missing or invalid required field: pattern")
            result = ShardMerger(config, store, warehouse).merge_shards(
                prefix=body.prefix, output_prefix=body.outputPrefix, pattern=body.pattern
            )
            return merge_response(result)

        return invoke("merge-shards", action)

    @app.post("/clean-master", response_model=None)
    def clean_master(body: PrefixRequest) -> Any:
        def action(warehouse: SQLiteWarehouse) -> Any:
            result = SnapshotCleaner(config, store, warehouse).clean_prefix(body.prefix)
            if result.is_noop:
                return Response(status_code=204)
            return clean_response(result)

        return invoke("clean-master", action)

    @app.post("/ingest", response_model=None)
    def ingest(body: PrefixRequest) -> Any:
        def action(warehouse: SQLiteWarehouse) -> Any:
            report = IngestionCoordinator(config, store, warehouse).ingest(body.prefix)
            if report.is_noop:
                return Response(status_code=204)
            return ingest_response(report)

        return invoke("ingest", action)

    return app
