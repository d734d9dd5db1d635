"""
Racing Warehouse CLI entry point.

All commands follow this pattern:
  1. Load ``AppConfig`` via ``load_config()``.
  2. Configure logging.
  3. Build the blob store and open the warehouse (schema applied).
  4. Run one pipeline stage.
  5. Report the result to stdout; ``[ERROR]`` and exit code 1 on failure.

Install and run::

    pip install -e .
    racing-warehouse --help
    racing-warehouse init-db
    racing-warehouse scrape --entity horse --start-id 1 --batch-size 1000
    racing-warehouse merge-shards --prefix horse_data/ --output-prefix horse_data/
    racing-warehouse clean-master --prefix horse_data/
    racing-warehouse ingest --prefix horse_data/
    racing-warehouse sweep-staging --max-age-hours 24
    racing-warehouse serve
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Optional

import typer

app = typer.Typer(
    name="racing-warehouse",
    help="Racing Warehouse: scrape, consolidate and incrementally ingest race data.",
    add_completion=False,
)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _load_config_or_exit(config_path: Optional[str] = None):
    """Load AppConfig, printing a friendly error and exiting on failure."""
    from racing_warehouse.config import load_config

    try:
        cfg_path = Path(config_path) if config_path else None
        return load_config(cfg_path)
    except FileNotFoundError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    except Exception as exc:
        typer.echo(f"[ERROR] Config validation failed: {exc}", err=True)
        raise typer.Exit(code=1)


def _configure_logging(config):
    """Set up logging from config."""
    from racing_warehouse.utils.logging import configure_logging
    configure_logging(config.logging, debug=config.debug)


def _run_stage(
    config_path: Optional[str],
    db_path: Optional[str],
    action: Callable[[Any, Any, Any], Any],
) -> Any:
    """Open collaborators, run ``action(config, store, warehouse)``, exit 1 on failure."""
    from racing_warehouse.runtime import build_blob_store, open_warehouse

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    try:
        store = build_blob_store(config.storage)
        with open_warehouse(config, store, db_path=db_path) as warehouse:
            return action(config, store, warehouse)
    except Exception as exc:
        typer.echo(f"[ERROR] {type(exc).__name__}: {exc}", err=True)
        raise typer.Exit(code=1)


_CONFIG_OPTION = typer.Option(None, "--config", help="Path to TOML config file.")
_DB_PATH_OPTION = typer.Option(None, "--db-path", help="Override DB path from config.")


# ── Commands ──────────────────────────────────────────────────────────────────

@app.command("init-db")
def init_db(
    db_path: Optional[str] = _DB_PATH_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Initialize the SQLite warehouse and apply the full schema.

    Safe to run multiple times; all DDL uses IF NOT EXISTS.
    """
    from racing_warehouse.db.connection import get_connection
    from racing_warehouse.db.schema import ALL_TABLE_NAMES, apply_schema

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    target_path = db_path or config.warehouse.db_path
    typer.echo(f"Initializing warehouse at: {target_path}")

    with get_connection(
        target_path,
        wal_mode=config.warehouse.wal_mode,
        busy_timeout_ms=config.warehouse.busy_timeout_ms,
    ) as conn:
        apply_schema(conn)

    typer.echo(f"  Tables: {len(ALL_TABLE_NAMES)} created/verified.")
    typer.echo("[OK] Warehouse ready.")


@app.command("validate-config")
def validate_config(
    config_path: Optional[str] = _CONFIG_OPTION,
    show_full: bool = typer.Option(
        False,
        "--full",
        help="Print full config including all fields.",
    ),
) -> None:
    """Validate the configuration file and print parsed values.

    Exits with code 1 if the config fails validation.
    """
    config = _load_config_or_exit(config_path)

    typer.echo("Configuration validated successfully.")
    typer.echo("")
    typer.echo(f"  Warehouse path:   {config.warehouse.db_path}")
    typer.echo(f"  Blob store:       {config.storage.backend} "
               f"({config.storage.bucket or config.storage.root_dir})")
    typer.echo(f"  Ingest timeout:   {config.pipeline.ingest_timeout_seconds}s")
    typer.echo(f"  Scraper:          {config.scraper.base_url} "
               f"(concurrency={config.scraper.concurrency}, cutoff={config.scraper.miss_cutoff})")
    typer.echo(f"  Log level:        {config.logging.level}")
    typer.echo(f"  Debug mode:       {config.debug}")

    if show_full:
        typer.echo("")
        typer.echo("Full config (JSON):")
        typer.echo(json.dumps(config.model_dump(), indent=2, default=str))

    typer.echo("")
    typer.echo("[OK] Config valid.")


@app.command("scrape")
def scrape(
    entity: str = typer.Option(..., "--entity", help="horse | jockey | trainer | breeder"),
    start_id: int = typer.Option(1, "--start-id", help="First id of the batch."),
    batch_size: Optional[int] = typer.Option(
        None, "--batch-size", help="Ids per batch (default: scraper.default_batch_size)."
    ),
    db_path: Optional[str] = _DB_PATH_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Fetch one id batch from the origin service and write a shard."""
    from racing_warehouse.pipeline.scrape import ScrapeStage

    result = _run_stage(
        config_path, db_path,
        lambda cfg, store, wh: ScrapeStage(cfg, store, wh).scrape_batch(entity, start_id, batch_size),
    )
    typer.echo(
        f"  {result.entity}: fetched={result.fetched} misses={result.misses} "
        f"attempted={result.attempted}/{result.requested}"
        + (" (stopped early)" if result.stopped_early else "")
    )
    if result.shard_file:
        typer.echo(f"  Shard: {result.shard_file}")
        typer.echo("[OK] Scrape complete.")
    else:
        typer.echo("[OK] Nothing found; no shard written.")


@app.command("merge-shards")
def merge_shards(
    prefix: str = typer.Option(..., "--prefix", help="Shard prefix, e.g. horse_data/."),
    output_prefix: Optional[str] = typer.Option(
        None, "--output-prefix", help="Master snapshot prefix (default: --prefix)."
    ),
    pattern: Optional[str] = typer.Option(
        None, "--pattern", help="Shard name regex (default: pipeline.shard_pattern)."
    ),
    delete_shards: bool = typer.Option(
        False, "--delete-shards", help="Delete the merged shards once the master exists."
    ),
    db_path: Optional[str] = _DB_PATH_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Concatenate shards under a prefix into one master snapshot."""
    from racing_warehouse.pipeline.merge_shards import ShardMerger

    def action(cfg, store, wh):
        merger = ShardMerger(cfg, store, wh)
        result = merger.merge_shards(prefix, output_prefix or prefix, pattern)
        deleted = merger.delete_merged_shards(result) if delete_shards and result.master_file else 0
        return result, deleted

    result, deleted = _run_stage(config_path, db_path, action)
    if result.master_file is None:
        typer.echo("[OK] No matching shards; nothing merged.")
        return
    typer.echo(f"  Master: {result.master_file} ({result.merged_count} shards)")
    if deleted:
        typer.echo(f"  Deleted {deleted} merged shard(s).")
    typer.echo("[OK] Merge complete.")


@app.command("clean-master")
def clean_master(
    prefix: str = typer.Option(..., "--prefix", help="Prefix holding master snapshots."),
    db_path: Optional[str] = _DB_PATH_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Validate and deduplicate every uncleaned master snapshot under a prefix."""
    from racing_warehouse.pipeline.clean_master import SnapshotCleaner

    result = _run_stage(
        config_path, db_path,
        lambda cfg, store, wh: SnapshotCleaner(cfg, store, wh).clean_prefix(prefix),
    )
    for r in result.processed:
        typer.echo(
            f"  {r.cleaned_file}: initial={r.initial_count} "
            f"removed={r.removed_count} final={r.final_count}"
        )
    for s in result.skipped:
        typer.echo(f"  {s.master_file}: already cleaned")
    if result.is_noop:
        typer.echo("[OK] Nothing new to clean.")
    else:
        typer.echo(f"[OK] Cleaned {len(result.processed)} snapshot(s).")


@app.command("ingest")
def ingest(
    prefix: str = typer.Option(..., "--prefix", help="Source prefix, e.g. horse_data/."),
    timeout_seconds: Optional[float] = typer.Option(
        None, "--timeout", help="Deadline in seconds (default: pipeline.ingest_timeout_seconds)."
    ),
    db_path: Optional[str] = _DB_PATH_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Ingest cleaned snapshots newer than the watermark into production relations."""
    from racing_warehouse.pipeline.ingest import IngestionCoordinator

    report = _run_stage(
        config_path, db_path,
        lambda cfg, store, wh: IngestionCoordinator(cfg, store, wh).ingest(prefix, timeout_seconds),
    )
    if report.is_noop:
        typer.echo(f"[OK] No new data since {report.last_processed_time.isoformat()}.")
        return
    typer.echo(f"  Files: {len(report.processed_files)}")
    for stats in report.relations:
        typer.echo(
            f"  {stats.relation:<15} in={stats.rows_in} inserted={stats.inserted} "
            f"updated={stats.updated} skipped={stats.skipped}"
        )
    typer.echo(f"  Watermark: {report.last_processed_time.isoformat()}")
    typer.echo("[OK] Ingestion complete.")


@app.command("sweep-staging")
def sweep_staging(
    max_age_hours: Optional[float] = typer.Option(
        None, "--max-age-hours", help="Drop staging older than this (default from config)."
    ),
    db_path: Optional[str] = _DB_PATH_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Drop orphaned staging relations left by failed ingestion runs."""
    from racing_warehouse.pipeline.sweep import StagingSweeper

    result = _run_stage(
        config_path, db_path,
        lambda cfg, store, wh: StagingSweeper(cfg, store, wh).sweep_staging(max_age_hours),
    )
    for name in result.dropped:
        typer.echo(f"  dropped {name}")
    typer.echo(f"[OK] Swept {len(result.dropped)} staging relation(s).")


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind host (default: api.host)."),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port (default: api.port)."),
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Serve the HTTP trigger surface with uvicorn."""
    import uvicorn

    from racing_warehouse.api.app import create_app

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    uvicorn.run(
        create_app(config),
        host=host or config.api.host,
        port=port or config.api.port,
        log_config=None,
    )


# ── Entry point ───────────────────────────────────────────────────────────────

if __name__ == "__main__":
    app()
