"""
Application configuration management.

Load order (each layer overrides the previous):
  1. ``config/default.toml``      committed static defaults
  2. ``config/local.toml``        optional local overrides (gitignored)
  3. ``.env``                     local secrets and env overrides (gitignored)
  4. Environment variables        ``RACING_WAREHOUSE_*`` prefix

Entry point: ``load_config(config_path=None) -> AppConfig``

Pipeline stages, the CLI and the HTTP trigger surface all receive an
``AppConfig`` instance, never raw dicts or scattered env var lookups.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

# ── Sub-config models ─────────────────────────────────────────────────────────

VALID_STORAGE_BACKENDS = frozenset({"local", "s3"})


class StorageConfig(BaseModel):
    """Blob store selection and location."""

    model_config = ConfigDict(frozen=True)

    backend: str = "local"
    root_dir: str = "data/blobs"
    bucket: Optional[str] = None
    s3_profile: Optional[str] = None
    s3_region: Optional[str] = None

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v not in VALID_STORAGE_BACKENDS:
            raise ValueError(
                f"Unknown storage backend '{v}'. Must be one of {sorted(VALID_STORAGE_BACKENDS)}."
            )
        return v


class WarehouseConfig(BaseModel):
    """SQLite warehouse connection settings."""

    model_config = ConfigDict(frozen=True)

    db_path: str = "data/db/racing_warehouse.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    load_batch_size: int = 500


class PipelineConfig(BaseModel):
    """Shard merge, cleaning and ingestion parameters.

    The ingestion lease is taken once and never renewed, so every ingest must
    be bounded by a timeout shorter than ``lease_ttl_seconds``.
    """

    model_config = ConfigDict(frozen=True)

    shard_pattern: str = r"^shard_.*\.ndjson$"
    metadata_concurrency: int = 8
    ingest_timeout_seconds: float = 900.0
    lease_ttl_seconds: int = 1800
    staging_max_age_hours: float = 24.0

    @field_validator("metadata_concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"metadata_concurrency must be >= 1, got {v}.")
        return v

    @model_validator(mode="after")
    def validate_timeout_within_lease(self) -> "PipelineConfig":
        if self.ingest_timeout_seconds <= 0:
            raise ValueError("ingest_timeout_seconds must be a positive number of seconds.")
        if self.ingest_timeout_seconds >= self.lease_ttl_seconds:
            raise ValueError(
                f"ingest_timeout_seconds ({self.ingest_timeout_seconds}) must be < "
                f"lease_ttl_seconds ({self.lease_ttl_seconds})."
            )
        return self


class ScraperConfig(BaseModel):
    """Upstream scraper settings.

    ``miss_cutoff`` is the number of most recently *completed* fetches that
    must all be not-found before the scraper stops dispatching new ids.
    """

    model_config = ConfigDict(frozen=True)

    base_url: str = "https://homas.pkwk.org/homas/race/search"
    concurrency: int = 10
    miss_cutoff: int = 10
    request_timeout_seconds: float = 30.0
    default_batch_size: int = 1000

    @field_validator("concurrency", "miss_cutoff", "default_batch_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Value must be >= 1, got {v}.")
        return v


class ApiConfig(BaseModel):
    """HTTP trigger surface bind settings."""

    model_config = ConfigDict(frozen=True)

    host: str = "127.0.0.1"
    port: int = 8080


class LoggingConfig(BaseModel):
    """Logging output settings."""

    model_config = ConfigDict(frozen=True)

    level: str = "INFO"
    log_file: str = "data/logs/racing_warehouse.log"
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"Log level must be one of {sorted(valid)}, got '{v}'.")
        return v.upper()


class AppConfig(BaseModel):
    """Complete application configuration.

    It is constructed by ``load_config()`` which merges TOML + .env.
    """

    model_config = ConfigDict(frozen=True)

    storage: StorageConfig = StorageConfig()
    warehouse: WarehouseConfig = WarehouseConfig()
    pipeline: PipelineConfig = PipelineConfig()
    scraper: ScraperConfig = ScraperConfig()
    api: ApiConfig = ApiConfig()
    logging: LoggingConfig = LoggingConfig()
    debug: bool = False


# ── Loader ────────────────────────────────────────────────────────────────────

_PROJECT_ROOT = Path(__file__).parent.parent


def _find_project_root() -> Path:
    """Walk up from this file to find the project root (contains pyproject.toml)."""
    candidate = Path(__file__).parent
    for _ in range(5):
        if (candidate / "pyproject.toml").exists():
            return candidate
        candidate = candidate.parent
    return _PROJECT_ROOT


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load and merge application configuration.

    Args:
        config_path: Explicit path to a TOML config file. Defaults to
            ``<project_root>/config/default.toml``.

    Returns:
        Fully validated ``AppConfig`` instance.

    Raises:
        FileNotFoundError: If the specified ``config_path`` does not exist.
        pydantic.ValidationError: If merged config values fail validation.
    """
    root = _find_project_root()

    # 1. Load .env file (silently skip if missing)
    load_dotenv(dotenv_path=root / ".env", override=False)

    # 2. Load TOML config
    if config_path is None:
        config_path = root / "config" / "default.toml"

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}\n"
            "Create config/default.toml or pass --config."
        )

    with open(config_path, "rb") as f:
        raw: dict[str, Any] = tomllib.load(f)

    local_config_path = config_path.parent / "local.toml"
    if local_config_path.exists():
        with open(local_config_path, "rb") as f:
            local_raw: dict[str, Any] = tomllib.load(f)
        raw = _deep_merge(raw, local_raw)

    # 3. Apply RACING_WAREHOUSE_* environment variable overrides
    raw = _apply_env_overrides(raw)

    # 4. Build and validate AppConfig
    return _build_app_config(raw)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into ``base``."""
    result = dict(base)
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Apply RACING_WAREHOUSE_* env vars to the raw config dict.

    Supported overrides:
      RACING_WAREHOUSE_DB_PATH    → raw["warehouse"]["db_path"]
      RACING_WAREHOUSE_BLOB_ROOT  → raw["storage"]["root_dir"]
      RACING_WAREHOUSE_BUCKET     → raw["storage"]["bucket"] (and backend = "s3")
      RACING_WAREHOUSE_LOG_LEVEL  → raw["logging"]["level"]
      RACING_WAREHOUSE_DEBUG      → raw["debug"]
    """
    if db_path := os.environ.get("RACING_WAREHOUSE_DB_PATH"):
        raw.setdefault("warehouse", {})["db_path"] = db_path

    if blob_root := os.environ.get("RACING_WAREHOUSE_BLOB_ROOT"):
        raw.setdefault("storage", {})["root_dir"] = blob_root

    if bucket := os.environ.get("RACING_WAREHOUSE_BUCKET"):
        storage = raw.setdefault("storage", {})
        storage["bucket"] = bucket
        storage["backend"] = "s3"

    if log_level := os.environ.get("RACING_WAREHOUSE_LOG_LEVEL"):
        raw.setdefault("logging", {})["level"] = log_level

    if debug := os.environ.get("RACING_WAREHOUSE_DEBUG"):
        raw["debug"] = debug.lower() in ("1", "true", "yes")

    return raw


def _build_app_config(raw: dict[str, Any]) -> AppConfig:
    """Map raw TOML dict to ``AppConfig`` model structure."""
    project = raw.pop("project", {})

    return AppConfig(
        storage=StorageConfig(**raw.get("storage", {})),
        warehouse=WarehouseConfig(**raw.get("warehouse", {})),
        pipeline=PipelineConfig(**raw.get("pipeline", {})),
        scraper=ScraperConfig(**raw.get("scraper", {})),
        api=ApiConfig(**raw.get("api", {})),
        logging=LoggingConfig(**raw.get("logging", {})),
        debug=raw.get("debug", project.get("debug", False)),
    )
