"""
Exception hierarchy for the racing warehouse.

Each layer raises its own error type so callers (CLI, HTTP trigger surface)
can map failures to exit codes and status codes without string matching:

  InputValidationError   bad caller input, raised before any side effect
  BlobStoreError         object read/write/list failures
  WarehouseError         SQL, load, or relation management failures
  IngestionError         unrecoverable ingestion run failure
  IngestionTimeoutError  caller deadline exceeded during an ingestion run
  LeaseUnavailableError  another run holds the per-source lease
  ScrapeError            upstream scraper failures
"""

from __future__ import annotations


class RacingWarehouseError(Exception):
    """Base exception for all racing warehouse failures."""


class InputValidationError(RacingWarehouseError):
    """Raised for missing or invalid caller input."""


class BlobStoreError(RacingWarehouseError):
    """Raised when a blob store operation fails."""


class WarehouseError(RacingWarehouseError):
    """Raised when a warehouse statement, load, or drop fails."""


class IngestionError(RacingWarehouseError):
    """Raised when an ingestion run fails and must be retried by the caller."""


class IngestionTimeoutError(IngestionError):
    """Raised when an ingestion run exceeds its caller-supplied deadline."""


class LeaseUnavailableError(IngestionError):
    """Raised when the ingestion lease for a source is held by another run."""


class ScrapeError(RacingWarehouseError):
    """Raised for invalid scrape requests or shard write failures."""
