"""
Object naming conventions shared by every pipeline stage.

These names are the interface between stages (scraper → merger → cleaner →
ingestion) and between runs, so they must be preserved exactly::

    <prefix>shard_<startId>_<endId>_<YYYY_MM_DD_hh:mm:ss>.ndjson
    <outputPrefix>MASTERFILE_<TAG>_<2025-06-01T10_15_30_123Z>.ndjson
    <dir>CLEANED_<masterFileName>

All payloads are newline-delimited JSON (``application/x-ndjson``).
"""

from __future__ import annotations

import re
from datetime import datetime

from racing_warehouse.utils.time_utils import master_timestamp, shard_timestamp

NDJSON_CONTENT_TYPE = "application/x-ndjson"
NDJSON_SUFFIX = ".ndjson"
CLEANED_PREFIX = "CLEANED_"

DEFAULT_SHARD_PATTERN = r"^shard_.*\.ndjson$"
MASTER_NAME_RE = re.compile(r"^MASTERFILE_.*\.ndjson$")


def split_key(key: str) -> tuple[str, str]:
    """Split an object key into ``(directory_with_trailing_slash, basename)``.

    Example::

        split_key("horse_data/MASTERFILE_X.ndjson")
        # → ("horse_data/", "MASTERFILE_X.ndjson")
    """
    directory, _, basename = key.rpartition("/")
    return (f"{directory}/" if directory else ""), basename


def shard_key(prefix: str, start_id: int, end_id: int, fetched_at: datetime) -> str:
    """Build the object key for one scraper shard."""
    return f"{prefix}shard_{start_id}_{end_id}_{shard_timestamp(fetched_at)}{NDJSON_SUFFIX}"


def master_tag(output_prefix: str) -> str:
    """Derive the logical source tag from an output prefix.

    The trailing slash and all underscores are removed, then upper-cased:
    ``"horse_data/"`` → ``"HORSEDATA"``.
    """
    return output_prefix.rstrip("/").replace("_", "").upper()


def master_key(output_prefix: str, created_at: datetime) -> str:
    """Build the object key for a master snapshot."""
    tag = master_tag(output_prefix)
    return f"{output_prefix}MASTERFILE_{tag}_{master_timestamp(created_at)}{NDJSON_SUFFIX}"


def is_master_key(key: str) -> bool:
    """Return ``True`` if ``key``'s basename is a (not yet cleaned) master snapshot."""
    return bool(MASTER_NAME_RE.match(split_key(key)[1]))


def cleaned_key_for(master: str) -> str:
    """Derive the cleaned snapshot key from a master snapshot key.

    The cleaned object lives next to its master: ``<dir>CLEANED_<fileName>``.
    """
    directory, basename = split_key(master)
    return f"{directory}{CLEANED_PREFIX}{basename}"


def is_cleaned_key(key: str, prefix: str) -> bool:
    """Return ``True`` if ``key`` is a cleaned snapshot directly under ``prefix``."""
    return key.startswith(prefix + CLEANED_PREFIX) and key.endswith(NDJSON_SUFFIX)
