"""
Snapshot cleaning stage: validates and deduplicates master snapshots.

For each master snapshot ``<dir>MASTERFILE_*.ndjson`` the cleaned snapshot is
``<dir>CLEANED_MASTERFILE_*.ndjson``. Its existence is the completion marker:
if it exists the master is skipped without being read, so repeated
invocations are cheap and never rewrite a cleaned snapshot.

Line rules:
  - Every line counts toward ``initial_count``, blank ones included.
  - A line is removed if it is not valid UTF-8, is not valid JSON (a blank
    line is not), is not a JSON object, or contains ``NaN`` / ``Infinity``
    (not representable in strict JSON).
  - A line is removed if its canonical form was already seen in this run.

Canonical form: ``json.dumps(obj, sort_keys=True, separators=(",", ":"),
ensure_ascii=False)``. Key order and insignificant whitespace therefore do
not defeat deduplication. The canonical form is what is written, in
first-seen order.

A master with zero surviving records still produces an (empty) cleaned
snapshot so the completion marker exists on retry.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Union

from racing_warehouse.errors import InputValidationError
from racing_warehouse.models.meta import RunMetadata
from racing_warehouse.models.results import CleanPrefixResult, CleanResult, CleanSkipped
from racing_warehouse.pipeline.base import PipelineStage
from racing_warehouse.storage.blob_store import iter_byte_lines
from racing_warehouse.storage.naming import (
    NDJSON_CONTENT_TYPE,
    cleaned_key_for,
    is_master_key,
    split_key,
)

logger = logging.getLogger(__name__)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Non-finite number {name} is not valid JSON")


def canonicalize_line(line: str) -> Optional[str]:
    """Return the canonical form of one NDJSON line, or ``None`` if invalid.

    Example::

        canonicalize_line('{"b": 2, "a": 1}')   # → '{"a":1,"b":2}'
        canonicalize_line('not json')           # → None
        canonicalize_line('[1, 2]')             # → None (not an object)
    """
    try:
        value = json.loads(line, parse_constant=_reject_constant)
    except ValueError:
        return None
    if not isinstance(value, dict):
        return None
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class SnapshotCleaner(PipelineStage):
    """Clean master snapshots under a prefix."""

    stage_name = "clean_master"

    def clean_prefix(self, prefix: str) -> CleanPrefixResult:
        """Audited entry point: clean every uncleaned master under ``prefix``."""
        return self.run(prefix=prefix)

    def _execute(  # type: ignore[override]
        self, run: RunMetadata, prefix: str, **kwargs: Any
    ) -> CleanPrefixResult:
        if not isinstance(prefix, str) or not prefix.strip():
            raise InputValidationError("Missing or invalid required field: prefix")

        masters = [k for k in self.blob_store.list_keys(prefix) if is_master_key(k)]
        logger.info("Found %d master snapshot(s) under %s", len(masters), prefix)

        processed: list[CleanResult] = []
        skipped: list[CleanSkipped] = []
        for key in masters:
            outcome = self.clean_master(key)
            if isinstance(outcome, CleanSkipped):
                skipped.append(outcome)
            else:
                processed.append(outcome)

        return CleanPrefixResult(prefix=prefix, processed=processed, skipped=skipped)

    def clean_master(self, master_key: str) -> Union[CleanResult, CleanSkipped]:
        """Clean one master snapshot (idempotent).

        Returns:
            ``CleanSkipped`` if the cleaned snapshot already exists, else the
            counts for the newly written cleaned snapshot.

        Raises:
            InputValidationError: If ``master_key`` is not a master snapshot name.
            BlobStoreError: On read or write failure (nothing is published).
        """
        if not is_master_key(master_key):
            raise InputValidationError(
                f"'{split_key(master_key)[1]}' is not a MASTERFILE_*.ndjson snapshot."
            )

        cleaned_key = cleaned_key_for(master_key)
        if self.blob_store.exists(cleaned_key):
            logger.info("Skipping %s: %s already exists", master_key, cleaned_key)
            return CleanSkipped(master_file=master_key, cleaned_file=cleaned_key)

        seen: set[str] = set()
        initial = removed = 0

        with self.blob_store.open_read(master_key, binary=True) as src, self.blob_store.open_write(
            cleaned_key, content_type=NDJSON_CONTENT_TYPE
        ) as out:
            for raw in iter_byte_lines(src):
                initial += 1
                try:
                    canonical = canonicalize_line(raw.decode("utf-8"))
                except UnicodeDecodeError:
                    canonical = None
                if canonical is None:
                    logger.debug("%s line %d is malformed; dropped", master_key, initial)
                if canonical is None or canonical in seen:
                    removed += 1
                    continue
                seen.add(canonical)
                out.write(canonical + "\n")

        created_at = self.blob_store.metadata(cleaned_key).created_at
        result = CleanResult(
            master_file=master_key,
            cleaned_file=cleaned_key,
            initial_count=initial,
            removed_count=removed,
            final_count=initial - removed,
            cleaned_created_at=created_at,
        )
        logger.info(
            "Cleaned %s → %s | initial=%d removed=%d final=%d",
            master_key, cleaned_key, initial, removed, result.final_count,
        )
        return result
