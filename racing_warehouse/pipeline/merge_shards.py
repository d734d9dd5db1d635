"""
Shard merge stage: concatenates scraper shards into one master snapshot.

Flow:
  1. List every object under ``prefix``; strip the prefix and keep names
     matching ``pattern`` (regex search); sort lexicographically.
  2. No match → ``MergeResult(master_file=None, merged_count=0)``. Nothing
     is written; the run is recorded as ``skipped``.
  3. Otherwise copy each shard's bytes, in order, into a single new object
     ``<output_prefix>MASTERFILE_<TAG>_<timestamp>.ndjson``. A newline is
     written after any shard body that does not already end with one, so
     records never fuse across shard boundaries. Shard bytes are never
     decoded, so a badly encoded record reaches the master untouched and is
     dropped by the cleaner like any other malformed line.

The master is published only when the writer closes cleanly: a read error on
any shard aborts the merge and nothing is left under the master's key.
Shards are never modified. Deleting them is a separate, explicit step
(``delete_merged_shards``).
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

from racing_warehouse.errors import InputValidationError
from racing_warehouse.models.meta import RunMetadata
from racing_warehouse.models.results import MergeResult
from racing_warehouse.pipeline.base import PipelineStage
from racing_warehouse.storage.naming import NDJSON_CONTENT_TYPE, master_key
from racing_warehouse.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

_CHUNK_BYTES = 64 * 1024


class ShardMerger(PipelineStage):
    """Merge shards under a prefix into one master snapshot."""

    stage_name = "merge_shards"

    def merge_shards(
        self, prefix: str, output_prefix: str, pattern: Optional[str] = None
    ) -> MergeResult:
        """Audited entry point; see module docstring."""
        return self.run(
            prefix=prefix,
            output_prefix=output_prefix,
            pattern=pattern or self.config.pipeline.shard_pattern,
        )

    def _execute(  # type: ignore[override]
        self,
        run: RunMetadata,
        prefix: str,
        output_prefix: str,
        pattern: str,
        **kwargs: Any,
    ) -> MergeResult:
        _require_prefix("prefix", prefix)
        _require_prefix("output_prefix", output_prefix)
        try:
            re.compile(pattern)
        except re.error as exc:
            raise InputValidationError(f"Invalid shard pattern {pattern!r}: {exc}") from exc

        shard_keys = self.blob_store.list_keys(prefix, pattern)
        if not shard_keys:
            logger.info("No shards under %s match %s; nothing to merge.", prefix, pattern)
            return MergeResult(master_file=None, merged_count=0)

        target = master_key(output_prefix, utcnow())
        logger.info("Merging %d shards from %s into %s", len(shard_keys), prefix, target)

        with self.blob_store.open_write(
            target, content_type=NDJSON_CONTENT_TYPE, binary=True
        ) as out:
            for key in shard_keys:
                self._copy_shard(key, out)

        logger.info("Master snapshot written: %s (%d shards)", target, len(shard_keys))
        return MergeResult(
            master_file=target, merged_count=len(shard_keys), shard_keys=shard_keys
        )

    def _copy_shard(self, key: str, out: Any) -> None:
        last_byte = b""
        with self.blob_store.open_read(key, binary=True) as src:
            while True:
                chunk = src.read(_CHUNK_BYTES)
                if not chunk:
                    break
                out.write(chunk)
                last_byte = chunk[-1:]
        if last_byte and last_byte != b"\n":
            out.write(b"\n")

    def delete_merged_shards(self, result: MergeResult) -> int:
        """Delete the shards consumed by ``result``. Never called implicitly.

        Returns:
            Number of shards deleted.
        """
        if result.master_file is None or not self.blob_store.exists(result.master_file):
            raise InputValidationError(
                "Refusing to delete shards: the master snapshot does not exist."
            )
        for key in result.shard_keys:
            self.blob_store.delete(key)
        logger.info("Deleted %d merged shards", len(result.shard_keys))
        return len(result.shard_keys)


def _require_prefix(name: str, value: Any) -> None:
    if not isinstance(value, str) or not value.strip():
        raise InputValidationError(f"Missing or invalid required field: {name}")
