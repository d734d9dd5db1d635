"""
Flatten staged source rows into per-relation row streams.

Pure functions: no warehouse or blob store access. The ingestion coordinator
reads staging rows, hands them to ``project()``, and merges each returned
``RelationRows`` with the generic upsert executor.

Rules applied to every relation:
  - Values are coerced to the relation's declared column type
    (see ``warehouse.relations``) before anything else.
  - Rows with a null required column (key columns, and the foreign keys of
    ``race_records``) are skipped and counted.
  - Within one run a later row with the same key replaces an earlier one;
    output order is first-seen key order.

Horse snapshots are one-to-many: each staged horse row yields one
``horses`` row, one ``horse_careers`` row per career entry, and one
``races`` plus one ``race_records`` row per race participation. Nested rows
carry the parent ``horse_id``. A career entry without a race type is
stored under ``race_type = 'UNKNOWN'``.

``race_record_id`` is a deterministic surrogate key: the SHA-256 hex digest
of the compact JSON array ``[horse_id, race_id, start_order]`` computed
after type coercion, so the same participation always maps to the same row.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from racing_warehouse.warehouse.relations import (
    INTEGER,
    JSON,
    REAL,
    RELATIONS,
    TEXT,
    UNKNOWN_RACE_TYPE,
    SourceSpec,
    UpsertSpec,
)
from racing_warehouse.warehouse.sqlite_warehouse import canonical_json

logger = logging.getLogger(__name__)


@dataclass
class RelationRows:
    """Projected, key-collapsed rows for one relation.

    Attributes:
        spec: The relation's merge specification.
        rows_in: Rows projected before skipping and collapsing.
        skipped: Rows dropped for a null required column.
        rows: Unique-key rows, keyed by the key tuple, first-seen order.
    """

    spec: UpsertSpec
    rows_in: int = 0
    skipped: int = 0
    rows: dict[tuple[Any, ...], dict[str, Any]] = field(default_factory=dict)

    def add(self, raw: Mapping[str, Any]) -> None:
        """Coerce, validate and collapse one projected row."""
        self.rows_in += 1
        row = coerce_row(self.spec, raw)
        if any(row.get(c) is None for c in self.spec.required_columns):
            self.skipped += 1
            return
        key = tuple(row[c] for c in self.spec.key_columns)
        # Existing key: keeps its first-seen position, takes the later values.
        self.rows[key] = row

    def values(self) -> list[dict[str, Any]]:
        return list(self.rows.values())


# ── Coercion ──────────────────────────────────────────────────────────────────

def coerce_value(value: Any, column_type: str) -> Any:
    """Coerce one value to ``column_type``; ``None`` passes through.

    Values that cannot be converted are kept as-is rather than dropped, so
    unexpected source data is stored and visible instead of silently lost.
    """
    if value is None:
        return None

    if column_type == JSON:
        if isinstance(value, str):
            try:
                return canonical_json(json.loads(value))
            except ValueError:
                return value
        return canonical_json(value)

    if isinstance(value, (dict, list)):
        return canonical_json(value)

    if column_type == INTEGER:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, float) and math.isfinite(value) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            text = value.strip()
            if text.lstrip("-").isdigit():
                return int(text)
        return value

    if column_type == REAL:
        if isinstance(value, bool):
            return float(value)
        if isinstance(value, int):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value.strip().replace(",", "."))
            except ValueError:
                return value
        return value

    if column_type == TEXT:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return value if isinstance(value, str) else str(value)

    return value


def coerce_row(spec: UpsertSpec, raw: Mapping[str, Any]) -> dict[str, Any]:
    """Project ``raw`` onto ``spec.columns`` with type coercion."""
    return {c: coerce_value(raw.get(c), spec.column_types[c]) for c in spec.columns}


# ── Surrogate keys ────────────────────────────────────────────────────────────

def race_record_id(horse_id: Any, race_id: Any, start_order: Any) -> str:
    """Deterministic surrogate key for one race participation."""
    payload = json.dumps([horse_id, race_id, start_order], separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# ── Projection ────────────────────────────────────────────────────────────────

def _nested(value: Any) -> list[dict[str, Any]]:
    """Decode a staged nested-array column into a list of objects."""
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            logger.warning("Ignoring undecodable nested column value: %.80s", value)
            return []
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _project_career(horse_id: Any, entry: Mapping[str, Any]) -> dict[str, Any]:
    row = dict(entry)
    row["horse_id"] = horse_id
    if row.get("race_type") in (None, ""):
        row["race_type"] = UNKNOWN_RACE_TYPE
    return row


def _project_race_record(horse_id: Any, entry: Mapping[str, Any]) -> dict[str, Any]:
    types = RELATIONS["race_records"].column_types
    race_id = coerce_value(entry.get("race_id"), types["race_id"])
    start_order = coerce_value(entry.get("start_order"), types["start_order"])
    row = dict(entry)
    row["horse_id"] = horse_id
    row["race_id"] = race_id
    row["start_order"] = start_order
    if race_id is not None and horse_id is not None:
        row["race_record_id"] = race_record_id(horse_id, race_id, start_order)
    else:
        row["race_record_id"] = None
    return row


def _project_race(entry: Mapping[str, Any]) -> dict[str, Any]:
    row = dict(entry)
    if row.get("currency_code") is None:
        row["currency_code"] = entry.get("prize_currency")
    return row


def project(source: SourceSpec, staged_rows: Iterable[Mapping[str, Any]]) -> list[RelationRows]:
    """Flatten staged rows of ``source`` into row streams, in merge order.

    Args:
        source: Source specification (defines the target relations).
        staged_rows: Staging rows in load order (lineage columns ignored).

    Returns:
        One ``RelationRows`` per relation of ``source``, in merge order.
    """
    streams = {name: RelationRows(spec=RELATIONS[name]) for name in source.relations}

    for staged in staged_rows:
        if source.prefix != "horse_data/":
            streams[source.relations[0]].add(staged)
            continue

        streams["horses"].add(staged)
        horse_id = coerce_value(staged.get("horse_id"), INTEGER)

        for entry in _nested(staged.get("career")):
            streams["horse_careers"].add(_project_career(horse_id, entry))

        for entry in _nested(staged.get("races")):
            streams["races"].add(_project_race(entry))
            streams["race_records"].add(_project_race_record(horse_id, entry))

    result = [streams[name] for name in source.relations]
    for stream in result:
        logger.debug(
            "Projected %s: rows_in=%d unique=%d skipped=%d",
            stream.spec.relation, stream.rows_in, len(stream.rows), stream.skipped,
        )
    return result
