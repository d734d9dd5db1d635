"""
Declarative registry of sources, staging schemas and production relations.

Every merge is described by an ``UpsertSpec`` (key columns, update columns,
column types) consumed by the single generic executor in
``warehouse.upsert``; no relation has hand-written merge SQL.

Source prefixes map to an ordered tuple of relations. The order is the merge
order: parents before children (``horses`` → ``horse_careers``/``races`` →
``race_records``), because child tables carry enforced foreign keys.

Column types drive value coercion in ``pipeline.flatten`` so that the values
written are type-stable across runs (``"12"`` and ``12`` never both appear
for the same column), which is what makes an identical re-merge a no-op:

  INTEGER  → int (bools become 0/1)
  REAL     → float
  TEXT     → str
  JSON     → canonical JSON text (sorted keys, compact separators)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from uuid import uuid4

from racing_warehouse.errors import InputValidationError
from racing_warehouse.utils.time_utils import parse_staging_timestamp, staging_timestamp

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Column types recognised by the flattener's coercion step.
INTEGER = "INTEGER"
REAL = "REAL"
TEXT = "TEXT"
JSON = "JSON"

UNKNOWN_RACE_TYPE = "UNKNOWN"


def validate_identifier(name: str) -> str:
    """Return ``name`` if it is a safe SQL identifier.

    Raises:
        InputValidationError: If ``name`` contains anything but letters,
            digits and underscores (or starts with a digit).
    """
    if not IDENTIFIER_RE.match(name):
        raise InputValidationError(f"Invalid SQL identifier: {name!r}")
    return name


@dataclass(frozen=True)
class UpsertSpec:
    """Merge specification for one production relation.

    Attributes:
        relation: Target table name.
        key_columns: Natural or surrogate key (the ``ON CONFLICT`` target).
        update_columns: Columns overwritten on match.
        column_types: Type of every key and update column.
        required_columns: Columns that must be non-null for a row to be
            merged (key columns plus any NOT NULL foreign keys).
    """

    relation: str
    key_columns: tuple[str, ...]
    update_columns: tuple[str, ...]
    column_types: dict[str, str] = field(default_factory=dict)
    required_columns: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for name in (self.relation, *self.key_columns, *self.update_columns):
            validate_identifier(name)
        missing = set(self.columns) - set(self.column_types)
        if missing:
            raise ValueError(f"{self.relation}: no type declared for {sorted(missing)}")
        if not self.required_columns:
            object.__setattr__(self, "required_columns", self.key_columns)

    @property
    def columns(self) -> tuple[str, ...]:
        """Insert column list: key columns then update columns."""
        return self.key_columns + self.update_columns


@dataclass(frozen=True)
class SourceSpec:
    """One logical source (blob prefix) and what it feeds.

    Attributes:
        prefix: Blob prefix, e.g. ``"horse_data/"``.
        key_column: Record key in the source's snapshots.
        staging_columns: Declared staging schema as ``(name, type)`` pairs.
            ``JSON`` columns hold nested arrays encoded as JSON text.
        relations: Production relation names in merge order.
    """

    prefix: str
    key_column: str
    staging_columns: tuple[tuple[str, str], ...]
    relations: tuple[str, ...]

    @property
    def tag(self) -> str:
        """Short lowercase tag used in staging relation names."""
        return self.prefix.rstrip("/").replace("_", "").lower()


# ── Production relations ──────────────────────────────────────────────────────

BREEDERS = UpsertSpec(
    relation="breeders",
    key_columns=("breeder_id",),
    update_columns=("name", "city"),
    column_types={"breeder_id": INTEGER, "name": TEXT, "city": TEXT},
)

_PERSON_TYPES = {"first_name": TEXT, "last_name": TEXT, "licence_country": TEXT}

JOCKEYS = UpsertSpec(
    relation="jockeys",
    key_columns=("jockey_id",),
    update_columns=("first_name", "last_name", "licence_country"),
    column_types={"jockey_id": INTEGER, **_PERSON_TYPES},
)

TRAINERS = UpsertSpec(
    relation="trainers",
    key_columns=("trainer_id",),
    update_columns=("first_name", "last_name", "licence_country"),
    column_types={"trainer_id": INTEGER, **_PERSON_TYPES},
)

HORSES = UpsertSpec(
    relation="horses",
    key_columns=("horse_id",),
    update_columns=(
        "horse_name", "horse_country", "birth_year", "horse_sex", "breed",
        "mother_id", "father_id", "trainer_id", "breeder_id",
        "color_name_pl", "color_name_en", "polish_breeding", "foreign_training",
        "owner_name",
    ),
    column_types={
        "horse_id": INTEGER,
        "horse_name": TEXT,
        "horse_country": TEXT,
        "birth_year": INTEGER,
        "horse_sex": TEXT,
        "breed": TEXT,
        "mother_id": INTEGER,
        "father_id": INTEGER,
        "trainer_id": INTEGER,
        "breeder_id": INTEGER,
        "color_name_pl": TEXT,
        "color_name_en": TEXT,
        "polish_breeding": INTEGER,
        "foreign_training": INTEGER,
        "owner_name": TEXT,
    },
)

HORSE_CAREERS = UpsertSpec(
    relation="horse_careers",
    key_columns=("horse_id", "race_year", "race_type"),
    update_columns=(
        "horse_age", "race_count", "race_won_count", "race_prize_count",
        "prize_amounts", "prize_currencies",
    ),
    column_types={
        "horse_id": INTEGER,
        "race_year": INTEGER,
        "race_type": TEXT,
        "horse_age": INTEGER,
        "race_count": INTEGER,
        "race_won_count": INTEGER,
        "race_prize_count": INTEGER,
        "prize_amounts": REAL,
        "prize_currencies": TEXT,
    },
)

RACES = UpsertSpec(
    relation="races",
    key_columns=("race_id",),
    update_columns=(
        "race_number", "race_name", "race_date", "currency_code", "currency_symbol",
        "duration_ms", "track_distance_m", "temperature_c", "weather", "race_group",
        "subtype", "category_id", "category_breed", "category_name", "country_code",
        "city_name", "track_type", "video_url", "race_rules", "payments", "race_style",
    ),
    column_types={
        "race_id": INTEGER,
        "race_number": INTEGER,
        "race_name": TEXT,
        "race_date": TEXT,
        "currency_code": TEXT,
        "currency_symbol": TEXT,
        "duration_ms": INTEGER,
        "track_distance_m": INTEGER,
        "temperature_c": REAL,
        "weather": TEXT,
        "race_group": TEXT,
        "subtype": TEXT,
        "category_id": INTEGER,
        "category_breed": TEXT,
        "category_name": TEXT,
        "country_code": TEXT,
        "city_name": TEXT,
        "track_type": TEXT,
        "video_url": TEXT,
        "race_rules": JSON,
        "payments": JSON,
        "race_style": TEXT,
    },
)

RACE_RECORDS = UpsertSpec(
    relation="race_records",
    key_columns=("race_record_id",),
    update_columns=(
        "race_id", "horse_id", "start_order", "finish_place", "jockey_weight_kg",
        "prize_amount", "prize_currency", "jockey_id", "trainer_id",
    ),
    column_types={
        "race_record_id": TEXT,
        "race_id": INTEGER,
        "horse_id": INTEGER,
        "start_order": INTEGER,
        "finish_place": TEXT,
        "jockey_weight_kg": REAL,
        "prize_amount": REAL,
        "prize_currency": TEXT,
        "jockey_id": INTEGER,
        "trainer_id": INTEGER,
    },
    required_columns=("race_record_id", "race_id", "horse_id"),
)

RELATIONS: dict[str, UpsertSpec] = {
    spec.relation: spec
    for spec in (BREEDERS, JOCKEYS, TRAINERS, HORSES, HORSE_CAREERS, RACES, RACE_RECORDS)
}


# ── Sources ───────────────────────────────────────────────────────────────────

def _flat_staging(spec: UpsertSpec) -> tuple[tuple[str, str], ...]:
    return tuple((c, spec.column_types[c]) for c in spec.columns)


SOURCES: dict[str, SourceSpec] = {
    "breeder_data/": SourceSpec(
        prefix="breeder_data/",
        key_column="breeder_id",
        staging_columns=_flat_staging(BREEDERS),
        relations=("breeders",),
    ),
    "jockey_data/": SourceSpec(
        prefix="jockey_data/",
        key_column="jockey_id",
        staging_columns=_flat_staging(JOCKEYS),
        relations=("jockeys",),
    ),
    "trainer_data/": SourceSpec(
        prefix="trainer_data/",
        key_column="trainer_id",
        staging_columns=_flat_staging(TRAINERS),
        relations=("trainers",),
    ),
    "horse_data/": SourceSpec(
        prefix="horse_data/",
        key_column="horse_id",
        staging_columns=_flat_staging(HORSES) + (("career", JSON), ("races", JSON)),
        relations=("horses", "horse_careers", "races", "race_records"),
    ),
}


def get_source(prefix: str) -> SourceSpec:
    """Look up a source by blob prefix.

    Raises:
        InputValidationError: If ``prefix`` is not a known source.
    """
    try:
        return SOURCES[prefix]
    except KeyError:
        raise InputValidationError(
            f"Unknown source prefix '{prefix}'. Must be one of {sorted(SOURCES)}."
        ) from None


# ── Staging relation names ────────────────────────────────────────────────────

STAGING_PREFIX = "stg_"
_STAGING_NAME_RE = re.compile(r"^stg_([a-z0-9]+)_(\d{8}T\d{6}Z)_([0-9a-f]{8})$")


def staging_relation_name(source: SourceSpec, created_at: datetime) -> str:
    """Return a fresh staging relation name: ``stg_<tag>_<yyyymmddThhmmssZ>_<8 hex>``.

    The random suffix keeps two runs started in the same second apart.
    """
    return f"{STAGING_PREFIX}{source.tag}_{staging_timestamp(created_at)}_{uuid4().hex[:8]}"


def parse_staging_relation(name: str) -> Optional[datetime]:
    """Return the creation time embedded in a staging relation name.

    Returns:
        Aware UTC datetime, or ``None`` if ``name`` is not a staging relation.
    """
    match = _STAGING_NAME_RE.match(name)
    if match is None:
        return None
    try:
        return parse_staging_timestamp(match.group(2))
    except ValueError:
        return None
