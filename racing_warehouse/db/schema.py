"""
SQLite schema DDL: all CREATE TABLE and CREATE INDEX statements.

All statements use ``IF NOT EXISTS`` so ``apply_schema()`` is **idempotent**:
safe to call on an already-initialized database (e.g. after restart or in tests).

Table creation order respects foreign key dependencies:
  1. breeders             (no FKs)
  2. jockeys              (no FKs)
  3. trainers             (no FKs)
  4. horses               (soft references to trainers, breeders, horses)
  5. horse_careers        (→ horses)
  6. races                (no FKs)
  7. race_records         (→ races, horses)
  8. ingestion_metadata   (watermarks, no FKs)
  9. ingestion_leases     (per-source mutual exclusion, no FKs)
  10. run_metadata        (pipeline audit log, no FKs)

Production tables are written only by the staging → merge path. Every
production row carries ``created_date`` / ``last_updated_date`` bookkeeping
columns set by the upsert executor (not by column defaults), so a merge that
changes nothing leaves them untouched.

Staging relations (``stg_*``) are not part of this schema: they are created
and dropped per ingestion run by ``SQLiteWarehouse.load_ndjson()``.
"""

from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger(__name__)

# ── DDL statements ─────────────────────────────────────────────────────────────

_DDL_BREEDERS = """
CREATE TABLE IF NOT EXISTS breeders (
    breeder_id          INTEGER PRIMARY KEY,
    name                TEXT,
    city                TEXT,
    created_date        TEXT    NOT NULL,
    last_updated_date   TEXT    NOT NULL
);
"""

_DDL_JOCKEYS = """
CREATE TABLE IF NOT EXISTS jockeys (
    jockey_id           INTEGER PRIMARY KEY,
    first_name          TEXT,
    last_name           TEXT,
    licence_country     TEXT,
    created_date        TEXT    NOT NULL,
    last_updated_date   TEXT    NOT NULL
);
"""

_DDL_TRAINERS = """
CREATE TABLE IF NOT EXISTS trainers (
    trainer_id          INTEGER PRIMARY KEY,
    first_name          TEXT,
    last_name           TEXT,
    licence_country     TEXT,
    created_date        TEXT    NOT NULL,
    last_updated_date   TEXT    NOT NULL
);
"""

# trainer_id / breeder_id / mother_id / father_id are soft references: the
# referenced entity comes from a different source prefix and may not have been
# ingested yet.
_DDL_HORSES = """
CREATE TABLE IF NOT EXISTS horses (
    horse_id            INTEGER PRIMARY KEY,
    horse_name          TEXT,
    horse_country       TEXT,
    birth_year          INTEGER,
    horse_sex           TEXT,
    breed               TEXT,
    mother_id           INTEGER,
    father_id           INTEGER,
    trainer_id          INTEGER,
    breeder_id          INTEGER,
    color_name_pl       TEXT,
    color_name_en       TEXT,
    polish_breeding     INTEGER,
    foreign_training    INTEGER,
    owner_name          TEXT,
    created_date        TEXT    NOT NULL,
    last_updated_date   TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_horses_trainer ON horses (trainer_id);
CREATE INDEX IF NOT EXISTS idx_horses_breeder ON horses (breeder_id);
"""

_DDL_HORSE_CAREERS = """
CREATE TABLE IF NOT EXISTS horse_careers (
    horse_id            INTEGER NOT NULL REFERENCES horses(horse_id),
    race_year           INTEGER NOT NULL,
    race_type           TEXT    NOT NULL DEFAULT 'UNKNOWN',
    horse_age           INTEGER,
    race_count          INTEGER,
    race_won_count      INTEGER,
    race_prize_count    INTEGER,
    prize_amounts       REAL,
    prize_currencies    TEXT,
    created_date        TEXT    NOT NULL,
    last_updated_date   TEXT    NOT NULL,
    PRIMARY KEY (horse_id, race_year, race_type)
);
"""

_DDL_RACES = """
CREATE TABLE IF NOT EXISTS races (
    race_id             INTEGER PRIMARY KEY,
    race_number         INTEGER,
    race_name           TEXT,
    race_date           TEXT,
    currency_code       TEXT,
    currency_symbol     TEXT,
    duration_ms         INTEGER,
    track_distance_m    INTEGER,
    temperature_c       REAL,
    weather             TEXT,
    race_group          TEXT,
    subtype             TEXT,
    category_id         INTEGER,
    category_breed      TEXT,
    category_name       TEXT,
    country_code        TEXT,
    city_name           TEXT,
    track_type          TEXT,
    video_url           TEXT,
    race_rules          TEXT,
    payments            TEXT,
    race_style          TEXT,
    created_date        TEXT    NOT NULL,
    last_updated_date   TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_races_date ON races (race_date);
"""

_DDL_RACE_RECORDS = """
CREATE TABLE IF NOT EXISTS race_records (
    race_record_id      TEXT    PRIMARY KEY,
    race_id             INTEGER NOT NULL REFERENCES races(race_id),
    horse_id            INTEGER NOT NULL REFERENCES horses(horse_id),
    start_order         INTEGER,
    finish_place        TEXT,
    jockey_weight_kg    REAL,
    prize_amount        REAL,
    prize_currency      TEXT,
    jockey_id           INTEGER,
    trainer_id          INTEGER,
    created_date        TEXT    NOT NULL,
    last_updated_date   TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_race_records_race  ON race_records (race_id);
CREATE INDEX IF NOT EXISTS idx_race_records_horse ON race_records (horse_id);
"""

_DDL_INGESTION_METADATA = """
CREATE TABLE IF NOT EXISTS ingestion_metadata (
    prefix              TEXT    PRIMARY KEY,
    last_processed_time TEXT    NOT NULL,
    updated_at          TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

_DDL_INGESTION_LEASES = """
CREATE TABLE IF NOT EXISTS ingestion_leases (
    source_prefix       TEXT    PRIMARY KEY,
    holder              TEXT    NOT NULL,
    acquired_at         TEXT    NOT NULL,
    expires_at          TEXT    NOT NULL
);
"""

_DDL_RUN_METADATA = """
CREATE TABLE IF NOT EXISTS run_metadata (
    run_id          INTEGER PRIMARY KEY AUTOINCREMENT,
    run_slug        TEXT    NOT NULL UNIQUE,
    pipeline_stage  TEXT    NOT NULL,
    status          TEXT    NOT NULL DEFAULT 'started',
    source_prefix   TEXT,
    config_snapshot TEXT    NOT NULL,
    rows_processed  INTEGER NOT NULL DEFAULT 0,
    error_message   TEXT,
    started_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    finished_at     TEXT
);
CREATE INDEX IF NOT EXISTS idx_run_metadata_stage ON run_metadata (pipeline_stage, started_at);
"""

_ALL_DDL: list[str] = [
    _DDL_BREEDERS,
    _DDL_JOCKEYS,
    _DDL_TRAINERS,
    _DDL_HORSES,
    _DDL_HORSE_CAREERS,
    _DDL_RACES,
    _DDL_RACE_RECORDS,
    _DDL_INGESTION_METADATA,
    _DDL_INGESTION_LEASES,
    _DDL_RUN_METADATA,
]

PRODUCTION_TABLE_NAMES: list[str] = [
    "breeders",
    "jockeys",
    "trainers",
    "horses",
    "horse_careers",
    "races",
    "race_records",
]

ALL_TABLE_NAMES: list[str] = PRODUCTION_TABLE_NAMES + [
    "ingestion_metadata",
    "ingestion_leases",
    "run_metadata",
]


# ── Public API ─────────────────────────────────────────────────────────────────

def apply_schema(conn: sqlite3.Connection) -> None:
    """Apply all DDL statements to ``conn``.

    Idempotent; safe to call on an already-initialized database.
    Each statement uses ``IF NOT EXISTS`` guards.

    Args:
        conn: An open ``sqlite3.Connection`` (FK enforcement should be ON).
    """
    logger.debug("Applying schema to database...")

    for ddl in _ALL_DDL:
        # Each block may contain multiple semicolon-separated statements
        for statement in _split_ddl(ddl):
            if statement.strip():
                conn.execute(statement)

    if conn.in_transaction:
        conn.commit()
    logger.info("Schema applied: %d tables, indexes created/verified.", len(ALL_TABLE_NAMES))


def _split_ddl(ddl: str) -> list[str]:
    """Split a multi-statement DDL block on semicolons."""
    return [s.strip() for s in ddl.split(";") if s.strip()]


def get_existing_tables(conn: sqlite3.Connection) -> list[str]:
    """Return list of table names present in the database.

    Args:
        conn: An open ``sqlite3.Connection``.

    Returns:
        Sorted list of table name strings.
    """
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name;"
    ).fetchall()
    return [row[0] for row in rows]
