"""Tests for the SQLite schema: idempotency, table creation, FK enforcement."""

from __future__ import annotations

import sqlite3

import pytest

from racing_warehouse.db.schema import (
    ALL_TABLE_NAMES,
    PRODUCTION_TABLE_NAMES,
    apply_schema,
    get_existing_tables,
)

_TS = "2025-06-01T00:00:00.000000Z"


class TestApplySchema:
    def test_all_tables_created(self, in_memory_db):
        tables = get_existing_tables(in_memory_db)
        for expected_table in ALL_TABLE_NAMES:
            assert expected_table in tables, (
                f"Expected table '{expected_table}' not found in database. "
                f"Found: {tables}"
            )

    def test_idempotent_double_apply(self, in_memory_db):
        """apply_schema() called twice must not raise errors."""
        apply_schema(in_memory_db)
        assert sorted(get_existing_tables(in_memory_db)) == sorted(ALL_TABLE_NAMES)

    @pytest.mark.parametrize("table", PRODUCTION_TABLE_NAMES)
    def test_production_tables_have_bookkeeping_columns(self, in_memory_db, table):
        cols = {r["name"] for r in in_memory_db.execute(f"PRAGMA table_info({table});")}
        assert {"created_date", "last_updated_date"} <= cols


class TestForeignKeys:
    def test_race_record_requires_race(self, in_memory_db):
        in_memory_db.execute(
            "INSERT INTO horses (horse_id, created_date, last_updated_date) VALUES (1, ?, ?);",
            (_TS, _TS),
        )
        with pytest.raises(sqlite3.IntegrityError):
            in_memory_db.execute(
                "INSERT INTO race_records (race_record_id, race_id, horse_id, "
                "created_date, last_updated_date) VALUES ('x', 99, 1, ?, ?);",
                (_TS, _TS),
            )

    def test_career_requires_horse(self, in_memory_db):
        with pytest.raises(sqlite3.IntegrityError):
            in_memory_db.execute(
                "INSERT INTO horse_careers (horse_id, race_year, race_type, "
                "created_date, last_updated_date) VALUES (5, 2024, 'FLAT', ?, ?);",
                (_TS, _TS),
            )

    def test_horse_trainer_is_a_soft_reference(self, in_memory_db):
        in_memory_db.execute(
            "INSERT INTO horses (horse_id, trainer_id, created_date, last_updated_date) "
            "VALUES (1, 12345, ?, ?);",
            (_TS, _TS),
        )
