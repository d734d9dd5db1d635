"""Tests for the source/relation registry and staging relation names."""

from __future__ import annotations

import re
from datetime import datetime, timezone

import pytest

from racing_warehouse.errors import InputValidationError
from racing_warehouse.warehouse.relations import (
    INTEGER,
    RELATIONS,
    SOURCES,
    TEXT,
    UpsertSpec,
    get_source,
    parse_staging_relation,
    staging_relation_name,
    validate_identifier,
)


class TestRegistry:
    def test_sources_and_merge_order(self):
        assert SOURCES["horse_data/"].relations == (
            "horses", "horse_careers", "races", "race_records",
        )
        assert SOURCES["jockey_data/"].relations == ("jockeys",)
        assert SOURCES["trainer_data/"].relations == ("trainers",)
        assert SOURCES["breeder_data/"].relations == ("breeders",)

    def test_horse_staging_schema_carries_nested_columns(self):
        names = [name for name, _ in SOURCES["horse_data/"].staging_columns]
        assert names[0] == "horse_id"
        assert names[-2:] == ["career", "races"]

    def test_race_records_require_foreign_keys(self):
        assert RELATIONS["race_records"].required_columns == (
            "race_record_id", "race_id", "horse_id",
        )

    def test_required_defaults_to_key_columns(self):
        assert RELATIONS["horse_careers"].required_columns == (
            "horse_id", "race_year", "race_type",
        )

    def test_unknown_source_rejected(self):
        with pytest.raises(InputValidationError, match="Unknown source prefix"):
            get_source("cats/")

    def test_spec_requires_types_for_all_columns(self):
        with pytest.raises(ValueError, match="no type declared"):
            UpsertSpec(
                relation="t",
                key_columns=("id",),
                update_columns=("name",),
                column_types={"id": INTEGER},
            )

    def test_spec_rejects_unsafe_identifiers(self):
        with pytest.raises(InputValidationError):
            UpsertSpec(
                relation="t; DROP TABLE horses",
                key_columns=("id",),
                update_columns=(),
                column_types={"id": TEXT},
            )


class TestIdentifiers:
    @pytest.mark.parametrize("name", ["horses", "_x", "stg_horsedata_20250601T101530Z_0a1b2c3d"])
    def test_valid(self, name):
        assert validate_identifier(name) == name

    @pytest.mark.parametrize("name", ["", "1abc", 'a"b', "a b", "a;b"])
    def test_invalid(self, name):
        with pytest.raises(InputValidationError):
            validate_identifier(name)


class TestStagingNames:
    def test_name_format(self):
        created = datetime(2025, 6, 1, 10, 15, 30, tzinfo=timezone.utc)
        name = staging_relation_name(SOURCES["horse_data/"], created)
        assert re.fullmatch(r"stg_horsedata_20250601T101530Z_[0-9a-f]{8}", name)

    def test_names_are_unique_within_a_second(self):
        created = datetime(2025, 6, 1, 10, 15, 30, tzinfo=timezone.utc)
        source = SOURCES["jockey_data/"]
        assert staging_relation_name(source, created) != staging_relation_name(source, created)

    def test_parse_round_trip(self):
        created = datetime(2025, 6, 1, 10, 15, 30, tzinfo=timezone.utc)
        name = staging_relation_name(SOURCES["breeder_data/"], created)
        assert parse_staging_relation(name) == created

    @pytest.mark.parametrize(
        "name",
        ["horses", "stg_horsedata_notatime_0a1b2c3d", "stg_horsedata_20251399T999999Z_0a1b2c3d"],
    )
    def test_parse_rejects_other_names(self, name):
        assert parse_staging_relation(name) is None
