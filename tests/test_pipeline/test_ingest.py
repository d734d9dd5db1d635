"""Tests for the incremental ingestion coordinator."""

from __future__ import annotations

import json
import time
from datetime import datetime, timezone

import pytest

from racing_warehouse.db.repositories.lease_repo import LeaseRepository
from racing_warehouse.db.repositories.run_repo import RunMetadataRepository
from racing_warehouse.db.repositories.watermark_repo import WatermarkStore
from racing_warehouse.errors import (
    IngestionTimeoutError,
    InputValidationError,
    LeaseUnavailableError,
    WarehouseError,
)
from racing_warehouse.pipeline import ingest as ingest_module
from racing_warehouse.pipeline.ingest import IngestionCoordinator
from racing_warehouse.utils.time_utils import EPOCH

PREFIX = "horse_data/"

T0 = datetime(2025, 5, 31, 8, 0, 0, tzinfo=timezone.utc)
T1 = datetime(2025, 6, 1, 10, 15, 30, tzinfo=timezone.utc)
T2 = datetime(2025, 6, 2, 9, 0, 0, tzinfo=timezone.utc)


def _cleaned(n: int, prefix: str = PREFIX) -> str:
    tag = prefix.rstrip("/").replace("_", "").upper()
    return f"{prefix}CLEANED_MASTERFILE_{tag}_2025-06-0{n}T10_00_00_000Z.ndjson"


def _ndjson(records) -> str:
    return "".join(json.dumps(r) + "\n" for r in records)


def _horses(name_of_first: str = "Alpha") -> str:
    return _ndjson([
        {
            "horse_id": 1,
            "horse_name": name_of_first,
            "career": [{"race_year": 2023, "race_type": "FLAT", "race_count": 2}],
            "races": [
                {"race_id": 10, "start_order": 1, "race_name": "Derby"},
                {"race_id": 11, "start_order": 2, "race_name": "Oaks"},
            ],
        },
        {
            "horse_id": 2,
            "horse_name": "Beta",
            "career": [],
            "races": [{"race_id": 10, "start_order": 3, "race_name": "Derby"}],
        },
    ])


def _stats(report) -> dict:
    return {s.relation: (s.rows_in, s.inserted, s.updated, s.skipped) for s in report.relations}


@pytest.fixture
def coordinator(app_config, blob_store, warehouse) -> IngestionCoordinator:
    return IngestionCoordinator(app_config, blob_store, warehouse)


class TestWatermarkProgression:
    def test_first_ingest_sets_watermark_then_noop(self, coordinator, put_blob, in_memory_db):
        put_blob(_cleaned(1), _horses(), created_at=T1)

        report = coordinator.ingest(PREFIX)
        assert report.status == "ingested"
        assert report.processed_files == [_cleaned(1)]
        assert report.last_processed_time == T1
        assert WatermarkStore(in_memory_db).get(PREFIX) == T1

        again = coordinator.ingest(PREFIX)
        assert again.status == "no_new_data"
        assert again.is_noop
        assert again.last_processed_time == T1
        assert WatermarkStore(in_memory_db).get(PREFIX) == T1

    def test_empty_prefix_is_noop_at_epoch(self, coordinator):
        report = coordinator.ingest(PREFIX)
        assert report.status == "no_new_data"
        assert report.last_processed_time == EPOCH

    def test_only_snapshots_newer_than_watermark(self, coordinator, put_blob, in_memory_db):
        WatermarkStore(in_memory_db).advance(PREFIX, T1)
        put_blob(_cleaned(1), _horses("Old"), created_at=T0)
        put_blob(_cleaned(2), _horses("Same"), created_at=T1)
        put_blob(_cleaned(3), _horses("New"), created_at=T2)

        report = coordinator.ingest(PREFIX)
        assert report.processed_files == [_cleaned(3)]
        assert report.last_processed_time == T2

    def test_snapshots_processed_oldest_first(self, coordinator, put_blob, warehouse):
        put_blob(_cleaned(1), _horses("Newest"), created_at=T2)
        put_blob(_cleaned(2), _horses("Oldest"), created_at=T1)

        report = coordinator.ingest(PREFIX)
        assert report.processed_files == [_cleaned(2), _cleaned(1)]
        assert report.last_processed_time == T2
        rows = warehouse.query("SELECT horse_name FROM horses WHERE horse_id = 1;")
        assert rows == [{"horse_name": "Newest"}]

    def test_ignores_uncleaned_and_nested_objects(self, coordinator, put_blob):
        put_blob(f"{PREFIX}MASTERFILE_HORSEDATA_2025-06-01T10_00_00_000Z.ndjson", _horses(), T1)
        put_blob(f"{PREFIX}archive/CLEANED_old.ndjson", _horses(), T1)
        assert coordinator.ingest(PREFIX).status == "no_new_data"


class TestMergeCounts:
    def test_horse_snapshot_fans_out(self, coordinator, put_blob, warehouse):
        put_blob(_cleaned(1), _horses(), created_at=T1)

        report = coordinator.ingest(PREFIX)
        assert [s.relation for s in report.relations] == [
            "horses", "horse_careers", "races", "race_records",
        ]
        assert _stats(report) == {
            "horses": (2, 2, 0, 0),
            "horse_careers": (1, 1, 0, 0),
            "races": (3, 2, 0, 0),
            "race_records": (3, 3, 0, 0),
        }
        assert warehouse.row_count("race_records") == 3

    def test_identical_reingest_changes_nothing(self, coordinator, put_blob, warehouse):
        put_blob(_cleaned(1), _horses(), created_at=T1)
        coordinator.ingest(PREFIX)
        before = warehouse.query("SELECT * FROM horses ORDER BY horse_id;")

        put_blob(_cleaned(2), _horses(), created_at=T2)
        report = coordinator.ingest(PREFIX)

        assert all(s.inserted == 0 and s.updated == 0 for s in report.relations)
        assert warehouse.query("SELECT * FROM horses ORDER BY horse_id;") == before
        assert report.last_processed_time == T2

    def test_changed_record_is_overwritten(self, coordinator, put_blob, warehouse):
        put_blob(_cleaned(1), _horses(), created_at=T1)
        coordinator.ingest(PREFIX)

        put_blob(_cleaned(2), _horses("Alpha II"), created_at=T2)
        report = coordinator.ingest(PREFIX)

        assert _stats(report)["horses"] == (2, 0, 1, 0)
        rows = warehouse.query("SELECT horse_name FROM horses WHERE horse_id = 1;")
        assert rows == [{"horse_name": "Alpha II"}]

    def test_flat_source(self, coordinator, put_blob, warehouse):
        put_blob(
            _cleaned(1, "jockey_data/"),
            _ndjson([{"jockey_id": 5, "first_name": "Jan"}, {"jockey_id": None}]),
            created_at=T1,
        )
        report = coordinator.ingest("jockey_data/")
        assert _stats(report) == {"jockeys": (2, 1, 0, 1)}
        assert warehouse.row_count("jockeys") == 1

    def test_staging_relation_dropped_on_success(self, coordinator, put_blob, warehouse):
        put_blob(_cleaned(1), _horses(), created_at=T1)
        report = coordinator.ingest(PREFIX)
        assert report.staging_relation.startswith("stg_horsedata_")
        assert warehouse.list_relations("stg_") == []


class TestFailures:
    def test_unknown_prefix(self, coordinator):
        with pytest.raises(InputValidationError):
            coordinator.ingest("owner_data/")

    def test_missing_prefix(self, coordinator):
        with pytest.raises(InputValidationError):
            coordinator.ingest("")

    def test_lease_held_by_another_run(self, coordinator, put_blob, in_memory_db):
        put_blob(_cleaned(1), _horses(), created_at=T1)
        LeaseRepository(in_memory_db).try_acquire(PREFIX, "other-run", 600)

        with pytest.raises(LeaseUnavailableError, match="other-run"):
            coordinator.ingest(PREFIX)
        assert WatermarkStore(in_memory_db).get(PREFIX) == EPOCH

    def test_lease_released_after_run(self, coordinator, put_blob, in_memory_db):
        put_blob(_cleaned(1), _horses(), created_at=T1)
        coordinator.ingest(PREFIX)
        assert LeaseRepository(in_memory_db).current_holder(PREFIX) is None

    @pytest.mark.parametrize("timeout", [0, -5.0, 1800.0, 7200.0])
    def test_timeout_outside_lease_ttl_rejected(self, coordinator, put_blob, in_memory_db, timeout):
        put_blob(_cleaned(1), _horses(), created_at=T1)

        with pytest.raises(InputValidationError, match="lease TTL"):
            coordinator.ingest(PREFIX, timeout_seconds=timeout)

        assert LeaseRepository(in_memory_db).current_holder(PREFIX) is None
        assert WatermarkStore(in_memory_db).get(PREFIX) == EPOCH

    def test_bad_line_keeps_watermark_and_staging(
        self, coordinator, put_blob, warehouse, in_memory_db
    ):
        put_blob(_cleaned(1), '{"horse_id": 1}\nnot json\n', created_at=T1)

        with pytest.raises(WarehouseError):
            coordinator.ingest(PREFIX)

        assert WatermarkStore(in_memory_db).get(PREFIX) == EPOCH
        assert len(warehouse.list_relations("stg_horsedata_")) == 1
        assert warehouse.row_count("horses") == 0
        assert LeaseRepository(in_memory_db).current_holder(PREFIX) is None

    def test_timeout_keeps_watermark_and_staging(
        self, coordinator, put_blob, warehouse, in_memory_db, monkeypatch
    ):
        put_blob(_cleaned(1), _horses(), created_at=T1)
        real_project = ingest_module.project

        def slow_project(source, rows):
            time.sleep(1.0)
            return real_project(source, rows)

        monkeypatch.setattr(ingest_module, "project", slow_project)

        with pytest.raises(IngestionTimeoutError):
            coordinator.ingest(PREFIX, timeout_seconds=0.5)

        assert WatermarkStore(in_memory_db).get(PREFIX) == EPOCH
        assert len(warehouse.list_relations("stg_horsedata_")) == 1
        assert warehouse.row_count("horses") == 0

    def test_retry_after_failure_succeeds(self, coordinator, put_blob, blob_store, in_memory_db):
        put_blob(_cleaned(1), '{"horse_id": 1}\nnot json\n', created_at=T1)
        with pytest.raises(WarehouseError):
            coordinator.ingest(PREFIX)

        blob_store.delete(_cleaned(1))
        put_blob(_cleaned(1), _horses(), created_at=T1)
        report = coordinator.ingest(PREFIX)
        assert report.status == "ingested"
        assert WatermarkStore(in_memory_db).get(PREFIX) == T1


class TestRunRecords:
    def test_statuses_recorded(self, coordinator, put_blob, in_memory_db):
        put_blob(_cleaned(1), _horses(), created_at=T1)
        coordinator.ingest(PREFIX)
        coordinator.ingest(PREFIX)

        runs = RunMetadataRepository(in_memory_db).get_recent_runs("ingest")
        assert sorted(r.status for r in runs) == ["skipped", "success"]
        assert all(r.source_prefix == PREFIX for r in runs)

    def test_failure_recorded(self, coordinator, in_memory_db):
        LeaseRepository(in_memory_db).try_acquire(PREFIX, "other-run", 600)
        with pytest.raises(LeaseUnavailableError):
            coordinator.ingest(PREFIX)

        (run,) = RunMetadataRepository(in_memory_db).get_recent_runs("ingest")
        assert run.status == "failed"
        assert "LeaseUnavailableError" in run.error_message
