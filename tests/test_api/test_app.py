"""Tests for the HTTP trigger surface (FastAPI TestClient)."""

from __future__ import annotations

import json
import time
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from racing_warehouse import __version__
from racing_warehouse.config import PipelineConfig
from racing_warehouse.db.repositories.lease_repo import LeaseRepository
from racing_warehouse.db.repositories.watermark_repo import WatermarkStore
from racing_warehouse.api.app import create_app
from racing_warehouse.pipeline import ingest as ingest_module
from racing_warehouse.runtime import open_warehouse
from racing_warehouse.utils.time_utils import EPOCH

T1 = datetime(2025, 6, 1, 10, 15, 30, tzinfo=timezone.utc)
CLEANED = "jockey_data/CLEANED_MASTERFILE_JOCKEYDATA_2025-06-01T10_15_30_000Z.ndjson"
JOCKEYS = '{"jockey_id": 1, "first_name": "Jan"}\n{"jockey_id": 2, "first_name": "Anna"}\n'


@pytest.fixture
def client(app_config, blob_store) -> TestClient:
    return TestClient(create_app(app_config, blob_store=blob_store))


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "version": __version__}


class TestMergeShards:
    BODY = {"prefix": "jockey_data/", "outputPrefix": "jockey_data/", "pattern": r"^shard_.*\.ndjson$"}

    def test_merges(self, client, put_blob):
        put_blob("jockey_data/shard_1_2_2025_06_01_10:00:00.ndjson", '{"jockey_id": 1}\n')
        put_blob("jockey_data/shard_3_4_2025_06_01_10:00:01.ndjson", '{"jockey_id": 3}')

        resp = client.post("/merge-shards", json=self.BODY)
        assert resp.status_code == 200
        body = resp.json()
        assert body["mergedCount"] == 2
        assert body["masterFile"].startswith("jockey_data/MASTERFILE_JOCKEYDATA_")

    def test_no_shards_is_ok(self, client):
        resp = client.post("/merge-shards", json=self.BODY)
        assert resp.status_code == 200
        assert resp.json() == {"masterFile": None, "mergedCount": 0}

    @pytest.mark.parametrize("missing", ["prefix", "outputPrefix", "pattern"])
    def test_missing_field(self, client, missing):
        body = {k: v for k, v in self.BODY.items() if k != missing}
        resp = client.post("/merge-shards", json=body)
        assert resp.status_code == 400
        assert "error" in resp.json()

    def test_invalid_pattern(self, client):
        resp = client.post("/merge-shards", json={**self.BODY, "pattern": "("})
        assert resp.status_code == 400

    def test_malformed_body(self, client):
        resp = client.post(
            "/merge-shards", content="not json", headers={"Content-Type": "application/json"}
        )
        assert resp.status_code == 400


class TestCleanMaster:
    MASTER = "jockey_data/MASTERFILE_JOCKEYDATA_2025-06-01T10_15_30_000Z.ndjson"

    def test_cleans_then_noop(self, client, put_blob):
        put_blob(self.MASTER, '{"a":1}\nnot json\n{"a":1}\n{"b":2}\n')

        resp = client.post("/clean-master", json={"prefix": "jockey_data/"})
        assert resp.status_code == 200
        (processed,) = resp.json()["processed"]
        assert processed["cleanedFile"] == "jockey_data/CLEANED_MASTERFILE_JOCKEYDATA_2025-06-01T10_15_30_000Z.ndjson"
        assert (processed["initialCount"], processed["removedCount"], processed["finalCount"]) == (4, 2, 2)
        assert processed["cleanedCreatedAt"].endswith("Z")

        again = client.post("/clean-master", json={"prefix": "jockey_data/"})
        assert again.status_code == 204
        assert again.content == b""

    def test_missing_prefix(self, client):
        assert client.post("/clean-master", json={}).status_code == 400


class TestIngest:
    def test_ingests_then_noop(self, client, put_blob, app_config):
        put_blob(CLEANED, JOCKEYS, created_at=T1)

        resp = client.post("/ingest", json={"prefix": "jockey_data/"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["processedFiles"] == [CLEANED]
        assert body["lastProcessedTime"] == "2025-06-01T10:15:30.000000Z"
        assert body["relations"] == [
            {"relation": "jockeys", "rowsIn": 2, "inserted": 2, "updated": 0, "skipped": 0}
        ]

        assert client.post("/ingest", json={"prefix": "jockey_data/"}).status_code == 204

    def test_unknown_prefix(self, client):
        resp = client.post("/ingest", json={"prefix": "owner_data/"})
        assert resp.status_code == 400
        assert "owner_data/" in resp.json()["error"]

    def test_lease_conflict(self, client, app_config):
        with open_warehouse(app_config) as warehouse:
            LeaseRepository(warehouse.conn).try_acquire("jockey_data/", "other-run", 600)
        resp = client.post("/ingest", json={"prefix": "jockey_data/"})
        assert resp.status_code == 409

    def test_timeout(self, app_config, blob_store, put_blob, monkeypatch):
        config = app_config.model_copy(
            update={"pipeline": PipelineConfig(ingest_timeout_seconds=0.5)}
        )
        put_blob(CLEANED, JOCKEYS, created_at=T1)
        real_project = ingest_module.project

        def slow_project(source, rows):
            time.sleep(1.0)
            return real_project(source, rows)

        monkeypatch.setattr(ingest_module, "project", slow_project)

        client = TestClient(create_app(config, blob_store=blob_store))
        resp = client.post("/ingest", json={"prefix": "jockey_data/"})
        assert resp.status_code == 504

        with open_warehouse(config) as warehouse:
            assert WatermarkStore(warehouse.conn).get("jockey_data/") == EPOCH

    def test_bad_snapshot_is_server_error(self, client, put_blob):
        put_blob(CLEANED, "not json\n", created_at=T1)
        resp = client.post("/ingest", json={"prefix": "jockey_data/"})
        assert resp.status_code == 500
        assert "invalid JSON" in resp.json()["error"]


def test_ingest_response_keys_are_camel_case(client, put_blob):
    put_blob(CLEANED, JOCKEYS, created_at=T1)
    body = client.post("/ingest", json={"prefix": "jockey_data/"}).json()
    assert set(body) == {
        "prefix", "processedFiles", "lastProcessedTime", "stagingRelation", "relations",
    }
    assert set(body["relations"][0]) == {"relation", "rowsIn", "inserted", "updated", "skipped"}
