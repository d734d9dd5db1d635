"""End-to-end tests for the typer CLI."""

from __future__ import annotations

import pytest
from typer.testing import CliRunner

from racing_warehouse.cli import app
from racing_warehouse.scraping.homas_client import HomasClient
from racing_warehouse.storage.blob_store import LocalBlobStore

runner = CliRunner()


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(
        f"""
[storage]
root_dir = "{(tmp_path / 'blobs').as_posix()}"

[warehouse]
db_path = "{(tmp_path / 'db' / 'wh.db').as_posix()}"

[scraper]
concurrency = 1
miss_cutoff = 2

[logging]
log_file = ""
""",
        encoding="utf-8",
    )
    return str(path)


@pytest.fixture
def store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


def _invoke(*args):
    return runner.invoke(app, list(args))


class TestConfigCommands:
    def test_validate_config(self, config_path):
        result = _invoke("validate-config", "--config", config_path, "--full")
        assert result.exit_code == 0, result.output
        assert "[OK] Config valid." in result.output
        assert '"miss_cutoff": 2' in result.output

    def test_missing_config(self, tmp_path):
        result = _invoke("validate-config", "--config", str(tmp_path / "missing.toml"))
        assert result.exit_code == 1

    def test_init_db(self, config_path, tmp_path):
        result = _invoke("init-db", "--config", config_path)
        assert result.exit_code == 0, result.output
        assert (tmp_path / "db" / "wh.db").exists()


class TestPipelineCommands:
    def test_merge_clean_ingest(self, config_path, store):
        with store.open_write("jockey_data/shard_1_2_2025_06_01_10:00:00.ndjson") as out:
            out.write('{"jockey_id": 1, "first_name": "Jan"}\n{"jockey_id": 2}\n')
        with store.open_write("jockey_data/shard_3_3_2025_06_01_10:00:05.ndjson") as out:
            out.write('{"jockey_id": 1, "first_name": "Jan"}\n')

        merged = _invoke(
            "merge-shards", "--config", config_path,
            "--prefix", "jockey_data/", "--output-prefix", "jockey_data/", "--delete-shards",
        )
        assert merged.exit_code == 0, merged.output
        assert "(2 shards)" in merged.output
        assert "Deleted 2 merged shard(s)." in merged.output

        cleaned = _invoke("clean-master", "--config", config_path, "--prefix", "jockey_data/")
        assert cleaned.exit_code == 0, cleaned.output
        assert "initial=3 removed=1 final=2" in cleaned.output

        ingested = _invoke("ingest", "--config", config_path, "--prefix", "jockey_data/")
        assert ingested.exit_code == 0, ingested.output
        assert "inserted=2" in ingested.output
        assert "[OK] Ingestion complete." in ingested.output

        again = _invoke("ingest", "--config", config_path, "--prefix", "jockey_data/")
        assert again.exit_code == 0, again.output
        assert "No new data" in again.output

    def test_merge_nothing(self, config_path):
        result = _invoke("merge-shards", "--config", config_path, "--prefix", "horse_data/")
        assert result.exit_code == 0, result.output
        assert "nothing merged" in result.output

    def test_ingest_unknown_prefix(self, config_path):
        result = _invoke("ingest", "--config", config_path, "--prefix", "owner_data/")
        assert result.exit_code == 1
        assert "InputValidationError" in result.output

    def test_sweep_staging(self, config_path):
        result = _invoke("sweep-staging", "--config", config_path)
        assert result.exit_code == 0, result.output
        assert "[OK] Swept 0 staging relation(s)." in result.output

    def test_scrape(self, config_path, store, monkeypatch):
        class FakeClient:
            def __enter__(self):
                return self

            def __exit__(self, *exc_info):
                pass

            def fetch(self, entity, entity_id):
                return {"breeder_id": entity_id} if entity_id < 3 else None

        monkeypatch.setattr(HomasClient, "from_config", classmethod(lambda cls, cfg: FakeClient()))

        result = _invoke(
            "scrape", "--config", config_path,
            "--entity", "breeder", "--start-id", "1", "--batch-size", "50",
        )
        assert result.exit_code == 0, result.output
        assert "fetched=2 misses=2 attempted=4/50 (stopped early)" in result.output
        (shard,) = store.list_keys("breeder_data/")
        assert shard.startswith("breeder_data/shard_1_2_")
