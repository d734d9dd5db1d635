"""Tests for ShardMerger: concatenation, no-op, validation, shard deletion."""

from __future__ import annotations

import pytest

from racing_warehouse.db.repositories.run_repo import RunMetadataRepository
from racing_warehouse.errors import InputValidationError
from racing_warehouse.pipeline.clean_master import SnapshotCleaner
from racing_warehouse.pipeline.merge_shards import ShardMerger
from racing_warehouse.storage.naming import is_master_key


@pytest.fixture
def merger(app_config, blob_store, warehouse) -> ShardMerger:
    return ShardMerger(app_config, blob_store, warehouse)


class TestMergeShards:
    def test_concatenates_in_lexicographic_order(self, merger, blob_store, put_blob):
        put_blob("horse_data/shard_2_3_2025_06_01_10:00:00.ndjson", '{"horse_id":2}\n{"horse_id":3}\n')
        put_blob("horse_data/shard_1_1_2025_06_01_10:00:00.ndjson", '{"horse_id":1}')

        result = merger.merge_shards("horse_data/", "horse_data/")

        assert result.merged_count == 2
        assert is_master_key(result.master_file)
        assert result.master_file.startswith("horse_data/MASTERFILE_HORSEDATA_")
        with blob_store.open_read(result.master_file) as src:
            assert src.read() == '{"horse_id":1}\n{"horse_id":2}\n{"horse_id":3}\n'

    def test_undecodable_bytes_are_copied_verbatim(self, merger, app_config, blob_store, warehouse):
        with blob_store.open_write("horse_data/shard_1_2_x.ndjson", binary=True) as out:
            out.write(b'{"horse_id":1}\n\xff')
        with blob_store.open_write("horse_data/shard_3_3_x.ndjson", binary=True) as out:
            out.write(b'{"horse_id":3}\n')

        result = merger.merge_shards("horse_data/", "horse_data/")

        with blob_store.open_read(result.master_file, binary=True) as src:
            assert src.read() == b'{"horse_id":1}\n\xff\n{"horse_id":3}\n'
        cleaned = SnapshotCleaner(app_config, blob_store, warehouse).clean_master(result.master_file)
        assert (cleaned.initial_count, cleaned.removed_count, cleaned.final_count) == (3, 1, 2)

    def test_shards_are_left_untouched(self, merger, blob_store, put_blob):
        shard = put_blob("horse_data/shard_1_1_x.ndjson", '{"horse_id":1}\n')
        merger.merge_shards("horse_data/", "horse_data/")
        with blob_store.open_read(shard) as src:
            assert src.read() == '{"horse_id":1}\n'

    def test_only_matching_names_are_merged(self, merger, blob_store, put_blob):
        put_blob("horse_data/shard_1_1_x.ndjson", '{"horse_id":1}\n')
        put_blob("horse_data/notes.txt", "ignore me\n")
        put_blob("horse_data/MASTERFILE_OLD.ndjson", '{"horse_id":0}\n')
        result = merger.merge_shards("horse_data/", "out/")
        assert result.shard_keys == ["horse_data/shard_1_1_x.ndjson"]
        assert result.master_file.startswith("out/MASTERFILE_OUT_")

    def test_no_match_is_a_no_op(self, merger, blob_store):
        result = merger.merge_shards("horse_data/", "horse_data/")
        assert result.master_file is None
        assert result.merged_count == 0
        assert result.is_noop
        assert blob_store.list_keys("") == []

    def test_invalid_pattern(self, merger):
        with pytest.raises(InputValidationError, match="Invalid shard pattern"):
            merger.merge_shards("horse_data/", "horse_data/", pattern="([")

    @pytest.mark.parametrize("prefix,output_prefix", [("", "out/"), ("in/", "  "), (None, "out/")])
    def test_missing_prefixes(self, merger, prefix, output_prefix):
        with pytest.raises(InputValidationError, match="Missing or invalid"):
            merger.merge_shards(prefix, output_prefix)

    def test_run_status_recorded(self, merger, warehouse, put_blob):
        merger.merge_shards("horse_data/", "horse_data/")
        put_blob("horse_data/shard_1_1_x.ndjson", '{"horse_id":1}\n')
        merger.merge_shards("horse_data/", "horse_data/")
        runs = RunMetadataRepository(warehouse.conn).get_recent_runs("merge_shards")
        assert sorted(r.status for r in runs) == ["skipped", "success"]


class TestDeleteMergedShards:
    def test_deletes_only_merged_shards(self, merger, blob_store, put_blob):
        put_blob("horse_data/shard_1_1_x.ndjson", '{"horse_id":1}\n')
        result = merger.merge_shards("horse_data/", "horse_data/")
        put_blob("horse_data/shard_2_2_x.ndjson", '{"horse_id":2}\n')

        assert merger.delete_merged_shards(result) == 1
        assert blob_store.list_keys("horse_data/", r"^shard_") == ["horse_data/shard_2_2_x.ndjson"]
        assert blob_store.exists(result.master_file)

    def test_refuses_without_master(self, merger):
        from racing_warehouse.models.results import MergeResult

        with pytest.raises(InputValidationError):
            merger.delete_merged_shards(MergeResult(master_file=None, merged_count=0))
