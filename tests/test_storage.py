"""Tests for gateway state storage."""

import pytest

from llm_gateway.storage import JsonFileStore, KeyValueStore, MemoryStore


class TestMemoryStore:
    def test_get_set_delete(self):
        store = MemoryStore()
        assert store.get("missing") is None
        store.set("k", {"a": [1, 2]})
        assert store.get("k") == {"a": [1, 2]}
        store.delete("k")
        assert store.get("k") is None

    def test_values_are_copies(self):
        store = MemoryStore()
        value = {"a": 1}
        store.set("k", value)
        value["a"] = 2
        assert store.get("k") == {"a": 1}

    def test_satisfies_protocol(self):
        assert isinstance(MemoryStore(), KeyValueStore)


class TestJsonFileStore:
    """On-disk store with atomic replace."""

    def test_round_trip_creates_directory(self, tmp_path):
        store = JsonFileStore(tmp_path / "state")
        store.set("sticky_map", {"review": {"model_id": "m"}})
        assert (tmp_path / "state" / "sticky_map.json").exists()
        assert JsonFileStore(tmp_path / "state").get("sticky_map") == {
            "review": {"model_id": "m"}
        }

    def test_no_temporary_files_left(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.set("a", 1)
        store.set("a", 2)
        assert [p.name for p in tmp_path.iterdir()] == ["a.json"]
        assert store.get("a") == 2

    def test_corrupt_file_treated_as_missing(self, tmp_path):
        (tmp_path / "catalog_snapshot.json").write_text("{not json")
        store = JsonFileStore(tmp_path)
        assert store.get("catalog_snapshot") is None

    def test_unsafe_key_rejected(self, tmp_path):
        store = JsonFileStore(tmp_path)
        with pytest.raises(ValueError):
            store.set("../escape", 1)

    def test_delete_missing_is_noop(self, tmp_path):
        JsonFileStore(tmp_path).delete("nothing")
