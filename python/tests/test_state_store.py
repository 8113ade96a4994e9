"""Tests for pipeline_core.persistence.state_store."""

import json

import pytest

from pipeline_core.exceptions_unified import StateCorruptedError, StatePersistenceError
from pipeline_core.persistence.state_store import InMemoryStateStore, JsonFileStateStore


@pytest.fixture(params=["file", "memory"])
def store(request, tmp_path):
    if request.param == "file":
        return JsonFileStateStore(tmp_path / "state")
    return InMemoryStateStore()


# ========================================================================
# SHARED CONTRACT
# ========================================================================


class TestStoreContract:

    def test_save_then_load(self, store):
        store.save("pipeline", "abc", {"status": "running", "stages": [1, 2]})
        assert store.load("pipeline", "abc") == {"status": "running", "stages": [1, 2]}

    def test_missing_record_is_none(self, store):
        assert store.load("pipeline", "absent") is None
        assert not store.exists("pipeline", "absent")

    def test_save_replaces_whole_record(self, store):
        store.save("ns", "k", {"a": 1, "b": 2})
        store.save("ns", "k", {"a": 3})
        assert store.load("ns", "k") == {"a": 3}

    def test_delete(self, store):
        store.save("ns", "k", {})
        assert store.delete("ns", "k") is True
        assert store.delete("ns", "k") is False
        assert store.load("ns", "k") is None

    def test_list_keys_is_sorted_per_namespace(self, store):
        store.save("ns", "b", {})
        store.save("ns", "a", {})
        store.save("other", "c", {})
        assert store.list_keys("ns") == ["a", "b"]
        assert store.list_keys("empty") == []

    def test_invalid_key_rejected(self, store):
        with pytest.raises(ValueError):
            store.save("ns", "../escape", {})

    def test_unserializable_record_raises(self, store):
        with pytest.raises(StatePersistenceError):
            store.save("ns", "k", {("tuple", "key"): 1})


# ========================================================================
# FILE BACKEND
# ========================================================================


class TestJsonFileStateStore:

    def test_layout_is_namespace_directory(self, tmp_path):
        store = JsonFileStateStore(tmp_path)
        store.save("work_orders", "WO-001", {"order_id": "WO-001"})
        path = tmp_path / "work_orders" / "WO-001.json"
        assert path.is_file()
        assert json.loads(path.read_text(encoding="utf-8")) == {"order_id": "WO-001"}

    def test_no_temp_files_left_behind(self, tmp_path):
        store = JsonFileStateStore(tmp_path)
        for i in range(3):
            store.save("ns", "k", {"i": i})
        assert [p.name for p in (tmp_path / "ns").iterdir()] == ["k.json"]

    def test_corrupted_json_is_distinct_from_missing(self, tmp_path):
        store = JsonFileStateStore(tmp_path)
        (tmp_path / "ns").mkdir()
        (tmp_path / "ns" / "k.json").write_text("{truncated", encoding="utf-8")
        with pytest.raises(StateCorruptedError) as exc_info:
            store.load("ns", "k")
        assert exc_info.value.key == "ns/k"

    def test_non_object_record_is_corrupted(self, tmp_path):
        store = JsonFileStateStore(tmp_path)
        (tmp_path / "ns").mkdir()
        (tmp_path / "ns" / "k.json").write_text("[1, 2]", encoding="utf-8")
        with pytest.raises(StateCorruptedError):
            store.load("ns", "k")

    def test_readable_by_another_instance(self, tmp_path):
        JsonFileStateStore(tmp_path).save("pipeline", "s1", {"mode": "greenfield"})
        assert JsonFileStateStore(tmp_path).load("pipeline", "s1") == {"mode": "greenfield"}

    def test_root_namespace(self, tmp_path):
        store = JsonFileStateStore(tmp_path)
        store.save("", "top", {"x": 1})
        assert (tmp_path / "top.json").is_file()
        assert store.list_keys("") == ["top"]


class TestInMemoryStateStore:

    def test_put_raw_simulates_corruption(self):
        store = InMemoryStateStore()
        store.put_raw("pipeline", "s1", "not json")
        assert store.exists("pipeline", "s1")
        with pytest.raises(StateCorruptedError):
            store.load("pipeline", "s1")
