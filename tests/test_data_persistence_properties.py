"""
Property-based tests for key/value storage backends.

**Feature: resilient-batch, Property 9: Storage round trip and prefix isolation**
"""

import sqlite3
import threading

import pytest
from hypothesis import given, strategies as st, settings

from config import CheckpointConfig
from resilient_batch.data.storage import InMemoryStore, SQLiteStore, prefix_upper_bound
from resilient_batch.data.storage_factory import StorageFactory, create_store
from resilient_batch.utils.errors import StorageError


json_values = st.recursive(
    st.none() | st.booleans() | st.integers(min_value=-10**9, max_value=10**9) | st.text(max_size=20),
    lambda children: st.lists(children, max_size=4) | st.dictionaries(st.text(max_size=8), children, max_size=4),
    max_leaves=10
)

key_segments = st.text(alphabet="abcxyz-_0123456789", min_size=1, max_size=6)


@pytest.fixture(params=["memory", "sqlite_memory", "sqlite_file"])
def store(request, temp_db_path):
    if request.param == "memory":
        backend = InMemoryStore()
    elif request.param == "sqlite_memory":
        backend = SQLiteStore(":memory:")
    else:
        backend = SQLiteStore(temp_db_path)
    yield backend
    backend.close()


class TestStorageBackends:
    """Behaviour shared by every KeyValueStore backend."""

    def test_get_put_delete(self, store):
        assert store.get("missing") is None

        store.put("a", {"value": 1})
        assert store.get("a") == {"value": 1}

        store.put("a", {"value": 2})
        assert store.get("a") == {"value": 2}

        assert store.delete("a")
        assert not store.delete("a")
        assert store.get("a") is None

    def test_put_many_and_scan_prefix(self, store):
        store.put_many({
            "batch/b1/items/00000001": {"id": "item-1"},
            "batch/b1/items/00000000": {"id": "item-0"},
            "batch/b10/items/00000000": {"id": "other"},
            "batches/b1": {"total_items": 2},
        })

        scanned = store.scan_prefix("batch/b1/")
        assert [key for key, _ in scanned] == ["batch/b1/items/00000000", "batch/b1/items/00000001"]
        assert [value["id"] for _, value in scanned] == ["item-0", "item-1"]
        assert store.count_prefix("batch/") == 3
        assert store.count_prefix("batches/") == 1

    def test_delete_prefix_is_scoped(self, store):
        store.put_many({
            "batch/b1/items/0": 1,
            "batch/b1/results/x": 2,
            "batch/b10/items/0": 3,
            "batch/b0": 4,
        })

        assert store.delete_prefix("batch/b1/") == 2
        assert store.count_prefix("batch/b1/") == 0
        assert store.get("batch/b10/items/0") == 3
        assert store.get("batch/b0") == 4

    def test_returned_values_are_copies(self, store):
        store.put("k", {"nested": [1, 2]})
        value = store.get("k")
        value["nested"].append(3)
        assert store.get("k") == {"nested": [1, 2]}

    def test_context_manager(self, temp_db_path):
        with SQLiteStore(temp_db_path) as backend:
            backend.put("k", "v")
        with SQLiteStore(temp_db_path) as backend:
            assert backend.get("k") == "v"

    def test_concurrent_writes(self, store):
        def writer(thread_index):
            for i in range(20):
                store.put(f"results/{thread_index}/{i:03d}", {"i": i})

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.count_prefix("results/") == 100

    @given(entries=st.dictionaries(
        st.lists(key_segments, min_size=1, max_size=3).map("/".join),
        json_values.filter(lambda value: value is not None),
        max_size=15
    ))
    @settings(max_examples=20, deadline=10000)
    def test_round_trip_and_prefix_isolation(self, entries):
        """
        **Feature: resilient-batch, Property 9: Storage round trip and prefix isolation**

        Every stored value reads back unchanged, and a prefix delete removes
        exactly the keys that start with the prefix.
        """
        for backend in (InMemoryStore(), SQLiteStore(":memory:")):
            backend.put_many(entries)
            for key, value in entries.items():
                assert backend.get(key) == value

            prefix = "a"
            expected_removed = sorted(k for k in entries if k.startswith(prefix))
            assert [k for k, _ in backend.scan_prefix(prefix)] == expected_removed
            assert backend.delete_prefix(prefix) == len(expected_removed)
            for key in entries:
                assert (backend.get(key) is None) == key.startswith(prefix)
            backend.close()


class TestSQLiteStore:
    """SQLite specifics."""

    def test_table_and_wal_mode(self, temp_db_path):
        SQLiteStore(temp_db_path).close()

        conn = sqlite3.connect(temp_db_path)
        try:
            tables = [row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")]
            journal_mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        finally:
            conn.close()

        assert "kv" in tables
        assert journal_mode.lower() == "wal"

    def test_unserializable_value(self):
        backend = SQLiteStore(":memory:")
        with pytest.raises(StorageError):
            backend.put("k", object())
        backend.close()

    def test_put_many_is_atomic(self):
        backend = SQLiteStore(":memory:")
        with pytest.raises(StorageError):
            backend.put_many({"a": 1, "b": object()})
        assert backend.get("a") is None
        backend.close()


class TestStorageFactory:
    """Backend selection from configuration."""

    def test_memory_backend(self):
        assert isinstance(create_store(CheckpointConfig(backend="memory")), InMemoryStore)

    def test_sqlite_backend(self, temp_db_path):
        backend = StorageFactory.create_store(CheckpointConfig(backend="sqlite", sqlite_path=temp_db_path))
        assert isinstance(backend, SQLiteStore)
        assert backend.database_path == temp_db_path
        backend.close()

    def test_unknown_backend(self):
        with pytest.raises(StorageError) as exc_info:
            create_store(CheckpointConfig(backend="redis"))
        assert exc_info.value.details["supported_backends"] == ["memory", "sqlite"]

    def test_prefix_upper_bound(self):
        assert prefix_upper_bound("batch/") == "batch0"
        assert "batch/zzz" < prefix_upper_bound("batch/")
        with pytest.raises(StorageError):
            prefix_upper_bound("")
