# =============================================================================
# tests/unit/test_local_store.py
# Unit Tests for the SQLite key-value store
# =============================================================================

import sqlite3
import pytest
import numpy as np
import pandas as pd
from datetime import datetime, timezone


class TestLocalStoreOperations:
    """Basic key-value behaviour"""

    def test_missing_key_returns_default(self, store):
        assert store.get("absent") is None
        assert store.get("absent", []) == []

    def test_set_and_get_structured_value(self, store):
        value = {"queue": [{"id": "m1", "synced": False}], "count": 1}

        store.set("bp_tracker_offline_queue", value)

        assert store.get("bp_tracker_offline_queue") == value

    def test_set_many_writes_all_keys(self, store):
        store.set_many({"a": 1, "b": [2, 3]})

        assert store.get("a") == 1
        assert store.get("b") == [2, 3]

    def test_delete_removes_key(self, store):
        store.set("a", 1)
        store.delete("a")

        assert store.get("a") is None

    def test_keys_filtered_by_prefix(self, store):
        store.set_many({
            "bp_tracker:user-1:queue": [],
            "bp_tracker:user-1:last_sync": "x",
            "bp_tracker:user-2:queue": [],
        })

        assert store.keys("bp_tracker:user-1:") == [
            "bp_tracker:user-1:last_sync",
            "bp_tracker:user-1:queue",
        ]


class TestLocalStoreDurability:
    """Values survive a new store instance on the same file"""

    def test_values_persist_across_instances(self, settings):
        from bp_core.offline.local_store import LocalStore

        first = LocalStore(settings.db_path)
        first.set("bp_tracker_last_sync", "2024-05-01T10:00:00+00:00")
        first.close()

        second = LocalStore(settings.db_path)
        assert second.get("bp_tracker_last_sync") == "2024-05-01T10:00:00+00:00"
        second.close()

    def test_corrupted_value_raises_storage_error(self, store):
        from bp_core.errors import StorageError

        with store.transaction() as conn:
            conn.execute("INSERT INTO kv_store (key, value) VALUES (?, ?)", ["bad", "{not json"])

        with pytest.raises(StorageError) as exc_info:
            store.get("bad")

        assert exc_info.value.code == "OFFLINE_STORAGE_ERROR"
        assert exc_info.value.details["key"] == "bad"

    def test_failed_transaction_rolls_back(self, store):
        """A sqlite error inside a transaction leaves earlier writes untouched"""
        from bp_core.errors import StorageError

        store.set("a", 1)

        with pytest.raises(StorageError):
            with store.transaction() as conn:
                conn.execute("UPDATE kv_store SET value = ? WHERE key = ?", ["2", "a"])
                raise sqlite3.OperationalError("disk I/O error")

        assert store.get("a") == 1

    def test_unserializable_value_raises_storage_error(self, store):
        from bp_core.errors import StorageError

        with pytest.raises(StorageError):
            store.set("a", {"callback": object()})


class TestCleanValue:
    """JSON cleaning of pandas/numpy values"""

    def test_numpy_and_datetime_values(self):
        from bp_core.offline.local_store import clean_value

        cleaned = clean_value({
            "systolic": np.int64(150),
            "weight_kg": np.float64(72.5),
            "felt_symptoms": np.bool_(True),
            "reading_time": datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc),
        })

        assert cleaned == {
            "systolic": 150,
            "weight_kg": 72.5,
            "felt_symptoms": True,
            "reading_time": "2024-05-01T08:30:00+00:00",
        }
        assert type(cleaned["systolic"]) is int

    def test_missing_values_become_none(self):
        from bp_core.offline.local_store import clean_value

        assert clean_value([np.nan, pd.NaT, None, "text"]) == [None, None, None, "text"]
