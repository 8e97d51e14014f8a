# =============================================================================
# bp_core/offline/local_store.py
# Durable Key-Value Store for Offline Operations
# =============================================================================
"""
LocalStore - SQLite-backed key-value storage for the offline queue.

Holds the serialized mutation queue, the per-table entity snapshots and the
last-sync timestamp. Values are JSON documents; keys are namespaced by the
caller (see OfflineStorageManager).

Features:
- Automatic schema creation
- Thread-local connections (sync passes run on background threads)
- Atomic multi-key writes
- Every failure surfaces as StorageError
"""

from __future__ import annotations
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import numpy as np
import pandas as pd

from bp_core.errors import StorageError
from bp_core.logging import get_logger

logger = get_logger(__name__)


def clean_value(value: Any) -> Any:
    """Make a value JSON-serializable (datetimes, numpy scalars, NaN)."""
    if isinstance(value, dict):
        return {str(k): clean_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [clean_value(v) for v in value]
    if value is pd.NaT:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return None if np.isnan(value) else float(value)
    if value is not None and not isinstance(value, (str, bool)) and pd.isna(value):
        return None
    return value


class LocalStore:
    """
    Durable key-value store on a local SQLite file.

    Usage:
        store = LocalStore(Path("local_data/bp_tracker.db"))
        store.initialize()
        store.set("bp_tracker_last_sync", "2024-05-01T10:00:00+00:00")
    """

    DEFAULT_DB_PATH = Path("local_data") / "bp_tracker.db"

    SCHEMA = {
        "kv_store": """
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """,
    }

    def __init__(self, db_path: Optional[Path] = None):
        """
        Initialize local store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        self._local = threading.local()
        self._initialized = False

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if getattr(self._local, "connection", None) is None:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                connection = sqlite3.connect(str(self.db_path), timeout=10)
            except (OSError, sqlite3.Error) as e:
                raise StorageError(f"Cannot open local store at {self.db_path}: {e}")
            connection.row_factory = sqlite3.Row
            self._local.connection = connection
        return self._local.connection

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(f"Local store write failed: {e}")
        except Exception:
            conn.rollback()
            raise

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self.transaction() as conn:
            for table_name, schema in self.SCHEMA.items():
                conn.execute(schema)
                logger.debug(f"Created/verified table: {table_name}")

        self._initialized = True
        logger.info(f"Local store initialized at: {self.db_path}")

    # =========================================================================
    # KEY-VALUE OPERATIONS
    # =========================================================================

    def _serialize(self, key: str, value: Any) -> str:
        try:
            return json.dumps(clean_value(value))
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for {key} is not serializable: {e}", key=key)

    def get(self, key: str, default: Any = None) -> Any:
        """Read and decode the value stored under key."""
        self.initialize()
        try:
            row = self._get_connection().execute(
                "SELECT value FROM kv_store WHERE key = ?", [key]
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Local store read failed: {e}", key=key)

        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupted value in local store: {e}", key=key)

    def set(self, key: str, value: Any) -> None:
        """Persist a single value."""
        self.set_many({key: value})

    def set_many(self, items: Dict[str, Any]) -> None:
        """Persist several values in one transaction (all or nothing)."""
        self.initialize()
        rows = [
            (key, self._serialize(key, value), datetime.now().isoformat())
            for key, value in items.items()
        ]
        with self.transaction() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO kv_store (key, value, updated_at)
                VALUES (?, ?, ?)
                """,
                rows,
            )

    def delete(self, key: str) -> None:
        """Remove a key (no-op when absent)."""
        self.initialize()
        with self.transaction() as conn:
            conn.execute("DELETE FROM kv_store WHERE key = ?", [key])

    def keys(self, prefix: str = "") -> List[str]:
        """List keys starting with prefix."""
        self.initialize()
        try:
            rows = self._get_connection().execute(
                "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? ORDER BY key",
                [len(prefix), prefix],
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Local store read failed: {e}")
        return [row["key"] for row in rows]

    def close(self) -> None:
        """Close this thread's database connection."""
        connection = getattr(self._local, "connection", None)
        if connection is not None:
            connection.close()
            self._local.connection = None


# Singleton accessor
_local_store: Optional[LocalStore] = None
_store_lock = threading.Lock()


def get_local_store(db_path: Optional[Path] = None) -> LocalStore:
    """Get the process-wide LocalStore instance."""
    global _local_store
    if _local_store is None:
        with _store_lock:
            if _local_store is None:
                _local_store = LocalStore(db_path)
                _local_store.initialize()
    return _local_store
