# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import threading
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List
from unittest.mock import MagicMock

from bp_core.config import SyncSettings
from bp_core.data.remote import NOT_FOUND, RemoteResult
from bp_core.offline.connection_manager import ConnectionManager
from bp_core.offline.local_store import LocalStore
from bp_core.offline.offline_storage import OfflineStorageManager


# =============================================================================
# SAMPLE DATA FIXTURES
# =============================================================================

@pytest.fixture
def reading_payload() -> Dict[str, Any]:
    """Valid blood pressure reading insert"""
    return {
        "user_id": "user-1",
        "systolic": 150,
        "diastolic": 95,
        "heart_rate": 88,
        "reading_time": "2024-05-01T08:30:00+00:00",
        "position": "sitting",
        "arm_used": "left",
        "notes": "felt dizzy",
    }


@pytest.fixture
def symptom_payload() -> Dict[str, Any]:
    """Valid symptom entry insert"""
    return {
        "user_id": "user-1",
        "custom_symptom_name": "Headache",
        "severity": 6,
        "duration_minutes": 45,
        "occurred_at": "2024-05-01T09:00:00+00:00",
    }


@pytest.fixture
def medication_payload() -> Dict[str, Any]:
    """Valid medication entry insert"""
    return {
        "user_id": "user-1",
        "custom_medication_name": "Labetalol",
        "dosage": "100",
        "taken_at": "2024-05-01T07:45:00+00:00",
    }


@pytest.fixture
def later_iso():
    """ISO timestamp comfortably after anything captured during a test"""
    return (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()


# =============================================================================
# FAKE REMOTE FACADE
# =============================================================================

class FakeEntityGateway:
    """
    Scripted stand-in for SupabaseEntityService.

    Outcomes queued with script() are consumed in call order; each may be a
    RemoteResult, an exception to raise, or a callable returning either.
    Without a script every call succeeds.
    """

    def __init__(self, table: str):
        self.table = table
        self.calls: List[tuple] = []
        self._script: List[Any] = []
        self._lock = threading.Lock()

    def script(self, *outcomes) -> None:
        self._script.extend(outcomes)

    def _outcome(self, default: RemoteResult, *args) -> RemoteResult:
        with self._lock:
            outcome = self._script.pop(0) if self._script else default
        if callable(outcome) and not isinstance(outcome, RemoteResult):
            outcome = outcome(*args)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def create(self, payload):
        self.calls.append(("create", payload))
        return self._outcome(RemoteResult.success(dict(payload)), payload)

    def update(self, record_id, payload):
        self.calls.append(("update", record_id, payload))
        return self._outcome(RemoteResult.success({**payload, "id": record_id}), record_id, payload)

    def soft_delete(self, record_id):
        self.calls.append(("soft_delete", record_id))
        return self._outcome(RemoteResult.success(True), record_id)

    def fetch(self, record_id):
        self.calls.append(("fetch", record_id))
        return self._outcome(RemoteResult.failure(NOT_FOUND, "not found"), record_id)


class FakeFacade:
    """Hands out one FakeEntityGateway per table"""

    def __init__(self):
        self.gateways: Dict[str, FakeEntityGateway] = {}

    def entity(self, table: str) -> FakeEntityGateway:
        if table not in self.gateways:
            self.gateways[table] = FakeEntityGateway(table)
        return self.gateways[table]


@pytest.fixture
def facade():
    """Scripted remote facade"""
    return FakeFacade()


# =============================================================================
# OFFLINE LAYER FIXTURES
# =============================================================================

@pytest.fixture
def settings(tmp_path):
    """Settings with background sync disabled so passes run only when called"""
    return SyncSettings(db_path=tmp_path / "bp_tracker.db", auto_sync=False)


@pytest.fixture
def store(settings):
    """Temporary SQLite-backed store"""
    local_store = LocalStore(settings.db_path)
    local_store.initialize()
    yield local_store
    local_store.close()


@pytest.fixture
def monitor(settings):
    """Connection monitor driven by set_online() (no network probes)"""
    connection = ConnectionManager(settings)
    connection.set_online(False)
    return connection


@pytest.fixture
def manager(facade, store, monitor, settings):
    """Offline storage manager for user-1"""
    storage = OfflineStorageManager("user-1", facade, store, monitor, settings=settings)
    yield storage
    storage.close()


# =============================================================================
# MOCK FIXTURES
# =============================================================================

@pytest.fixture
def mock_streamlit(monkeypatch):
    """Mock the Streamlit module used by the error handlers"""
    mock_st = MagicMock()
    mock_st.session_state = {}
    monkeypatch.setattr("bp_core.errors.handlers.st", mock_st)
    return mock_st


@pytest.fixture
def mock_supabase():
    """Mock Supabase client"""
    mock_client = MagicMock()
    mock_client.table.return_value.select.return_value.eq.return_value.limit.return_value.execute.return_value.data = []
    mock_client.table.return_value.insert.return_value.execute.return_value.data = []
    return mock_client
