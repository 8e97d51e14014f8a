# =============================================================================
# bp_core/offline/__init__.py
# Offline-First Sync Layer for BP Tracker
# =============================================================================
"""
Offline-First Sync Layer

Readings, symptoms and medications can be logged with or without a
connection. Changes are stored locally first and replayed to Supabase when
the device is online.

Architecture:
------------
┌─────────────────────────────────────────────────────────────────┐
│                      OFFLINE SYNC LAYER                          │
├─────────────────────────────────────────────────────────────────┤
│                                                                  │
│   ┌──────────────────────────────────────────────────────────┐  │
│   │               OfflineStorageManager                       │  │
│   │     (record_mutation / sync_offline_data / resolve)       │  │
│   └──────────────────────────────────────────────────────────┘  │
│          │                  │                     │              │
│          ▼                  ▼                     ▼              │
│   ┌──────────────┐  ┌────────────────┐  ┌──────────────────┐   │
│   │  LocalStore  │  │ ConnectionMgr  │  │ ConflictResolver │   │
│   │   (SQLite)   │  │(Online/Offline)│  │ (local/server/   │   │
│   │ queue + data │  │                │  │      merge)      │   │
│   └──────────────┘  └────────────────┘  └──────────────────┘   │
│          │                                                       │
│          ▼  FIFO replay                                          │
│   ┌──────────────────────────────────────────────────────────┐  │
│   │        SupabaseDataFacade (bp_core.data)                  │  │
│   └──────────────────────────────────────────────────────────┘  │
└─────────────────────────────────────────────────────────────────┘

Usage:
------
from bp_core.offline import get_offline_storage

storage = get_offline_storage(user_id)
storage.create_reading_offline({...})

print(storage.is_online())               # True/False
print(storage.get_pending_sync_count())  # Mutations waiting for sync
result = storage.sync_offline_data()
"""

from bp_core.offline.models import (
    QueuedMutation,
    MutationAction,
    ConflictDetails,
    ConflictType,
    ConflictResolution,
    ConflictSummary,
    StrategyRecommendation,
    SyncError,
    SyncResult,
)

from bp_core.offline.local_store import (
    LocalStore,
    get_local_store,
)

from bp_core.offline.connection_manager import (
    ConnectionManager,
    ConnectionStatus,
    get_connection_manager,
)

from bp_core.offline.conflict_resolver import SyncConflictResolver

from bp_core.offline.offline_storage import (
    OfflineStorageManager,
    get_offline_storage,
)

__all__ = [
    # Records
    "QueuedMutation",
    "MutationAction",
    "ConflictDetails",
    "ConflictType",
    "ConflictResolution",
    "ConflictSummary",
    "StrategyRecommendation",
    "SyncError",
    "SyncResult",
    # Local Store
    "LocalStore",
    "get_local_store",
    # Connection Management
    "ConnectionManager",
    "ConnectionStatus",
    "get_connection_manager",
    # Conflicts
    "SyncConflictResolver",
    # Manager (Main API)
    "OfflineStorageManager",
    "get_offline_storage",
]
