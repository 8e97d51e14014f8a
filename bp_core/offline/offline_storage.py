# =============================================================================
# bp_core/offline/offline_storage.py
# Offline Storage Manager - queue, snapshots and sync passes per user session
# =============================================================================
"""
OfflineStorageManager - Records mutations locally and replays them to Supabase.

Every change the UI makes goes through record_mutation():
    1. Payload validated against the entity schema
    2. Local snapshot written (what the UI shows while offline)
    3. Mutation appended to the durable FIFO queue
    4. Sync pass kicked off in the background when online

sync_offline_data() replays the queue in order. Accepted mutations are
dequeued, conflicts are flagged for the user to resolve, anything else stays
queued for the next pass.

Usage:
    storage = get_offline_storage(user_id)
    result = storage.create_reading_offline({"systolic": 150, "diastolic": 95, ...})
    if not result:
        st.error(result.error)
    print(storage.get_pending_sync_count())
"""

from __future__ import annotations
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from bp_core.config import SyncSettings, load_settings
from bp_core.data.remote import DataFacade, RemoteResult
from bp_core.data.schemas import (
    ENTITY_TABLES,
    MEDICATIONS,
    READINGS,
    SYMPTOMS,
    TIME_FIELDS,
    apply_insert_defaults,
    validate_payload,
)
from bp_core.errors import (
    ConflictResolutionError,
    PayloadValidationError,
    StorageError,
    handle_error,
    safe_execute,
)
from bp_core.offline.conflict_resolver import SyncConflictResolver
from bp_core.offline.local_store import LocalStore
from bp_core.offline.models import (
    ConflictDetails,
    ConflictResolution,
    MutationAction,
    QueuedMutation,
    SyncError,
    SyncResult,
    parse_timestamp,
    utcnow,
)
from bp_core.services import BaseService, ServiceResult

SYNC_IN_PROGRESS = "Sync already in progress"
DEVICE_OFFLINE = "Device is offline"

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


class OfflineStorageManager(BaseService):
    """
    Owns one user's offline queue and entity snapshots.

    Dependencies are injected so tests can swap in fakes:
        facade:   DataFacade (SupabaseDataFacade in the app)
        store:    LocalStore
        monitor:  ConnectionManager (anything with is_online / on_status_change)
        resolver: SyncConflictResolver
    """

    def __init__(
        self,
        user_id: str,
        facade: DataFacade,
        store: LocalStore,
        monitor,
        resolver: Optional[SyncConflictResolver] = None,
        settings: Optional[SyncSettings] = None,
    ):
        super().__init__()
        self.user_id = user_id
        self.facade = facade
        self.store = store
        self.monitor = monitor
        self.resolver = resolver or SyncConflictResolver()
        self.settings = settings or SyncSettings()

        self._sync_lock = threading.Lock()
        self._queue_lock = threading.RLock()
        self._conflict_details: Dict[str, ConflictDetails] = {}
        self._server_records: Dict[str, Dict[str, Any]] = {}

        self._unsubscribe = self.monitor.on_status_change(self._handle_network_change)

    # =========================================================================
    # STORAGE KEYS
    # =========================================================================

    @property
    def key_prefix(self) -> str:
        return f"{self.settings.storage_prefix}:{self.user_id}:"

    def _key(self, name: str) -> str:
        return f"{self.key_prefix}{self.settings.storage_prefix}_{name}"

    @property
    def queue_key(self) -> str:
        return self._key("offline_queue")

    @property
    def last_sync_key(self) -> str:
        return self._key("last_sync")

    def data_key(self, table: str) -> str:
        return self._key(f"offline_data_{table}")

    # =========================================================================
    # QUEUE AND SNAPSHOT PERSISTENCE
    # =========================================================================

    def _load_queue(self) -> List[QueuedMutation]:
        return [QueuedMutation.from_dict(item) for item in self.store.get(self.queue_key, [])]

    @staticmethod
    def _dump_queue(queue: List[QueuedMutation]) -> List[Dict[str, Any]]:
        return [mutation.to_dict() for mutation in queue]

    def _load_snapshots(self, table: str) -> List[Dict[str, Any]]:
        return list(self.store.get(self.data_key(table), []))

    @staticmethod
    def _find_snapshot(
        snapshots: List[Dict[str, Any]],
        local_id: Optional[str],
        record_id: Optional[str],
    ) -> Optional[Dict[str, Any]]:
        for snapshot in snapshots:
            if local_id and snapshot.get("local_id") == local_id:
                return snapshot
        for snapshot in snapshots:
            if record_id and snapshot.get("id") == record_id:
                return snapshot
        return None

    def _apply_to_snapshots(
        self,
        snapshots: List[Dict[str, Any]],
        table: str,
        action: MutationAction,
        payload: Dict[str, Any],
        now_iso: str,
    ) -> Dict[str, Any]:
        """Write the change into the snapshot list; returns the visible entity."""
        if action == MutationAction.INSERT:
            entity = apply_insert_defaults(table, payload, now_iso)
            entity.update({
                "id": str(uuid.uuid4()),  # temporary client id
                "local_id": str(uuid.uuid4()),
                "sync_status": "pending",
                "created_at": now_iso,
                "updated_at": now_iso,
                "is_deleted": False,
            })
            snapshots.append(entity)
            return entity

        snapshot = self._find_snapshot(snapshots, payload.get("local_id"), payload.get("id"))
        if snapshot is None:
            snapshot = {"local_id": payload.get("local_id") or str(uuid.uuid4())}
            snapshots.append(snapshot)

        snapshot.update(payload)
        snapshot["updated_at"] = now_iso
        snapshot["sync_status"] = "pending"
        if action == MutationAction.DELETE:
            snapshot["is_deleted"] = True
        return snapshot

    def _remove_from_queue(self, mutation: QueuedMutation) -> None:
        """Dequeue a mutation and drop its snapshot unless another entry still needs it."""
        with self._queue_lock:
            queue = [m for m in self._load_queue() if m.id != mutation.id]
            items: Dict[str, Any] = {self.queue_key: self._dump_queue(queue)}

            local_id = mutation.local_id
            still_referenced = any(
                m.table == mutation.table and m.local_id == local_id for m in queue
            )
            if local_id and not still_referenced:
                snapshots = [
                    s for s in self._load_snapshots(mutation.table)
                    if s.get("local_id") != local_id
                ]
                items[self.data_key(mutation.table)] = snapshots

            self.store.set_many(items)

    def _save_queue_entry(self, mutation: QueuedMutation) -> None:
        """Persist the flags of one queued entry in place."""
        with self._queue_lock:
            queue = self._load_queue()
            for index, entry in enumerate(queue):
                if entry.id == mutation.id:
                    queue[index] = mutation
                    break
            self.store.set(self.queue_key, self._dump_queue(queue))

    # =========================================================================
    # RECORDING MUTATIONS
    # =========================================================================

    def record_mutation(self, table: str, action: Any, payload: Dict[str, Any]) -> ServiceResult:
        """
        Validate a change, store it locally and queue it for sync.

        Args:
            table: Entity table (blood_pressure_readings, symptom_entries, medication_entries)
            action: INSERT, UPDATE or DELETE
            payload: Entity fields; UPDATE and DELETE need the server ``id``

        Returns:
            ServiceResult with the QueuedMutation as data and the locally
            visible entity in metadata["entity"]
        """
        try:
            action = MutationAction(str(getattr(action, "value", action)).upper())
        except ValueError:
            return ServiceResult.fail(f"Unsupported mutation action: {action}", "VALIDATION_ERROR")

        try:
            cleaned = validate_payload(table, action, payload)
        except PayloadValidationError as e:
            self.logger.info(f"Rejected {table} {action.value}: {e.message}")
            return ServiceResult.fail(e.message, e.code, metadata={"issues": e.issues})

        now = utcnow()
        now_iso = now.isoformat()

        try:
            with self._queue_lock:
                snapshots = self._load_snapshots(table)
                entity = self._apply_to_snapshots(snapshots, table, action, cleaned, now_iso)

                if action == MutationAction.INSERT:
                    mutation_payload = dict(entity)
                else:
                    mutation_payload = {**cleaned, "local_id": entity["local_id"], "updated_at": now_iso}

                mutation = QueuedMutation(
                    table=table,
                    action=action,
                    payload=mutation_payload,
                    created_at=now,
                )
                queue = self._load_queue()
                queue.append(mutation)

                # Snapshot and queue land together or not at all
                self.store.set_many({
                    self.data_key(table): snapshots,
                    self.queue_key: self._dump_queue(queue),
                })
        except StorageError as e:
            self.logger.error(f"Failed to store {table} {action.value} offline: {e}")
            return ServiceResult.from_exception(e)

        self.logger.debug(f"Queued {action.value} on {table} ({mutation.id})")

        if self.settings.auto_sync and self.is_online():
            self._start_background_sync()

        return ServiceResult.ok(mutation, metadata={"entity": entity})

    def create_reading_offline(self, reading: Dict[str, Any]) -> ServiceResult:
        """Queue a new blood pressure reading."""
        return self.record_mutation(READINGS, MutationAction.INSERT, reading)

    def create_symptom_entry_offline(self, entry: Dict[str, Any]) -> ServiceResult:
        """Queue a new symptom entry."""
        return self.record_mutation(SYMPTOMS, MutationAction.INSERT, entry)

    def create_medication_entry_offline(self, entry: Dict[str, Any]) -> ServiceResult:
        """Queue a new medication entry."""
        return self.record_mutation(MEDICATIONS, MutationAction.INSERT, entry)

    # =========================================================================
    # SYNCHRONIZATION
    # =========================================================================

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    def sync_offline_data(self) -> SyncResult:
        """
        Replay the queue against the remote facade.

        Only one pass runs at a time; a call made while another pass is in
        flight, or while offline, returns a failed result without touching
        the queue.
        """
        if not self._sync_lock.acquire(blocking=False):
            return SyncResult.rejected(SYNC_IN_PROGRESS)

        try:
            if not self.is_online():
                return SyncResult.rejected(DEVICE_OFFLINE)

            with self.log_operation(f"Offline sync for {self.user_id}"):
                return self._run_sync_pass()
        finally:
            self._sync_lock.release()

    def _run_sync_pass(self) -> SyncResult:
        result = SyncResult()

        try:
            pending = [m for m in self._load_queue() if not m.synced]
        except StorageError as e:
            self.logger.error(f"Cannot read offline queue: {e}")
            return SyncResult(success=False, errors=[SyncError(None, e.message, e.code)])

        for mutation in pending:
            try:
                response = self._dispatch(mutation)
            except Exception as e:
                self.logger.error(f"Sync of {mutation.table} {mutation.action.value} raised: {e}")
                result.errors.append(SyncError(mutation, str(e) or "Sync operation failed"))
                continue

            try:
                self._apply_response(mutation, response, result)
            except StorageError as e:
                self.logger.error(f"Cannot update offline queue after sync: {e}")
                result.errors.append(SyncError(mutation, e.message, e.code))

        try:
            self.store.set(self.last_sync_key, utcnow().isoformat())
        except StorageError as e:
            result.errors.append(SyncError(None, e.message, e.code))

        result.success = not result.errors
        self.logger.info(
            f"Sync pass done: {len(result.synced)} synced, "
            f"{len(result.conflicts)} conflicts, {len(result.errors)} errors"
        )
        return result

    def _dispatch(self, mutation: QueuedMutation) -> RemoteResult:
        gateway = self.facade.entity(mutation.table)

        if mutation.action == MutationAction.INSERT:
            return gateway.create(mutation.payload)
        if mutation.action == MutationAction.UPDATE:
            return gateway.update(mutation.record_id, mutation.payload)
        return gateway.soft_delete(mutation.record_id)

    def _apply_response(self, mutation: QueuedMutation, response: RemoteResult, result: SyncResult) -> None:
        if response.ok:
            mutation.synced = True
            self._remove_from_queue(mutation)
            result.synced.append(mutation)
            return

        error = response.error
        if error.is_conflict:
            mutation.conflict = True
            self._save_queue_entry(mutation)
            result.conflicts.append(mutation)

            server_record = error.server_record
            if server_record:
                # Replace whatever an earlier pass saw with the current row
                self._server_records[mutation.id] = server_record
                details = self.resolver.detect_conflict(mutation, server_record)
                if details is not None:
                    self._conflict_details[mutation.id] = details
                    result.conflict_details.append(details)
                else:
                    self._conflict_details.pop(mutation.id, None)
            self.logger.warning(f"Conflict syncing {mutation.table} record {mutation.record_id}")
            return

        self.logger.warning(f"Sync of {mutation.table} {mutation.action.value} failed: [{error.code}] {error.message}")
        result.errors.append(SyncError(mutation, error.message or "Unknown sync error", error.code))

    def _start_background_sync(self) -> None:
        """Fire-and-forget sync pass on a daemon thread."""
        if self.is_syncing:
            return
        thread = threading.Thread(
            target=self._background_sync,
            daemon=True,
            name=f"OfflineSync-{self.user_id}",
        )
        thread.start()

    def _background_sync(self) -> None:
        try:
            self.sync_offline_data()
        except Exception as e:
            # No Streamlit context on this thread; log only
            handle_error(e, show_user_message=False)

    # =========================================================================
    # CONFLICT RESOLUTION
    # =========================================================================

    def get_conflicts(self) -> List[QueuedMutation]:
        """Queued mutations waiting for a conflict decision."""
        return [m for m in self.get_queue() if m.conflict]

    def get_conflict_details(self, mutation_id: str) -> Optional[ConflictDetails]:
        """Details detected for a conflicted mutation during the last pass."""
        return self._conflict_details.get(mutation_id)

    def resolve_conflict(
        self,
        mutation: QueuedMutation,
        resolution: Any,
        custom_fields: Optional[Dict[str, Any]] = None,
        server_record: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Apply a conflict decision to a queued mutation.

        server: the local change is discarded.
        local/merge: the resolved record is written through the facade; the
        entry is dequeued only if that write succeeds.

        Returns:
            True if the conflict is settled, False if the entry stays conflicted
        """
        try:
            strategy = ConflictResolution(getattr(resolution, "value", resolution))
        except ValueError:
            self.logger.error(f"Unknown conflict resolution: {resolution}")
            return False

        if strategy == ConflictResolution.SERVER:
            try:
                self._forget(mutation)
            except StorageError as e:
                self.logger.error(f"Failed to discard conflicted mutation {mutation.id}: {e}")
                return False
            return True

        if server_record is None:
            server_record = self._server_records.get(mutation.id)
        if server_record is None:
            server_record = self._fetch_server_record(mutation)
        if server_record is None and strategy == ConflictResolution.MERGE:
            self.logger.warning(f"Cannot merge {mutation.id}: server record unknown")
            return False

        cached = self._conflict_details.get(mutation.id)
        if cached is not None:
            fields = cached.fields
        elif server_record:
            fields = self.resolver.diverging_fields(mutation, server_record)
        else:
            fields = None
        conflict = self.resolver.describe(mutation, server_record or {}, fields=fields)

        try:
            resolved = self.resolver.resolve(conflict, strategy, custom_fields)
        except ConflictResolutionError as e:
            self.logger.error(f"Conflict resolution failed: {e}")
            return False

        try:
            gateway = self.facade.entity(mutation.table)
            if mutation.action == MutationAction.DELETE and strategy == ConflictResolution.LOCAL:
                response = gateway.soft_delete(mutation.record_id)
            else:
                response = gateway.update(resolved.get("id") or mutation.record_id, resolved)
        except Exception as e:
            self.logger.error(f"Applying {strategy.value} resolution raised: {e}")
            return False

        if not response.ok:
            self.logger.warning(
                f"Applying {strategy.value} resolution to {mutation.id} failed: "
                f"[{response.error.code}] {response.error.message}"
            )
            return False

        try:
            self._forget(mutation)
        except StorageError as e:
            self.logger.error(f"Resolved {mutation.id} remotely but could not dequeue it: {e}")
            return False

        self.logger.info(f"Resolved conflict {mutation.id} with {strategy.value}")
        return True

    def _fetch_server_record(self, mutation: QueuedMutation) -> Optional[Dict[str, Any]]:
        """Current server row for a conflicted entry (after a restart the cache is empty)."""
        if not mutation.record_id:
            return None
        try:
            response = self.facade.entity(mutation.table).fetch(mutation.record_id)
        except Exception as e:
            self.logger.warning(f"Fetching {mutation.table} record {mutation.record_id} raised: {e}")
            return None

        if not response.ok or not response.data:
            return None
        self._server_records[mutation.id] = response.data
        return response.data

    def _forget(self, mutation: QueuedMutation) -> None:
        self._remove_from_queue(mutation)
        self._conflict_details.pop(mutation.id, None)
        self._server_records.pop(mutation.id, None)

    # =========================================================================
    # NETWORK STATUS
    # =========================================================================

    def is_online(self) -> bool:
        return bool(self.monitor.is_online)

    def on_network_status_change(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        """Subscribe to online/offline transitions; returns the unsubscribe function."""
        return self.monitor.on_status_change(callback)

    def _handle_network_change(self, online: bool) -> None:
        if online and self.settings.auto_sync and self.get_pending_sync_count() > 0:
            self.logger.info("Connection restored, syncing offline data")
            self._start_background_sync()

    # =========================================================================
    # STATUS AND UTILITIES
    # =========================================================================

    def get_queue(self) -> List[QueuedMutation]:
        with self._queue_lock:
            return self._load_queue()

    def get_pending_sync_count(self) -> int:
        return sum(1 for m in self.get_queue() if not m.synced)

    def get_last_sync_time(self) -> Optional[datetime]:
        return parse_timestamp(self.store.get(self.last_sync_key))

    def get_offline_entities(self, table: str) -> List[Dict[str, Any]]:
        """Non-deleted local snapshots, newest first."""
        if table not in ENTITY_TABLES:
            raise ValueError(f"Unsupported table: {table}")

        time_field = TIME_FIELDS[table]
        entities = [s for s in self._load_snapshots(table) if not s.get("is_deleted")]
        return sorted(
            entities,
            key=lambda s: parse_timestamp(s.get(time_field)) or _OLDEST,
            reverse=True,
        )

    def offline_entities_frame(self, table: str) -> pd.DataFrame:
        """Local snapshots as a DataFrame (time column parsed to UTC datetimes)."""
        df = pd.DataFrame(self.get_offline_entities(table))
        time_field = TIME_FIELDS[table]
        if time_field in df.columns:
            df[time_field] = pd.to_datetime(df[time_field], utc=True, errors="coerce")
        return df

    def export_offline_data(self) -> Dict[str, Any]:
        """Everything held locally for this user, for backup."""
        last_sync = self.get_last_sync_time()
        return {
            "user_id": self.user_id,
            "queue": self._dump_queue(self.get_queue()),
            "entities": {table: self.get_offline_entities(table) for table in ENTITY_TABLES},
            "last_sync": last_sync.isoformat() if last_sync else None,
            "exported_at": utcnow().isoformat(),
        }

    def clear_offline_data(self) -> int:
        """Remove this user's queue, snapshots and sync timestamp. Returns keys removed."""
        with self._queue_lock:
            keys = self.store.keys(self.key_prefix)
            for key in keys:
                self.store.delete(key)
            self._conflict_details.clear()
            self._server_records.clear()

        self.logger.warning(f"Cleared offline data for {self.user_id} ({len(keys)} keys)")
        return len(keys)

    def get_status_display(self) -> Dict[str, Any]:
        """
        Get status information for UI display.

        A store that cannot be read shows as zero pending with an st.error
        instead of breaking the page.
        """
        message = "Could not read the offline queue"
        last_sync = safe_execute(self.get_last_sync_time, error_message=message)
        return {
            "is_online": self.is_online(),
            "is_syncing": self.is_syncing,
            "pending": safe_execute(self.get_pending_sync_count, default=0, error_message=message),
            "conflicts": len(safe_execute(self.get_conflicts, default=[], error_message=message)),
            "last_sync": last_sync.isoformat() if last_sync else None,
        }

    def close(self) -> None:
        """Stop listening to network changes."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None


# =============================================================================
# SESSION ACCESSOR
# =============================================================================

_manager: Optional[OfflineStorageManager] = None
_manager_lock = threading.Lock()


def _same_dependencies(manager: OfflineStorageManager, **supplied) -> bool:
    """True if every dependency the caller supplied is the one the manager holds."""
    return all(
        value is None or value is getattr(manager, name)
        for name, value in supplied.items()
    )


def get_offline_storage(
    user_id: str,
    facade: Optional[DataFacade] = None,
    store: Optional[LocalStore] = None,
    monitor=None,
    settings: Optional[SyncSettings] = None,
) -> OfflineStorageManager:
    """
    Get the manager for the signed-in user.

    A new manager is built when the user changes or when a dependency is
    passed that differs from the cached manager's. Missing dependencies
    default to the shared local store, the process-wide connection monitor
    and the Supabase facade.
    """
    global _manager
    with _manager_lock:
        if _manager is not None and _manager.user_id == user_id and _same_dependencies(
            _manager, facade=facade, store=store, monitor=monitor, settings=settings
        ):
            return _manager

        if _manager is not None:
            _manager.close()

        settings = settings or load_settings()
        if store is None:
            from bp_core.offline.local_store import get_local_store
            store = get_local_store(settings.db_path)
        if monitor is None:
            from bp_core.offline.connection_manager import get_connection_manager
            monitor = get_connection_manager()
        if facade is None:
            from bp_core.data.supabase_client import SupabaseDataFacade
            facade = SupabaseDataFacade()

        _manager = OfflineStorageManager(user_id, facade, store, monitor, settings=settings)
        return _manager
