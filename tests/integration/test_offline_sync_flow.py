# =============================================================================
# tests/integration/test_offline_sync_flow.py
# Integration Tests for offline recording -> sync -> conflict resolution
# =============================================================================

import threading
import pytest

from bp_core.data.remote import CONFLICT, NETWORK_ERROR, RemoteResult

READINGS = "blood_pressure_readings"


def conflict_result(server_record):
    return RemoteResult.failure(CONFLICT, "modified on server", {"server_record": server_record})


class TestSyncPass:
    """Replay of the queue against the facade"""

    def test_offline_reading_synced_after_reconnect(self, manager, monitor, facade):
        """Reading queued offline is created remotely once online"""
        result = manager.create_reading_offline({
            "user_id": "user-1",
            "systolic": 150,
            "diastolic": 95,
            "reading_time": "2024-05-01T08:30:00+00:00",
        })
        assert manager.get_pending_sync_count() == 1

        monitor.set_online(True)
        sync = manager.sync_offline_data()

        calls = facade.entity(READINGS).calls
        assert [call[0] for call in calls] == ["create"]
        assert calls[0][1]["systolic"] == 150
        assert sync.success
        assert [m.id for m in sync.synced] == [result.data.id]
        assert sync.synced[0].synced is True
        assert manager.get_pending_sync_count() == 0
        assert manager.get_offline_entities(READINGS) == []
        assert manager.get_last_sync_time() is not None

    def test_transient_failure_keeps_only_failed_mutation(self, manager, monitor, facade, reading_payload):
        """M1 fails transiently, M2 succeeds; M1 stays queued"""
        first = manager.create_reading_offline(reading_payload).data
        second = manager.create_reading_offline({**reading_payload, "systolic": 140}).data
        facade.entity(READINGS).script(
            RemoteResult.failure(NETWORK_ERROR, "Network error: timed out"),
        )

        monitor.set_online(True)
        sync = manager.sync_offline_data()

        assert not sync.success
        assert [e.mutation.id for e in sync.errors] == [first.id]
        assert sync.errors[0].code == NETWORK_ERROR
        assert [m.id for m in sync.synced] == [second.id]
        assert [m.id for m in manager.get_queue()] == [first.id]
        assert len(manager.get_offline_entities(READINGS)) == 1

    def test_failed_mutation_retried_next_pass(self, manager, monitor, facade, reading_payload):
        mutation = manager.create_reading_offline(reading_payload).data
        facade.entity(READINGS).script(RemoteResult.failure(NETWORK_ERROR, "offline"))
        monitor.set_online(True)

        manager.sync_offline_data()
        retry = manager.sync_offline_data()

        assert [m.id for m in retry.synced] == [mutation.id]
        assert [call[1]["local_id"] for call in facade.entity(READINGS).calls] == [mutation.local_id] * 2

    def test_facade_exception_reported_and_pass_continues(self, manager, monitor, facade, reading_payload):
        manager.create_reading_offline(reading_payload)
        manager.create_reading_offline(reading_payload)
        facade.entity(READINGS).script(RuntimeError("socket closed"))

        monitor.set_online(True)
        sync = manager.sync_offline_data()

        assert sync.errors[0].error == "socket closed"
        assert len(sync.synced) == 1
        assert manager.get_pending_sync_count() == 1

    def test_fifo_order_across_tables(self, manager, monitor, facade, reading_payload, symptom_payload):
        order = []
        facade.entity(READINGS).script(lambda payload: order.append("reading") or RemoteResult.success(payload))
        facade.entity("symptom_entries").script(lambda payload: order.append("symptom") or RemoteResult.success(payload))

        manager.create_symptom_entry_offline(symptom_payload)
        manager.create_reading_offline(reading_payload)
        monitor.set_online(True)
        manager.sync_offline_data()

        assert order == ["symptom", "reading"]

    def test_update_and_delete_dispatch(self, manager, monitor, facade):
        manager.record_mutation(READINGS, "UPDATE", {"id": "r-server", "notes": "after rest"})
        manager.record_mutation(READINGS, "DELETE", {"id": "r-other"})

        monitor.set_online(True)
        sync = manager.sync_offline_data()

        calls = facade.entity(READINGS).calls
        assert calls[0][0] == "update" and calls[0][1] == "r-server"
        assert calls[0][2]["notes"] == "after rest"
        assert calls[1] == ("soft_delete", "r-other")
        assert len(sync.synced) == 2
        assert manager.get_offline_entities(READINGS) == []

    def test_snapshot_kept_while_later_mutation_pending(self, manager, monitor, facade, reading_payload):
        """Insert synced, follow-up update fails: snapshot stays for the update"""
        entity = manager.create_reading_offline(reading_payload).metadata["entity"]
        manager.record_mutation(READINGS, "UPDATE", {"id": entity["id"], "notes": "after rest"})
        gateway = facade.entity(READINGS)
        gateway.script(
            RemoteResult.success(entity),
            RemoteResult.failure(NETWORK_ERROR, "offline"),
        )

        monitor.set_online(True)
        manager.sync_offline_data()

        snapshots = manager.get_offline_entities(READINGS)
        assert len(snapshots) == 1
        assert snapshots[0]["notes"] == "after rest"


class TestSyncProperties:
    """Idempotence and rejection"""

    def test_sync_while_offline_rejected(self, manager, reading_payload):
        manager.create_reading_offline(reading_payload)

        sync = manager.sync_offline_data()

        assert not sync.success
        assert sync.errors[0].error == "Device is offline"
        assert sync.errors[0].mutation is None
        assert manager.get_pending_sync_count() == 1

    def test_second_pass_with_empty_delta(self, manager, monitor, reading_payload):
        manager.create_reading_offline(reading_payload)
        monitor.set_online(True)
        manager.sync_offline_data()

        again = manager.sync_offline_data()

        assert again.success
        assert again.synced == [] and again.conflicts == [] and again.errors == []
        assert manager.get_pending_sync_count() == 0

    def test_concurrent_pass_rejected(self, manager, monitor, facade, reading_payload):
        """A pass started while another is in flight returns immediately"""
        manager.create_reading_offline(reading_payload)
        entered = threading.Event()
        release = threading.Event()

        def blocking_create(payload):
            entered.set()
            release.wait(timeout=5)
            return RemoteResult.success(payload)

        facade.entity(READINGS).script(blocking_create)
        monitor.set_online(True)

        results = []
        worker = threading.Thread(target=lambda: results.append(manager.sync_offline_data()))
        worker.start()
        assert entered.wait(timeout=5)

        queue_before = [m.to_dict() for m in manager.get_queue()]
        second = manager.sync_offline_data()
        queue_after = [m.to_dict() for m in manager.get_queue()]

        release.set()
        worker.join(timeout=5)

        assert not second.success
        assert second.errors[0].error == "Sync already in progress"
        assert queue_before == queue_after
        assert results[0].success
        assert manager.get_pending_sync_count() == 0

    def test_mutation_recorded_mid_pass_kept(self, manager, monitor, facade, reading_payload):
        """Entries enqueued during a pass are left for the next one"""
        manager.create_reading_offline(reading_payload)
        late = {}

        def create_and_enqueue(payload):
            late["mutation"] = manager.create_reading_offline({**reading_payload, "systolic": 142}).data
            return RemoteResult.success(payload)

        facade.entity(READINGS).script(create_and_enqueue)
        monitor.set_online(True)

        sync = manager.sync_offline_data()

        assert len(sync.synced) == 1
        assert [m.id for m in manager.get_queue()] == [late["mutation"].id]


class TestConflicts:
    """CONFLICT results and their resolution"""

    @pytest.fixture
    def conflicted(self, manager, monitor, facade, later_iso):
        """Offline note edit that meets a newer server edit"""
        mutation = manager.record_mutation(READINGS, "UPDATE", {"id": "r1", "notes": "felt dizzy"}).data
        server_record = {
            "id": "r1",
            "systolic": 130,
            "diastolic": 85,
            "reading_time": "2024-05-01T08:00:00+00:00",
            "notes": "dr called",
            "updated_at": later_iso,
        }
        facade.entity(READINGS).script(conflict_result(server_record))
        monitor.set_online(True)
        sync = manager.sync_offline_data()
        return mutation, server_record, sync

    def test_conflict_flagged_and_detailed(self, manager, conflicted):
        mutation, _, sync = conflicted

        assert sync.success
        assert [m.id for m in sync.conflicts] == [mutation.id]
        assert sync.conflict_details[0].fields == ["notes"]
        assert [m.id for m in manager.get_conflicts()] == [mutation.id]
        assert manager.get_conflicts()[0].conflict is True
        assert manager.get_conflict_details(mutation.id).fields == ["notes"]

    def test_conflicted_entry_replayed_next_pass(self, manager, facade, conflicted):
        """An unresolved conflict is retried and dequeued once the server accepts it"""
        mutation, _, _ = conflicted
        calls_before = len(facade.entity(READINGS).calls)

        again = manager.sync_offline_data()

        assert len(facade.entity(READINGS).calls) == calls_before + 1
        assert facade.entity(READINGS).calls[-1][:2] == ("update", "r1")
        assert [m.id for m in again.synced] == [mutation.id]
        assert manager.get_pending_sync_count() == 0
        assert manager.get_conflicts() == []

    def test_repeated_conflict_refreshes_server_record(self, manager, facade, conflicted):
        mutation, server_record, _ = conflicted
        newer = {**server_record, "notes": "dr called again"}
        facade.entity(READINGS).script(conflict_result(newer))

        again = manager.sync_offline_data()

        assert [m.id for m in again.conflicts] == [mutation.id]
        assert again.conflict_details[0].server_data["notes"] == "dr called again"
        assert manager.get_conflict_details(mutation.id).server_data["notes"] == "dr called again"

        assert manager.resolve_conflict(mutation, "merge")
        payload = facade.entity(READINGS).calls[-1][2]
        assert payload["notes"].startswith("dr called again")

    def test_replay_keeps_fifo_position(self, manager, facade, conflicted, reading_payload):
        mutation, _, _ = conflicted
        later = manager.create_reading_offline(reading_payload).data

        sync = manager.sync_offline_data()

        calls = facade.entity(READINGS).calls
        assert [call[0] for call in calls[-2:]] == ["update", "create"]
        assert [m.id for m in sync.synced] == [mutation.id, later.id]

    def test_merge_after_restart_fetches_server_record(self, manager, facade, store, monitor, settings, conflicted):
        """Resolution cache is in memory; a new manager fetches the row instead"""
        from bp_core.offline.offline_storage import OfflineStorageManager

        mutation, server_record, _ = conflicted
        manager.close()
        restarted = OfflineStorageManager("user-1", facade, store, monitor, settings=settings)
        gateway = facade.entity(READINGS)
        gateway.script(RemoteResult.success(server_record))

        conflict = restarted.get_conflicts()[0]
        assert restarted.resolve_conflict(conflict, "merge")

        assert gateway.calls[-2] == ("fetch", "r1")
        record_id, payload = gateway.calls[-1][1:]
        assert record_id == "r1"
        assert "dr called" in payload["notes"] and "felt dizzy" in payload["notes"]
        assert restarted.get_pending_sync_count() == 0
        restarted.close()

    def test_merge_resolution_keeps_both_notes(self, manager, facade, conflicted):
        mutation, _, _ = conflicted

        assert manager.resolve_conflict(manager.get_conflicts()[0], "merge")

        record_id, payload = facade.entity(READINGS).calls[-1][1:]
        assert record_id == "r1"
        assert "dr called" in payload["notes"] and "felt dizzy" in payload["notes"]
        assert manager.get_pending_sync_count() == 0
        assert manager.get_offline_entities(READINGS) == []

    def test_server_resolution_discards_local_change(self, manager, facade, conflicted):
        mutation, _, _ = conflicted
        calls_before = len(facade.entity(READINGS).calls)

        assert manager.resolve_conflict(mutation, "server")

        assert len(facade.entity(READINGS).calls) == calls_before
        assert manager.get_queue() == []

    def test_local_resolution_overwrites(self, manager, facade, conflicted):
        mutation, _, _ = conflicted

        assert manager.resolve_conflict(mutation, "local")

        payload = facade.entity(READINGS).calls[-1][2]
        assert payload["notes"] == "felt dizzy"
        assert payload["systolic"] == 130

    def test_failed_resolution_leaves_entry_conflicted(self, manager, facade, conflicted):
        mutation, _, _ = conflicted
        facade.entity(READINGS).script(RemoteResult.failure(NETWORK_ERROR, "offline"))

        assert manager.resolve_conflict(mutation, "merge") is False

        queue = manager.get_queue()
        assert [m.id for m in queue] == [mutation.id]
        assert queue[0].conflict is True

    def test_unknown_resolution_rejected(self, manager, conflicted):
        mutation, _, _ = conflicted

        assert manager.resolve_conflict(mutation, "newest") is False
        assert manager.get_pending_sync_count() == 1

    def test_merge_without_server_record_fails(self, manager, monitor, facade):
        mutation = manager.record_mutation(READINGS, "UPDATE", {"id": "r1", "notes": "x"}).data
        facade.entity(READINGS).script(RemoteResult.failure(CONFLICT, "modified"))
        monitor.set_online(True)
        manager.sync_offline_data()

        assert manager.resolve_conflict(mutation, "merge") is False
        assert facade.entity(READINGS).calls[-1] == ("fetch", "r1")
        assert manager.resolve_conflict(mutation, "merge", server_record={"id": "r1", "notes": "y"})
        assert manager.get_queue() == []

    def test_local_resolution_of_delete_soft_deletes(self, manager, monitor, facade, later_iso):
        mutation = manager.record_mutation(READINGS, "DELETE", {"id": "r1"}).data
        server_record = {"id": "r1", "is_deleted": False, "updated_at": later_iso}
        facade.entity(READINGS).script(conflict_result(server_record))
        monitor.set_online(True)
        sync = manager.sync_offline_data()

        assert sync.conflict_details[0].conflict_type.value == "update_vs_delete"
        assert manager.resolve_conflict(mutation, "local")
        assert facade.entity(READINGS).calls[-1] == ("soft_delete", "r1")
