"""Tests for SyncOrchestrator session transitions and failure handling."""

import hashlib
import threading
from unittest.mock import MagicMock

import pytest

from worldsync.core.errors import (
    LeaseConflictError,
    NotLeaseHolderError,
    OperationTimeoutError,
    RemoteUnavailableError,
    TransientReplicationError,
)
from worldsync.lease.coordinator import LockCoordinator
from worldsync.replication.manager import ReplicationManager
from worldsync.replication.models import TransferResult, WorldRevision
from worldsync.sync.events import EventBus
from worldsync.sync.models import EventKind, SessionPhase
from worldsync.sync.orchestrator import SyncOrchestrator
from worldsync.sync.snapshots import SnapshotStore
from worldsync.sync.state import SyncStateStore


@pytest.fixture
def replication(tmp_path):
    manager = MagicMock(spec=ReplicationManager)
    repo = tmp_path / "repo"
    manager.world_path.side_effect = lambda key: repo / "worlds" / key
    manager.pull.return_value = TransferResult("rev-pulled", 3)
    manager.push.return_value = TransferResult("rev-pushed", 2)
    manager.current_revision.return_value = "rev-pulled"
    return manager


@pytest.fixture
def make_orchestrator(config, lease_store, clock, replication, tmp_path):
    created = []

    def factory(holder_id="host-a", cfg=None):
        cfg = cfg or config
        coordinator = LockCoordinator(
            cfg,
            lease_store,
            holder_id=holder_id,
            holder_label=f"{holder_id}-label",
            session_token=f"{holder_id}-token",
            clock=clock,
        )
        orchestrator = SyncOrchestrator(
            cfg,
            coordinator,
            replication,
            SnapshotStore(tmp_path / holder_id / "backups", max_snapshots=5, clock=clock),
            SyncStateStore(tmp_path / holder_id / "sync-state.json"),
            EventBus(tmp_path / holder_id / "events.jsonl"),
            clock=clock,
        )
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        orchestrator._stop_auto_snapshots()
        orchestrator.coordinator.close()


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


@pytest.fixture
def events(orchestrator):
    received = []
    orchestrator.events.subscribe(received.append)
    return received


def kinds(events):
    return [event.kind for event in events]


def write_world(replication, key="alpha", size=200):
    world = replication.world_path(key)
    world.mkdir(parents=True, exist_ok=True)
    (world / "level.dat").write_bytes(b"\x0a" * size)
    return world


# ============================================================================
# begin_session
# ============================================================================


def test_begin_session_acquires_and_pulls(orchestrator, lease_store, replication, events):
    result = orchestrator.begin_session("alpha")

    assert result.success
    assert result.phase is SessionPhase.ACTIVE
    assert (result.revision_id, result.changed_count) == ("rev-pulled", 3)
    assert lease_store.record.holder_id == "host-a"
    assert lease_store.record.reason == "Hosting session: alpha"
    replication.initialize.assert_called_once()
    replication.pull.assert_called_once_with(timeout=60)

    state = orchestrator.get_sync_state()
    assert state.last_revision_id == "rev-pulled"
    assert state.session_key == "alpha"
    assert state.pending_changes
    assert not state.sync_in_progress
    assert kinds(events) == [EventKind.SYNC_STARTED, EventKind.LEASE_ACQUIRED, EventKind.SYNC_COMPLETED]


def test_begin_session_conflict_reports_holder_without_side_effects(
    orchestrator, lease_store, make_record, replication, clock
):
    lease_store.put(make_record("host-b"))
    version = lease_store.version

    result = orchestrator.begin_session("alpha")

    assert not result.success
    assert result.retryable
    assert result.conflict.holder_id == "host-b"
    assert result.conflict.holder_label == "host-b-label"
    assert result.conflict.acquired_at == clock.now
    assert "host-b-label" in result.error
    assert lease_store.version == version
    replication.pull.assert_not_called()
    assert orchestrator.phase is SessionPhase.IDLE


def test_begin_session_lost_acquire_race(orchestrator, lease_store, replication):
    lease_store.failures["write"].append(LeaseConflictError("raced"))

    result = orchestrator.begin_session("alpha")

    assert not result.success
    assert result.retryable
    replication.pull.assert_not_called()
    assert lease_store.record is None


def test_pull_failure_releases_lease(orchestrator, lease_store, replication, events):
    replication.pull.side_effect = TransientReplicationError("fetch", "could not resolve host")

    result = orchestrator.begin_session("alpha")

    assert not result.success
    assert result.retryable
    assert result.phase is SessionPhase.ERROR
    assert lease_store.record is None
    assert not orchestrator.coordinator.refreshing
    assert "Failed to download world" in orchestrator.get_sync_state().last_error
    assert EventKind.LEASE_RELEASED in kinds(events)
    assert kinds(events)[-1] is EventKind.SYNC_FAILED


def test_pull_timeout_releases_lease(orchestrator, lease_store, replication):
    replication.pull.side_effect = OperationTimeoutError("pull", 60)

    result = orchestrator.begin_session("alpha")

    assert not result.success
    assert result.retryable
    assert result.phase is SessionPhase.ERROR
    assert lease_store.record is None
    assert not orchestrator.coordinator.refreshing


def test_acquire_timeout_releases_a_landed_write(orchestrator, lease_store, replication, monkeypatch):
    write = lease_store.write

    def write_then_time_out(record, version, message, deadline=None):
        write(record, version, message, deadline)
        raise OperationTimeoutError("lease acquire", 10)

    monkeypatch.setattr(lease_store, "write", write_then_time_out)

    result = orchestrator.begin_session("alpha")

    assert not result.success
    assert result.retryable
    assert result.phase is SessionPhase.ERROR
    assert "Could not acquire lease" in result.error
    assert lease_store.record is None
    assert "Release lock" in lease_store.messages
    replication.pull.assert_not_called()


def test_integrity_warning_does_not_fail_begin(orchestrator, replication, lease_store):
    write_world(replication, size=10)

    result = orchestrator.begin_session("alpha")

    assert result.success
    assert any("level.dat" in warning for warning in result.warnings)
    assert lease_store.record.holder_id == "host-a"


def test_begin_while_active_is_refused(orchestrator):
    assert orchestrator.begin_session("alpha").success

    result = orchestrator.begin_session("beta")

    assert not result.success
    assert "already active" in result.error


# ============================================================================
# end_session
# ============================================================================


def test_end_session_snapshots_pushes_and_releases(orchestrator, lease_store, replication, events):
    orchestrator.begin_session("alpha")
    world = write_world(replication)
    expected_hash = hashlib.sha256((world / "level.dat").read_bytes()).hexdigest()

    result = orchestrator.end_session("alpha")

    assert result.success
    assert result.phase is SessionPhase.IDLE
    assert result.revision_id == "rev-pushed"
    message = replication.push.call_args.args[0]
    assert message.startswith("[session:alpha] World save - ")
    assert message.endswith(f"\n\nHash: {expected_hash}")
    assert lease_store.record is None

    state = orchestrator.get_sync_state()
    assert not state.pending_changes
    assert state.last_revision_id == "rev-pushed"
    assert state.last_error is None
    assert orchestrator.snapshots.list("alpha")[0].kind == "pre-shutdown"
    assert kinds(events)[-2:] == [EventKind.LEASE_RELEASED, EventKind.SYNC_COMPLETED]


def test_commit_fingerprint_for_missing_world(orchestrator, replication):
    orchestrator.begin_session("alpha")
    orchestrator.end_session("alpha")
    assert replication.push.call_args.args[0].endswith("Hash: empty")


def test_push_failure_keeps_lease_and_session(orchestrator, lease_store, replication):
    orchestrator.begin_session("alpha")
    write_world(replication)
    replication.push.side_effect = TransientReplicationError("push", "connection reset")

    result = orchestrator.end_session("alpha")

    assert not result.success
    assert result.retryable
    assert result.phase is SessionPhase.ACTIVE
    assert lease_store.record.holder_id == "host-a"
    assert orchestrator.coordinator.refreshing
    state = orchestrator.get_sync_state()
    assert state.pending_changes
    assert "Failed to upload world" in state.last_error
    assert len(orchestrator.snapshots.list("alpha")) == 1

    replication.push.side_effect = None
    assert orchestrator.end_session("alpha").success
    assert lease_store.record is None


def test_push_timeout_keeps_lease_and_session(orchestrator, lease_store, replication):
    orchestrator.begin_session("alpha")
    replication.push.side_effect = OperationTimeoutError("push", 60)

    result = orchestrator.end_session("alpha")

    assert not result.success
    assert result.retryable
    assert result.phase is SessionPhase.ACTIVE
    assert orchestrator.phase is SessionPhase.ACTIVE
    assert lease_store.record.holder_id == "host-a"
    assert orchestrator.get_sync_state().pending_changes


def test_release_failure_after_push_keeps_refreshing(orchestrator, lease_store, replication):
    orchestrator.begin_session("alpha")
    lease_store.failures["delete"].append(RemoteUnavailableError("HTTP 503", operation="delete", status_code=503))

    result = orchestrator.end_session("alpha")

    assert not result.success
    assert result.retryable
    assert result.revision_id == "rev-pushed"
    assert lease_store.record.holder_id == "host-a"
    assert orchestrator.coordinator.refreshing
    assert not orchestrator.get_sync_state().pending_changes


def test_end_session_without_lease_is_refused(orchestrator, lease_store, make_record, replication):
    lease_store.put(make_record("host-b"))

    result = orchestrator.end_session("alpha")

    assert not result.success
    assert not result.retryable
    replication.push.assert_not_called()
    assert lease_store.record.holder_id == "host-b"


def test_lease_lost_marks_session_compromised(orchestrator, lease_store, make_record, replication, events):
    orchestrator.begin_session("alpha")
    lease_store.put(make_record("host-b"))

    assert orchestrator.coordinator.refresh() is False
    assert orchestrator.session_compromised
    assert kinds(events)[-1] is EventKind.LEASE_LOST
    assert events[-1].detail["holder_id"] == "host-b"

    result = orchestrator.end_session("alpha")
    assert not result.success
    assert "lost" in result.error
    replication.push.assert_not_called()


def test_end_session_from_a_new_process(make_orchestrator, lease_store, replication):
    first = make_orchestrator()
    first.begin_session("alpha")
    first.close()
    assert lease_store.record.holder_id == "host-a"

    second = make_orchestrator()
    result = second.end_session("alpha")

    assert result.success
    assert lease_store.record is None


# ============================================================================
# Operator operations
# ============================================================================


def test_emergency_release(orchestrator, lease_store, make_record, events):
    lease_store.put(make_record("crashed-host"))

    assert orchestrator.emergency_release("host crashed") is True
    assert lease_store.record is None
    assert events[-1].kind is EventKind.LEASE_RELEASED
    assert events[-1].detail["forced"] is True


def test_restore_to_revision_requires_lease(orchestrator, replication):
    with pytest.raises(NotLeaseHolderError):
        orchestrator.restore_to_revision("abc123")
    replication.restore.assert_not_called()


def test_restore_to_revision(orchestrator, replication, clock):
    orchestrator.begin_session("alpha")
    replication.restore.return_value = WorldRevision("abc123", "[session:alpha] good", clock.now, "host-a", "alpha")

    revision = orchestrator.restore_to_revision("abc123")

    assert revision.revision_id == "abc123"
    replication.restore.assert_called_once_with("abc123", timeout=60)
    assert orchestrator.get_sync_state().last_revision_id == "abc123"


def test_snapshot_create_and_restore(orchestrator, replication, events):
    orchestrator.begin_session("alpha")
    world = write_world(replication)
    snapshot = orchestrator.create_snapshot("alpha")
    (world / "level.dat").write_bytes(b"griefed")

    restored = orchestrator.restore_snapshot("alpha", snapshot.id)

    assert restored.id == snapshot.id
    assert (world / "level.dat").read_bytes() == b"\x0a" * 200
    assert EventKind.SNAPSHOT_CREATED in kinds(events)
    assert orchestrator.get_sync_state().pending_changes


def test_restore_snapshot_requires_lease(orchestrator, replication):
    write_world(replication)
    snapshot = orchestrator.create_snapshot("alpha")

    with pytest.raises(NotLeaseHolderError):
        orchestrator.restore_snapshot("alpha", snapshot.id)


def test_auto_snapshots_while_active(make_orchestrator, config):
    orchestrator = make_orchestrator(cfg=config.with_overrides(auto_snapshot_interval=0.02))
    created = threading.Event()
    orchestrator.events.subscribe(lambda event: event.kind is EventKind.SNAPSHOT_CREATED and created.set())

    orchestrator.begin_session("alpha")

    assert created.wait(5)
    assert orchestrator.snapshots.list("alpha")[0].kind == "auto"


# ============================================================================
# Status and shutdown
# ============================================================================


def test_state_is_persisted(orchestrator, tmp_path):
    orchestrator.begin_session("alpha")
    orchestrator.mark_pending_changes()

    stored = SyncStateStore(tmp_path / "host-a" / "sync-state.json").load()

    assert stored.session_key == "alpha"
    assert stored.last_revision_id == "rev-pulled"
    assert stored.pending_changes


def test_is_syncing_only_during_transfers(orchestrator, replication):
    seen = []
    replication.pull.side_effect = lambda timeout: seen.append(orchestrator.is_syncing()) or TransferResult("r", 0)

    orchestrator.begin_session("alpha")

    assert seen == [True]
    assert not orchestrator.is_syncing()


def test_close_keeps_lease_with_unpushed_changes(orchestrator, lease_store):
    orchestrator.begin_session("alpha")

    orchestrator.close()

    assert lease_store.record.holder_id == "host-a"
    assert not orchestrator.coordinator.refreshing
    assert lease_store.closed


def test_close_releases_idle_lease(orchestrator, lease_store):
    orchestrator.coordinator.acquire("maintenance")

    orchestrator.close()

    assert lease_store.record is None


def test_get_history_filters_by_session(orchestrator, replication, clock):
    replication.get_history.return_value = [
        WorldRevision("c3", "[session:alpha] 3", clock.now, "a", "alpha"),
        WorldRevision("c2", "[session:beta] 2", clock.now, "a", "beta"),
        WorldRevision("c1", "[session:alpha] 1", clock.now, "a", "alpha"),
    ]

    revisions = orchestrator.get_history(10, session_key="alpha")

    assert [revision.revision_id for revision in revisions] == ["c3", "c1"]
    replication.get_history.assert_called_once_with(10)
