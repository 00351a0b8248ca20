"""Sync orchestrator: hosting sessions on top of the lease and the working copy.

This is the only component the rest of an application talks to. It sequences
lease acquisition, pull, push and release, decides the compensating action
for every failure, and turns errors into SessionResult values.

Phases::

    IDLE -> ACQUIRING -> PULLING -> ACTIVE -> PUSHING -> RELEASING -> IDLE
                  \\          \\                  \\           \\
                   +----------+------------------+-----------+--> ERROR
"""

from __future__ import annotations

import hashlib
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable

from worldsync.core.config import SyncConfig
from worldsync.core.errors import NotLeaseHolderError, WorldSyncError
from worldsync.core.timer import PeriodicTask
from worldsync.lease.coordinator import LockCoordinator
from worldsync.lease.models import LeaseState, utcnow
from worldsync.lease.store import ContentsLeaseStore
from worldsync.replication.manager import ReplicationManager
from worldsync.replication.models import WorldRevision
from worldsync.sync.events import EventBus
from worldsync.sync.models import (
    EventKind,
    LeaseConflict,
    SessionPhase,
    SessionResult,
    SnapshotInfo,
    SnapshotKind,
    SyncEvent,
    SyncState,
)
from worldsync.sync.snapshots import SnapshotStore
from worldsync.sync.state import SyncStateStore

logger = logging.getLogger(__name__)

WORLD_INDEX_FILE = "level.dat"
MIN_WORLD_INDEX_SIZE = 100

_TRANSFER_PHASES = {
    SessionPhase.ACQUIRING,
    SessionPhase.PULLING,
    SessionPhase.PUSHING,
    SessionPhase.RELEASING,
}


def world_fingerprint(world_path: Path) -> str:
    """SHA-256 of the world index file, or ``"empty"`` when there is none."""
    index = world_path / WORLD_INDEX_FILE
    if not index.is_file():
        return "empty"
    digest = hashlib.sha256()
    with open(index, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def check_world_integrity(world_path: Path) -> str | None:
    """Return a warning message when the world index looks damaged."""
    index = world_path / WORLD_INDEX_FILE
    if not index.exists():
        logger.info("%s not found in %s; treating as a new world", WORLD_INDEX_FILE, world_path)
        return None
    size = index.stat().st_size
    if size < MIN_WORLD_INDEX_SIZE:
        message = f"{WORLD_INDEX_FILE} is only {size} bytes and may be corrupted"
        logger.warning("World integrity check failed: %s", message)
        return message
    return None


def _conflict_from(state: LeaseState) -> LeaseConflict:
    return LeaseConflict(
        holder_label=state.holder_label,
        holder_id=state.holder_id,
        acquired_at=state.acquired_at,
        expires_at=state.expires_at,
        reason=state.reason,
    )


class SyncOrchestrator:
    """
    Begin and end hosting sessions.

    Args:
        config: Sync configuration
        coordinator: Lease coordinator (its lease-lost callback is taken over)
        replication: Working copy manager
        snapshots: Local snapshot store
        state_store: SyncState persistence (None keeps state in memory only)
        events: Event bus for display surfaces
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        config: SyncConfig,
        coordinator: LockCoordinator,
        replication: ReplicationManager,
        snapshots: SnapshotStore,
        state_store: SyncStateStore | None = None,
        events: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.coordinator = coordinator
        self.replication = replication
        self.snapshots = snapshots
        self.state_store = state_store
        self.events = events or EventBus()
        self._clock = clock

        self._lock = threading.RLock()
        self._phase = SessionPhase.IDLE
        self._session_key: str | None = None
        self._lease_lost = threading.Event()

        loaded = state_store.load() if state_store else SyncState()
        # Nothing can be mid-transfer when the process starts.
        self._state = loaded.update(sync_in_progress=False)

        self._auto_snapshots: PeriodicTask | None = None
        if config.auto_snapshot_interval > 0:
            self._auto_snapshots = PeriodicTask("auto-snapshot", config.auto_snapshot_interval, self._auto_snapshot)

        coordinator.on_lease_lost = self._handle_lease_lost

    @classmethod
    def from_config(cls, config: SyncConfig) -> "SyncOrchestrator":
        """Wire the default components for ``config``."""
        coordinator = LockCoordinator(config, ContentsLeaseStore(config))
        return cls(
            config,
            coordinator,
            ReplicationManager(config),
            SnapshotStore(config.backup_path, config.max_snapshots),
            SyncStateStore(config.state_path),
            EventBus(config.journal_path),
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def session_key(self) -> str | None:
        return self._session_key

    @property
    def session_compromised(self) -> bool:
        """True once the lease was lost while a session was running."""
        return self._lease_lost.is_set()

    def get_sync_state(self) -> SyncState:
        return self._state

    def get_lease_state(self) -> LeaseState:
        """Fresh lease state from the remote."""
        return self.coordinator.get_state()

    def is_syncing(self) -> bool:
        return self._phase in _TRANSFER_PHASES

    def mark_pending_changes(self) -> None:
        with self._lock:
            self._set_state(pending_changes=True)

    def get_history(self, limit: int = 50, session_key: str | None = None) -> list[WorldRevision]:
        revisions = self.replication.get_history(limit)
        if session_key is not None:
            revisions = [revision for revision in revisions if revision.session_key == session_key]
        return revisions

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _set_state(self, **changes: object) -> None:
        self._state = self._state.update(**changes)
        if self.state_store is not None:
            try:
                self.state_store.save(self._state)
            except OSError as exc:
                logger.error("Could not persist sync state: %s", exc)

    def _emit(self, kind: EventKind, session_key: str | None, /, **detail: object) -> None:
        self.events.emit(SyncEvent(kind=kind, timestamp=self._clock(), session_key=session_key, detail=detail))

    def _fail(
        self,
        session_key: str,
        phase: SessionPhase,
        error: str,
        *,
        retryable: bool,
        conflict: LeaseConflict | None = None,
    ) -> SessionResult:
        self._phase = phase
        self._set_state(sync_in_progress=False, last_error=error)
        self._emit(EventKind.SYNC_FAILED, session_key, error=error, retryable=retryable)
        return SessionResult(
            success=False,
            phase=phase,
            session_key=session_key,
            error=error,
            retryable=retryable,
            conflict=conflict,
        )

    def _release_after_failure(self) -> None:
        try:
            if self.coordinator.release():
                self._emit(EventKind.LEASE_RELEASED, self._session_key)
            else:
                logger.error("Lease could not be released after a failed session start")
        except WorldSyncError as exc:
            logger.error("Lease release after a failed session start raised: %s", exc)

    def _handle_lease_lost(self, state: LeaseState) -> None:
        # Runs on the refresh thread, which release() may be joining while
        # holding self._lock: never block on it here.
        self._lease_lost.set()
        holder = f"{state.holder_label} ({state.holder_id})" if state.held else "nobody"
        logger.error(
            "Lease lost during session %s; record now held by %s. Local world changes must not be pushed",
            self._session_key,
            holder,
        )
        self._emit(EventKind.LEASE_LOST, self._session_key, holder_id=state.holder_id, holder_label=state.holder_label)

    def _start_auto_snapshots(self) -> None:
        if self._auto_snapshots is not None:
            self._auto_snapshots.start()

    def _stop_auto_snapshots(self) -> None:
        if self._auto_snapshots is not None:
            self._auto_snapshots.stop()

    def _auto_snapshot(self) -> bool:
        if not self._lock.acquire(blocking=False):
            return True  # a transition is running; try next tick
        try:
            if self._phase is not SessionPhase.ACTIVE or self._session_key is None:
                return False
            self.create_snapshot(self._session_key, "auto")
            return True
        finally:
            self._lock.release()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def begin_session(self, session_key: str) -> SessionResult:
        """
        Acquire the lease and bring the world up to date.

        Returns:
            SessionResult; on success the phase is ACTIVE and the world at
            ``world_path(session_key)`` is current
        """
        with self._lock:
            if self._phase in _TRANSFER_PHASES or self._phase is SessionPhase.ACTIVE:
                return SessionResult(
                    success=False,
                    phase=self._phase,
                    session_key=session_key,
                    error=f"Session {self._session_key} is already {self._phase.value}",
                )

            logger.info("Beginning session %s", session_key)
            self._emit(EventKind.SYNC_STARTED, session_key, direction="pull")
            self._phase = SessionPhase.ACQUIRING

            try:
                available = self.coordinator.is_available()
            except WorldSyncError as exc:
                return self._fail(session_key, SessionPhase.ERROR, f"Could not read lease: {exc}", retryable=exc.retryable)

            if not available:
                conflict = _conflict_from(self.coordinator.current_lease)
                logger.warning("Session %s not started: world is locked by %s", session_key, conflict.describe())
                return self._fail(
                    session_key,
                    SessionPhase.IDLE,
                    f"World is locked by {conflict.describe()}",
                    retryable=True,
                    conflict=conflict,
                )

            try:
                acquired = self.coordinator.acquire(f"Hosting session: {session_key}")
            except WorldSyncError as exc:
                # An attempt may have landed before the failure surfaced.
                self._release_after_failure()
                return self._fail(session_key, SessionPhase.ERROR, f"Could not acquire lease: {exc}", retryable=exc.retryable)

            if not acquired:
                state = self.coordinator.current_lease
                return self._fail(
                    session_key,
                    SessionPhase.IDLE,
                    "Failed to acquire lease - another host may have just started",
                    retryable=True,
                    conflict=_conflict_from(state) if state.held else None,
                )

            self._lease_lost.clear()
            self._session_key = session_key
            self._emit(EventKind.LEASE_ACQUIRED, session_key, holder_id=self.coordinator.holder_id)

            self._phase = SessionPhase.PULLING
            self._set_state(sync_in_progress=True, session_key=session_key)
            try:
                self.replication.initialize(timeout=self.config.sync_timeout)
                transfer = self.replication.pull(timeout=self.config.sync_timeout)
            except WorldSyncError as exc:
                logger.error("Pull failed for session %s: %s; releasing lease", session_key, exc)
                self._release_after_failure()
                self._session_key = None
                return self._fail(session_key, SessionPhase.ERROR, f"Failed to download world: {exc}", retryable=True)

            warnings: list[str] = []
            warning = check_world_integrity(self.replication.world_path(session_key))
            if warning:
                warnings.append(warning)

            self._set_state(
                last_sync_time=self._clock(),
                last_revision_id=transfer.revision_id,
                sync_in_progress=False,
                last_error=None,
                session_key=session_key,
                pending_changes=True,
            )
            self._phase = SessionPhase.ACTIVE
            self._start_auto_snapshots()
            self._emit(
                EventKind.SYNC_COMPLETED,
                session_key,
                direction="pull",
                revision_id=transfer.revision_id,
                changed_count=transfer.changed_count,
            )
            logger.info("Session %s active at revision %s", session_key, transfer.revision_id)
            return SessionResult(
                success=True,
                phase=SessionPhase.ACTIVE,
                session_key=session_key,
                revision_id=transfer.revision_id,
                changed_count=transfer.changed_count,
                warnings=tuple(warnings),
            )

    def end_session(self, session_key: str) -> SessionResult:
        """
        Snapshot, push and release.

        If the push fails the lease is kept and the session stays ACTIVE so
        the caller can retry; a release failure after a successful push is
        reported with the lease still held and refreshing.
        """
        self._stop_auto_snapshots()
        with self._lock:
            if self._session_key is not None and self._session_key != session_key:
                return SessionResult(
                    success=False,
                    phase=self._phase,
                    session_key=session_key,
                    error=f"Active session is {self._session_key}, not {session_key}",
                )

            try:
                holder = self.coordinator.is_holder()
            except WorldSyncError as exc:
                self._start_auto_snapshots()
                return self._fail(session_key, self._phase, f"Could not read lease: {exc}", retryable=exc.retryable)

            if not holder:
                error = "Cannot sync - this host does not hold the lease"
                if self._lease_lost.is_set():
                    error += " (it was lost during the session; local changes were not pushed)"
                return self._fail(session_key, SessionPhase.ERROR, error, retryable=False)

            logger.info("Ending session %s", session_key)
            self._emit(EventKind.SYNC_STARTED, session_key, direction="push")
            self._phase = SessionPhase.PUSHING
            self._set_state(sync_in_progress=True)

            warnings: list[str] = []
            try:
                self.create_snapshot(session_key, "pre-shutdown")
            except (OSError, WorldSyncError) as exc:
                logger.error("Pre-shutdown snapshot failed: %s", exc)
                warnings.append(f"pre-shutdown snapshot failed: {exc}")

            world_path = self.replication.world_path(session_key)
            message = (
                f"[session:{session_key}] World save - {self._clock().isoformat()}\n\n"
                f"Hash: {world_fingerprint(world_path)}"
            )
            try:
                transfer = self.replication.push(message, timeout=self.config.sync_timeout)
            except WorldSyncError as exc:
                logger.error("Push failed for session %s: %s; keeping the lease", session_key, exc)
                self._set_state(pending_changes=True)
                self._start_auto_snapshots()
                return self._fail(session_key, SessionPhase.ACTIVE, f"Failed to upload world: {exc}", retryable=True)

            self._set_state(
                last_sync_time=self._clock(),
                last_revision_id=transfer.revision_id,
                sync_in_progress=False,
                pending_changes=False,
                last_error=None,
            )

            self._phase = SessionPhase.RELEASING
            try:
                released = self.coordinator.release()
                release_error = None if released else "lease record changed or is held by another host"
            except WorldSyncError as exc:
                released = False
                release_error = str(exc)

            if not released:
                logger.error("World pushed at %s but lease release failed: %s", transfer.revision_id, release_error)
                result = self._fail(
                    session_key,
                    SessionPhase.ACTIVE,
                    f"World uploaded but lease release failed: {release_error}",
                    retryable=True,
                )
                return SessionResult(
                    success=False,
                    phase=result.phase,
                    session_key=session_key,
                    revision_id=transfer.revision_id,
                    changed_count=transfer.changed_count,
                    error=result.error,
                    retryable=True,
                    warnings=tuple(warnings),
                )

            self._emit(EventKind.LEASE_RELEASED, session_key)
            self._emit(
                EventKind.SYNC_COMPLETED,
                session_key,
                direction="push",
                revision_id=transfer.revision_id,
                changed_count=transfer.changed_count,
            )
            self._phase = SessionPhase.IDLE
            self._session_key = None
            logger.info("Session %s ended; world uploaded at %s", session_key, transfer.revision_id)
            return SessionResult(
                success=True,
                phase=SessionPhase.IDLE,
                session_key=session_key,
                revision_id=transfer.revision_id,
                changed_count=transfer.changed_count,
                warnings=tuple(warnings),
            )

    def emergency_release(self, reason: str) -> bool:
        """
        Force-release the lease whoever holds it. Operator use only.

        Only safe once the holder is known to be gone; a live holder keeps
        writing to a world it no longer owns.
        """
        logger.warning("Emergency lease release requested: %s", reason)
        self._stop_auto_snapshots()
        with self._lock:
            released = self.coordinator.force_release(reason)
            if released:
                self._emit(EventKind.LEASE_RELEASED, self._session_key, forced=True, reason=reason)
                if self._phase is not SessionPhase.IDLE:
                    self._phase = SessionPhase.IDLE
                    self._session_key = None
            return released

    # ------------------------------------------------------------------
    # Snapshots and restore
    # ------------------------------------------------------------------

    def create_snapshot(self, session_key: str, kind: SnapshotKind = "manual") -> SnapshotInfo:
        with self._lock:
            info = self.snapshots.create(
                session_key,
                self.replication.world_path(session_key),
                kind=kind,
                revision_id=self.replication.current_revision(),
            )
            self._emit(EventKind.SNAPSHOT_CREATED, session_key, snapshot_id=info.id, kind=kind)
            return info

    def restore_snapshot(self, session_key: str, snapshot_id: str) -> SnapshotInfo:
        """
        Replace the session's world directory with a snapshot.

        Requires the lease: the restored world is pushed at the end of the
        session like any other change.

        Raises:
            NotLeaseHolderError: This host does not hold the lease
            SnapshotNotFoundError: No such snapshot
            SnapshotCorruptError: The snapshot failed its content-hash check
        """
        with self._lock:
            if not (self.coordinator.holds_lease or self.coordinator.is_holder()):
                raise NotLeaseHolderError("Must hold the lease to restore a snapshot")
            info = self.snapshots.restore(
                session_key,
                snapshot_id,
                self.replication.world_path(session_key),
                revision_id=self.replication.current_revision(),
            )
            self._set_state(pending_changes=True)
            return info

    def restore_to_revision(self, revision_id: str) -> WorldRevision:
        """
        Rewrite shared history back to ``revision_id`` (destructive).

        Raises:
            NotLeaseHolderError: This host does not hold the lease
        """
        with self._lock:
            if not self.coordinator.is_holder():
                raise NotLeaseHolderError("Must hold the lease to restore a revision")
            revision = self.replication.restore(revision_id, timeout=self.config.sync_timeout)
            self._set_state(last_sync_time=self._clock(), last_revision_id=revision.revision_id, last_error=None)
            return revision

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def close(self) -> None:
        """
        Stop timers, release the lease and save state.

        A lease over an active session with unpushed changes is kept, so the
        same host re-adopts it on restart instead of exposing a stale world.
        """
        self._stop_auto_snapshots()
        with self._lock:
            if self.coordinator.holds_lease:
                if self._phase is SessionPhase.ACTIVE and self._state.pending_changes:
                    logger.warning(
                        "Closing with unpushed changes in session %s; keeping the lease for re-adoption",
                        self._session_key,
                    )
                else:
                    try:
                        if self.coordinator.release():
                            self._emit(EventKind.LEASE_RELEASED, self._session_key)
                    except WorldSyncError as exc:
                        logger.error("Lease release on close failed: %s", exc)
            self.coordinator.close()
            self.coordinator.store.close()
            self._set_state(sync_in_progress=False)


__all__ = ["SyncOrchestrator", "check_world_integrity", "world_fingerprint"]
