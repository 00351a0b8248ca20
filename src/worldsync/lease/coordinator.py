"""Lock coordinator: lease acquire/release/refresh on top of a LeaseStore.

Cross-host mutual exclusion comes from the store's conditional writes; this
class only serializes its own state transitions (one RLock per instance) and
runs the refresh loop that keeps a held lease from expiring.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable

from worldsync.core.config import SyncConfig
from worldsync.core.errors import LeaseConflictError, WorldSyncError
from worldsync.core.identity import generate_token, get_holder_label, get_machine_id
from worldsync.core.retry import Deadline
from worldsync.core.timer import PeriodicTask
from worldsync.lease.models import LeaseRecord, LeaseState, StoredLease, utcnow
from worldsync.lease.store import LeaseStore

logger = logging.getLogger(__name__)


def default_holder_id(config: SyncConfig) -> str:
    """Machine id, qualified by the instance label when several instances share a machine."""
    machine_id = get_machine_id()
    if config.instance_label:
        return f"{machine_id}:{config.instance_label}"
    return machine_id


class LockCoordinator:
    """
    Time-bounded exclusive lease on the shared world.

    Args:
        config: Sync configuration (lease duration, refresh interval, timeouts)
        store: Conditional lease store
        holder_id: Identity written to the record (default: machine id)
        holder_label: Display name written to the record (default: hostname)
        session_token: Token of this coordinator instance (default: random)
        clock: Returns the current UTC time
        on_lease_lost: Called with the observed state when a refresh finds
            the lease taken over or gone
    """

    def __init__(
        self,
        config: SyncConfig,
        store: LeaseStore,
        *,
        holder_id: str | None = None,
        holder_label: str | None = None,
        session_token: str | None = None,
        clock: Callable[[], datetime] = utcnow,
        on_lease_lost: Callable[[LeaseState], None] | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.holder_id = holder_id or default_holder_id(config)
        self.holder_label = holder_label or get_holder_label()
        self.session_token = session_token or generate_token(16)
        self.on_lease_lost = on_lease_lost
        self._clock = clock
        self._duration = timedelta(seconds=config.lease_duration)

        self._lock = threading.RLock()
        self._held: LeaseRecord | None = None
        self._version: str | None = None
        self._observed = LeaseState()
        self._lost = False
        self._timer = PeriodicTask("lease-refresh", config.refresh_interval, self.refresh)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def current_lease(self) -> LeaseState:
        """Last observed lease state (advisory; may be stale)."""
        with self._lock:
            return self._observed

    @property
    def holds_lease(self) -> bool:
        """True if this instance believes it holds the lease (no remote call)."""
        with self._lock:
            return self._held is not None

    @property
    def lease_lost(self) -> bool:
        """True after a refresh found the lease taken over or removed."""
        with self._lock:
            return self._lost

    @property
    def refreshing(self) -> bool:
        return self._timer.running

    def _deadline(self, operation: str, timeout: float | None = None) -> Deadline:
        return Deadline(operation, timeout if timeout is not None else self.config.acquire_timeout)

    def _observe(self, stored: StoredLease | None) -> LeaseState:
        self._observed = LeaseState.from_record(stored.record if stored else None)
        return self._observed

    def _forget(self) -> None:
        self._held = None
        self._version = None

    def _new_record(self, now: datetime, reason: str) -> LeaseRecord:
        return LeaseRecord(
            held=True,
            holder_label=self.holder_label,
            holder_id=self.holder_id,
            acquired_at=now,
            expires_at=now + self._duration,
            reason=reason,
            session_token=self.session_token,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_state(self) -> LeaseState:
        """Fetch the lease record and return it as LeaseState."""
        with self._lock:
            return self._observe(self.store.read(self._deadline("lease read")))

    def is_holder(self) -> bool:
        state = self.get_state()
        return state.held and state.holder_id == self.holder_id

    def is_available(self) -> bool:
        """True if the lease is free, expired, or already ours."""
        state = self.get_state()
        if not state.held:
            return True
        if state.is_expired(self._clock()):
            return True
        return state.holder_id == self.holder_id

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    def acquire(self, reason: str = "Hosting server", timeout: float | None = None) -> bool:
        """
        Try to take the lease.

        Returns:
            True if this host now holds the lease, False if another host
            holds it or won a concurrent race

        Raises:
            RemoteUnavailableError: Transient failures outlasted the retry budget
            OperationTimeoutError: The overall acquire timeout elapsed
        """
        deadline = self._deadline("lease acquire", timeout)
        with self._lock:
            now = self._clock()
            stored = self.store.read(deadline)
            self._observe(stored)

            version: str | None = None
            if stored is None:
                record = self._new_record(now, reason)
            else:
                current = stored.record
                version = stored.version
                if not current.held or current.is_expired(now):
                    logger.warning(
                        "Lease held by %s (%s) expired at %s; taking it over",
                        current.holder_label,
                        current.holder_id,
                        current.expires_at.isoformat(),
                    )
                    record = self._new_record(now, reason)
                elif current.holder_id == self.holder_id:
                    if current.session_token != self.session_token:
                        logger.warning(
                            "Re-adopting lease left by an earlier session on this host (%s, acquired %s)",
                            self.holder_id,
                            current.acquired_at.isoformat(),
                        )
                    else:
                        logger.info("Lease already held by this session; extending it")
                    record = current.extended(now, self._duration, session_token=self.session_token)
                else:
                    logger.warning(
                        "Lease held by %s (%s) until %s: %s",
                        current.holder_label,
                        current.holder_id,
                        current.expires_at.isoformat(),
                        current.reason,
                    )
                    return False

            try:
                new_version = self.store.write(record, version, f"Lock: {reason}", deadline)
            except LeaseConflictError:
                # A retried write conflicts with our own earlier attempt when
                # that attempt landed but its response was lost.
                winner = self.store.read(deadline)
                self._observe(winner)
                if (
                    winner is None
                    or winner.record.holder_id != self.holder_id
                    or winner.record.session_token != self.session_token
                ):
                    logger.warning("Lease changed while acquiring (holder %s); another host moved first", self.holder_id)
                    return False
                logger.warning("Lease write conflicted with our own earlier attempt; keeping the lease it created")
                record = winner.record
                new_version = winner.version

            self._held = record
            self._version = new_version
            self._lost = False
            self._observed = LeaseState.from_record(record)

        self._timer.start()
        logger.info(
            "Lease acquired by %s (%s) until %s",
            self.holder_label,
            self.holder_id,
            record.expires_at.isoformat(),
        )
        return True

    def release(self) -> bool:
        """
        Release the lease if this host holds it.

        Returns:
            True if released or already free, False if another host holds it
            or the record changed underneath us
        """
        # Stop refreshing before touching the record: a refresh landing after
        # the delete would recreate it.
        self._timer.stop()
        try:
            with self._lock:
                deadline = self._deadline("lease release")
                stored = self.store.read(deadline)
                self._observe(stored)

                if stored is None or not stored.record.held:
                    logger.info("Lease already released")
                    self._forget()
                    return True

                if stored.record.holder_id != self.holder_id:
                    logger.warning(
                        "Cannot release lease: held by %s (%s), not %s",
                        stored.record.holder_label,
                        stored.record.holder_id,
                        self.holder_id,
                    )
                    self._forget()
                    return False

                try:
                    self.store.delete(stored.version, "Release lock", deadline)
                except LeaseConflictError:
                    logger.warning("Lease changed while releasing; leaving it in place")
                    self._resume_refresh()
                    return False

                self._forget()
                self._observed = LeaseState()
        except WorldSyncError:
            self._resume_refresh()
            raise

        logger.info("Lease released by %s", self.holder_id)
        return True

    def force_release(self, reason: str) -> bool:
        """
        Delete the lease record whoever holds it.

        For operator-invoked recovery after a crash. This can race with a
        legitimate holder that is still running.
        """
        logger.warning("Force releasing lease: %s", reason)
        self._timer.stop()
        with self._lock:
            deadline = self._deadline("lease force-release")
            stored = self.store.read(deadline)
            self._observe(stored)

            if stored is None:
                logger.info("No lease record present; nothing to force release")
                self._forget()
                return True

            if stored.record.holder_id != self.holder_id:
                logger.error(
                    "Force releasing lease held by %s (%s) since %s; that host may still be writing",
                    stored.record.holder_label,
                    stored.record.holder_id,
                    stored.record.acquired_at.isoformat(),
                )

            try:
                self.store.delete(stored.version, f"Force release: {reason}", deadline)
            except LeaseConflictError:
                logger.error("Lease changed during force release; re-check and retry")
                return False

            self._forget()
            self._observed = LeaseState()
        return True

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def _resume_refresh(self) -> None:
        if self.holds_lease:
            self._timer.start()

    def refresh(self) -> bool:
        """
        Extend the lease expiry if this host still holds it.

        Runs on the refresh timer. Returns False (ending the loop) once the
        lease has been taken over or removed; transient failures keep the
        loop alive so the next tick can try again.
        """
        lost_state: LeaseState | None = None
        with self._lock:
            if self._held is None:
                return False

            deadline = self._deadline("lease refresh")
            try:
                stored = self.store.read(deadline)
            except WorldSyncError as exc:
                logger.error("Lease refresh failed to read record: %s", exc)
                return True
            observed = self._observe(stored)

            if stored is None or not stored.record.held or stored.record.holder_id != self.holder_id:
                logger.error(
                    "Lease lost: record is now %s",
                    f"held by {observed.holder_label} ({observed.holder_id})" if observed.held else "absent",
                )
                self._forget()
                self._lost = True
                lost_state = observed
            else:
                record = stored.record.extended(self._clock(), self._duration, session_token=self.session_token)
                try:
                    version = self.store.write(record, stored.version, "Refresh lock", deadline)
                except LeaseConflictError:
                    logger.warning("Lease changed during refresh; re-checking on next tick")
                    return True
                except WorldSyncError as exc:
                    logger.error("Lease refresh failed to write record: %s", exc)
                    return True
                self._held = record
                self._version = version
                self._observed = LeaseState.from_record(record)
                logger.debug("Lease refreshed until %s", record.expires_at.isoformat())
                return True

        self._timer.stop()
        if self.on_lease_lost is not None:
            self.on_lease_lost(lost_state)
        return False

    def close(self) -> None:
        """Stop the refresh loop without touching the remote record."""
        self._timer.stop()


__all__ = ["LockCoordinator", "default_holder_id"]
