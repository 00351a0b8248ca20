"""Exception hierarchy shared by the lease, replication and sync layers."""

from __future__ import annotations

from datetime import datetime


class WorldSyncError(Exception):
    """Base exception for all worldsync errors."""

    retryable: bool = False


class ConfigError(WorldSyncError):
    """Raised when configuration is missing or inconsistent."""


class RemoteUnavailableError(WorldSyncError):
    """Raised when a remote call keeps failing after the retry budget is spent."""

    retryable = True

    def __init__(self, message: str, operation: str = "", status_code: int | None = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code


class RemoteRejectedError(WorldSyncError):
    """Raised when the remote refuses a request outright (auth, permissions, bad input)."""

    def __init__(self, message: str, operation: str = "", status_code: int | None = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code


class OperationTimeoutError(WorldSyncError):
    """Raised when an operation exceeds its overall deadline."""

    retryable = True

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(f"{operation} did not finish within {timeout:.0f}s")
        self.operation = operation
        self.timeout = timeout


class LeaseConflictError(WorldSyncError):
    """Raised when a conditional write on the lease record is rejected.

    The record changed between our read and our write: another host moved
    first. Callers re-evaluate state instead of retrying blindly.
    """

    def __init__(
        self,
        message: str,
        holder_id: str | None = None,
        holder_label: str | None = None,
        acquired_at: datetime | None = None,
        expires_at: datetime | None = None,
    ) -> None:
        super().__init__(message)
        self.holder_id = holder_id
        self.holder_label = holder_label
        self.acquired_at = acquired_at
        self.expires_at = expires_at


class NotLeaseHolderError(WorldSyncError):
    """Raised when an operation requires the lease and this host does not hold it."""


class ReplicationError(WorldSyncError):
    """Raised when a git operation on the working copy fails."""

    def __init__(self, operation: str, message: str, command: str = "", stderr: str = "") -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.command = command
        self.stderr = stderr


class TransientReplicationError(ReplicationError):
    """A network-facing git command failed and may succeed on retry."""

    retryable = True


class WorkingCopyMissingError(WorldSyncError):
    """Raised when the local working copy has not been initialized."""


class SnapshotNotFoundError(WorldSyncError):
    """Raised when a snapshot id does not exist for the given session key."""

    def __init__(self, session_key: str, snapshot_id: str) -> None:
        super().__init__(f"Snapshot not found: {snapshot_id} (session {session_key})")
        self.session_key = session_key
        self.snapshot_id = snapshot_id


class SnapshotCorruptError(WorldSyncError):
    """Raised when a snapshot no longer matches the content hash recorded at creation."""

    def __init__(self, session_key: str, snapshot_id: str) -> None:
        super().__init__(f"Snapshot {snapshot_id} (session {session_key}) failed verification; refusing to restore it")
        self.session_key = session_key
        self.snapshot_id = snapshot_id


__all__ = [
    "ConfigError",
    "LeaseConflictError",
    "NotLeaseHolderError",
    "OperationTimeoutError",
    "RemoteRejectedError",
    "RemoteUnavailableError",
    "ReplicationError",
    "SnapshotCorruptError",
    "SnapshotNotFoundError",
    "TransientReplicationError",
    "WorkingCopyMissingError",
    "WorldSyncError",
]
