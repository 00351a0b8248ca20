"""
Shared infrastructure for the world sync core.

Configuration (config.py), the exception hierarchy (errors.py), retry and
deadline handling (retry.py), git subprocess helpers (git_ops.py), host
identity (identity.py), atomic file helpers (fileio.py) and the background
timer (timer.py).
"""

from worldsync.core.config import SyncConfig, load_config
from worldsync.core.errors import (
    ConfigError,
    LeaseConflictError,
    NotLeaseHolderError,
    OperationTimeoutError,
    RemoteRejectedError,
    RemoteUnavailableError,
    ReplicationError,
    SnapshotCorruptError,
    SnapshotNotFoundError,
    TransientReplicationError,
    WorkingCopyMissingError,
    WorldSyncError,
)
from worldsync.core.retry import Deadline, RetryPolicy, call_with_retry

__all__ = [
    "ConfigError",
    "Deadline",
    "LeaseConflictError",
    "NotLeaseHolderError",
    "OperationTimeoutError",
    "RemoteRejectedError",
    "RemoteUnavailableError",
    "ReplicationError",
    "RetryPolicy",
    "SnapshotCorruptError",
    "SnapshotNotFoundError",
    "SyncConfig",
    "TransientReplicationError",
    "WorkingCopyMissingError",
    "WorldSyncError",
    "call_with_retry",
    "load_config",
]
