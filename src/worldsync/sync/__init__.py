"""
Hosting sessions.

The orchestrator (orchestrator.py) sequences lease and replication calls;
snapshots.py keeps local world copies, state.py persists SyncState and
events.py delivers SyncEvents to subscribers and the event journal.
"""

from worldsync.sync.events import EventBus
from worldsync.sync.models import (
    EventKind,
    LeaseConflict,
    SessionPhase,
    SessionResult,
    SnapshotInfo,
    SnapshotStats,
    SyncEvent,
    SyncState,
)
from worldsync.sync.orchestrator import SyncOrchestrator
from worldsync.sync.snapshots import SnapshotStore
from worldsync.sync.state import SyncStateStore

__all__ = [
    "EventBus",
    "EventKind",
    "LeaseConflict",
    "SessionPhase",
    "SessionResult",
    "SnapshotInfo",
    "SnapshotStats",
    "SnapshotStore",
    "SyncEvent",
    "SyncOrchestrator",
    "SyncState",
    "SyncStateStore",
]
