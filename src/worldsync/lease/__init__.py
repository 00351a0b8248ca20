"""
Lease coordination.

The lease record lives in the coordination repository and is guarded by the
contents API's conditional writes (store.py). The coordinator (coordinator.py)
implements acquire, release, force-release and the refresh loop on top.
"""

from worldsync.lease.coordinator import LockCoordinator, default_holder_id
from worldsync.lease.models import LeaseRecord, LeaseState, StoredLease
from worldsync.lease.store import ContentsLeaseStore, LeaseStore

__all__ = [
    "ContentsLeaseStore",
    "LeaseRecord",
    "LeaseState",
    "LeaseStore",
    "LockCoordinator",
    "StoredLease",
    "default_holder_id",
]
