"""
Repository replication.

The working copy of the coordination repository is where world data lives
between sessions; pull and push move it to and from the remote of record.
"""

from worldsync.replication.manager import ReplicationManager
from worldsync.replication.models import TransferResult, WorldRevision, extract_session_key

__all__ = ["ReplicationManager", "TransferResult", "WorldRevision", "extract_session_key"]
