"""Sync state, snapshot, session result and event models."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Literal

SnapshotKind = Literal["auto", "manual", "pre-shutdown"]
SNAPSHOT_KINDS = ("auto", "manual", "pre-shutdown")


def _parse(value: object) -> datetime | None:
    return datetime.fromisoformat(str(value)) if value else None


class SessionPhase(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    PULLING = "pulling"
    ACTIVE = "active"
    PUSHING = "pushing"
    RELEASING = "releasing"
    ERROR = "error"


@dataclass(frozen=True)
class SyncState:
    """
    Process-wide sync status.

    Stored in: ~/.worldsync/sync-state.json
    File permissions: 0600 (owner read/write only)

    Fields:
    - last_sync_time: When the last pull or push completed
    - last_revision_id: Revision the working copy was at after it
    - sync_in_progress: True while a pull or push is running
    - last_error: Message of the last failed transition, None after a success
    - session_key: Key of the active (or last) session
    - pending_changes: True while the working copy may hold unpushed changes
    """
    last_sync_time: datetime | None = None
    last_revision_id: str | None = None
    sync_in_progress: bool = False
    last_error: str | None = None
    session_key: str | None = None
    pending_changes: bool = False

    def update(self, **changes: object) -> "SyncState":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, object]:
        """Serialize to JSON-compatible dict."""
        return {
            "last_sync_time": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "last_revision_id": self.last_revision_id,
            "sync_in_progress": self.sync_in_progress,
            "last_error": self.last_error,
            "session_key": self.session_key,
            "pending_changes": self.pending_changes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "SyncState":
        """Deserialize from JSON dict."""
        return cls(
            last_sync_time=_parse(data.get("last_sync_time")),
            last_revision_id=str(data["last_revision_id"]) if data.get("last_revision_id") else None,
            sync_in_progress=bool(data.get("sync_in_progress", False)),
            last_error=str(data["last_error"]) if data.get("last_error") else None,
            session_key=str(data["session_key"]) if data.get("session_key") else None,
            pending_changes=bool(data.get("pending_changes", False)),
        )


@dataclass(frozen=True)
class SnapshotInfo:
    """
    Metadata of one local snapshot of a session's world directory.

    Stored in: <backup_dir>/<session_key>/<id>/snapshot.json
    """
    id: str
    session_key: str
    revision_id: str | None
    timestamp: datetime
    size_bytes: int
    kind: SnapshotKind
    content_hash: str

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "session_key": self.session_key,
            "revision_id": self.revision_id,
            "timestamp": self.timestamp.isoformat(),
            "size_bytes": self.size_bytes,
            "kind": self.kind,
            "content_hash": self.content_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "SnapshotInfo":
        return cls(
            id=str(data["id"]),
            session_key=str(data["session_key"]),
            revision_id=str(data["revision_id"]) if data.get("revision_id") else None,
            timestamp=datetime.fromisoformat(str(data["timestamp"])),
            size_bytes=int(data.get("size_bytes", 0)),  # type: ignore[arg-type]
            kind=str(data.get("kind", "manual")),  # type: ignore[arg-type]
            content_hash=str(data.get("content_hash", "")),
        )


@dataclass(frozen=True)
class SnapshotStats:
    count: int
    total_bytes: int
    oldest: datetime | None
    newest: datetime | None


@dataclass(frozen=True)
class LeaseConflict:
    """Who holds the lease when a session could not start."""
    holder_label: str | None
    holder_id: str | None
    acquired_at: datetime | None
    expires_at: datetime | None
    reason: str | None = None

    def describe(self) -> str:
        since = self.acquired_at.isoformat() if self.acquired_at else "unknown time"
        return f"{self.holder_label or self.holder_id or 'another host'} since {since}"


@dataclass(frozen=True)
class SessionResult:
    """
    Outcome of a session transition.

    ``conflict`` is set only when the lease is held by another host;
    ``retryable`` tells the caller whether trying again later can help.
    """
    success: bool
    phase: SessionPhase
    session_key: str | None = None
    revision_id: str | None = None
    changed_count: int = 0
    error: str | None = None
    retryable: bool = False
    conflict: LeaseConflict | None = None
    warnings: tuple[str, ...] = field(default_factory=tuple)


class EventKind(str, Enum):
    LEASE_ACQUIRED = "lease-acquired"
    LEASE_RELEASED = "lease-released"
    LEASE_LOST = "lease-lost"
    SYNC_STARTED = "sync-started"
    SYNC_COMPLETED = "sync-completed"
    SYNC_FAILED = "sync-failed"
    SNAPSHOT_CREATED = "snapshot-created"


@dataclass(frozen=True)
class SyncEvent:
    """Notification for display surfaces. Nothing depends on delivery."""
    kind: EventKind
    timestamp: datetime
    session_key: str | None = None
    detail: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "timestamp": self.timestamp.isoformat(),
            "session_key": self.session_key,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "SyncEvent":
        detail = data.get("detail")
        return cls(
            kind=EventKind(str(data["kind"])),
            timestamp=datetime.fromisoformat(str(data["timestamp"])),
            session_key=str(data["session_key"]) if data.get("session_key") else None,
            detail=dict(detail) if isinstance(detail, dict) else {},
        )


__all__ = [
    "EventKind",
    "LeaseConflict",
    "SNAPSHOT_KINDS",
    "SessionPhase",
    "SessionResult",
    "SnapshotInfo",
    "SnapshotKind",
    "SnapshotStats",
    "SyncEvent",
    "SyncState",
]
