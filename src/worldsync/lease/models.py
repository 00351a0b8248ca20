"""Lease record and lease state models."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: object) -> datetime:
    """Parse an ISO timestamp, treating naive values and ``Z`` as UTC."""
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class LeaseRecord:
    """
    The lock record persisted in the coordination repository.

    Stored at: ``<repo>/.worldsync.lock`` (JSON)

    Fields:
    - held: Always True for a live record (a deleted record means "free")
    - holder_label: Hostname of the holder, for display
    - holder_id: Stable per-machine identifier of the holder
    - acquired_at: When the lease was first acquired (unchanged by refresh)
    - expires_at: When the lease lapses unless refreshed
    - reason: Free-form reason given at acquire time
    - session_token: Token of the coordinator instance that last wrote it
    """
    held: bool
    holder_label: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime
    reason: str
    session_token: str = ""

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now

    def extended(self, now: datetime, duration: timedelta, session_token: str | None = None) -> "LeaseRecord":
        """Copy with a new expiry; the holder never changes."""
        changes: dict[str, object] = {"expires_at": now + duration}
        if session_token is not None:
            changes["session_token"] = session_token
        return replace(self, **changes)

    def to_dict(self) -> dict[str, object]:
        """Serialize to JSON-compatible dict."""
        return {
            "held": self.held,
            "holder_label": self.holder_label,
            "holder_id": self.holder_id,
            "acquired_at": self.acquired_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "reason": self.reason,
            "session_token": self.session_token,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "LeaseRecord":
        """Deserialize from JSON dict."""
        return cls(
            held=bool(data.get("held", True)),
            holder_label=str(data.get("holder_label", "")),
            holder_id=str(data["holder_id"]),
            acquired_at=parse_timestamp(data["acquired_at"]),
            expires_at=parse_timestamp(data["expires_at"]),
            reason=str(data.get("reason", "")),
            session_token=str(data.get("session_token", "")),
        )


@dataclass(frozen=True)
class StoredLease:
    """A lease record together with the remote's version token for it."""
    record: LeaseRecord
    version: str


@dataclass(frozen=True)
class LeaseState:
    """Last observed lease, as seen by this host. Advisory between refreshes."""
    held: bool = False
    holder_label: str | None = None
    acquired_at: datetime | None = None
    expires_at: datetime | None = None
    holder_id: str | None = None
    reason: str | None = None

    @classmethod
    def from_record(cls, record: LeaseRecord | None) -> "LeaseState":
        if record is None or not record.held:
            return cls()
        return cls(
            held=True,
            holder_label=record.holder_label,
            acquired_at=record.acquired_at,
            expires_at=record.expires_at,
            holder_id=record.holder_id,
            reason=record.reason,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.held and self.expires_at is not None and self.expires_at < now

    def to_dict(self) -> dict[str, object]:
        return {
            "held": self.held,
            "holder_label": self.holder_label,
            "holder_id": self.holder_id,
            "acquired_at": self.acquired_at.isoformat() if self.acquired_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "reason": self.reason,
        }


__all__ = ["LeaseRecord", "LeaseState", "StoredLease", "parse_timestamp", "utcnow"]
