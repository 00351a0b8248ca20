"""Replication result and history models."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime

SESSION_MARKER = re.compile(r"\[session:([^\]]+)\]")
UNKNOWN_SESSION = "unknown"


def extract_session_key(message: str) -> str:
    """Return the ``[session:<key>]`` marker value, or ``"unknown"``."""
    match = SESSION_MARKER.search(message)
    return match.group(1) if match else UNKNOWN_SESSION


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a pull or push."""
    revision_id: str | None
    changed_count: int = 0


@dataclass(frozen=True)
class WorldRevision:
    """One historical snapshot (commit) of the coordination repository."""
    revision_id: str
    message: str
    timestamp: datetime
    author_label: str
    session_key: str = UNKNOWN_SESSION

    @property
    def summary(self) -> str:
        return self.message.splitlines()[0] if self.message else ""

    def to_dict(self) -> dict[str, object]:
        return {
            "revision_id": self.revision_id,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "author_label": self.author_label,
            "session_key": self.session_key,
        }


__all__ = ["SESSION_MARKER", "TransferResult", "WorldRevision", "extract_session_key"]
