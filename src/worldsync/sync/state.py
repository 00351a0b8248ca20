"""SyncState persistence."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from worldsync.core.fileio import atomic_write_json
from worldsync.sync.models import SyncState

logger = logging.getLogger(__name__)


class SyncStateStore:
    """Load and save the process-wide SyncState file (atomic write, 0600)."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> SyncState:
        """
        Load state from disk.

        Returns:
            Stored SyncState, or a fresh one when the file is missing or corrupt
        """
        if not self.path.exists():
            return SyncState()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return SyncState.from_dict(data)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Sync state file %s is unreadable (%s); starting fresh", self.path, exc)
            return SyncState()

    def save(self, state: SyncState) -> None:
        atomic_write_json(self.path, state.to_dict())


__all__ = ["SyncStateStore"]
