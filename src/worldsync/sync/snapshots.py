"""Local point-in-time copies of a session's world directory.

Layout::

    <backup_dir>/<session_key>/<snapshot_id>/
        snapshot.json   SnapshotInfo
        world/          byte-for-byte copy of the world directory
"""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable

from worldsync.core.errors import SnapshotCorruptError, SnapshotNotFoundError
from worldsync.core.fileio import atomic_write_json
from worldsync.lease.models import utcnow
from worldsync.sync.models import SNAPSHOT_KINDS, SnapshotInfo, SnapshotKind, SnapshotStats

logger = logging.getLogger(__name__)

METADATA_FILE = "snapshot.json"
WORLD_DIR = "world"


def directory_size(path: Path) -> int:
    if not path.exists():
        return 0
    return sum(item.stat().st_size for item in path.rglob("*") if item.is_file())


def hash_directory(path: Path) -> str:
    """SHA-256 over relative paths and contents, in sorted path order."""
    digest = hashlib.sha256()
    if path.exists():
        for item in sorted(p for p in path.rglob("*") if p.is_file()):
            digest.update(item.relative_to(path).as_posix().encode("utf-8"))
            digest.update(b"\0")
            with open(item, "rb") as f:
                for chunk in iter(lambda: f.read(1024 * 1024), b""):
                    digest.update(chunk)
            digest.update(b"\0")
    return digest.hexdigest()


class SnapshotStore:
    """
    Create, list, restore and prune snapshots.

    Snapshots accumulate per session key and are pruned oldest-first once
    there are more than ``max_snapshots``.
    """

    def __init__(
        self,
        backup_path: Path,
        max_snapshots: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.backup_path = backup_path
        self.max_snapshots = max_snapshots
        self._clock = clock

    def _session_dir(self, session_key: str) -> Path:
        return self.backup_path / session_key

    def _snapshot_dir(self, session_key: str, snapshot_id: str) -> Path:
        if not snapshot_id or Path(snapshot_id).name != snapshot_id:
            raise SnapshotNotFoundError(session_key, snapshot_id)
        return self._session_dir(session_key) / snapshot_id

    def create(
        self,
        session_key: str,
        source: Path,
        kind: SnapshotKind = "manual",
        revision_id: str | None = None,
        prune: bool = True,
    ) -> SnapshotInfo:
        """
        Copy ``source`` into a new snapshot.

        A missing source directory yields an empty snapshot (new world).

        Args:
            session_key: Session the world belongs to
            source: World directory to copy
            kind: auto, manual or pre-shutdown
            revision_id: Working-copy revision at snapshot time
            prune: Apply retention after creating

        Returns:
            SnapshotInfo of the new snapshot
        """
        if kind not in SNAPSHOT_KINDS:
            raise ValueError(f"Unknown snapshot kind: {kind}")

        timestamp = self._clock()
        snapshot_id = f"{timestamp.strftime('%Y%m%dT%H%M%S%f')}-{secrets.token_hex(3)}"
        target = self._snapshot_dir(session_key, snapshot_id)
        world_copy = target / WORLD_DIR

        target.mkdir(parents=True, exist_ok=False)
        if source.exists():
            shutil.copytree(source, world_copy)
        else:
            logger.info("World directory %s does not exist yet; creating empty snapshot", source)
            world_copy.mkdir()

        info = SnapshotInfo(
            id=snapshot_id,
            session_key=session_key,
            revision_id=revision_id,
            timestamp=timestamp,
            size_bytes=directory_size(world_copy),
            kind=kind,
            content_hash=hash_directory(world_copy),
        )
        atomic_write_json(target / METADATA_FILE, info.to_dict(), mode=None)
        logger.info("Snapshot %s created (%s, %d bytes) for session %s", snapshot_id, kind, info.size_bytes, session_key)

        if prune:
            self.prune(session_key)
        return info

    def list(self, session_key: str | None = None) -> list[SnapshotInfo]:
        """Snapshots newest first, for one session key or all of them."""
        if session_key is not None:
            session_dirs = [self._session_dir(session_key)]
        elif self.backup_path.exists():
            session_dirs = [p for p in self.backup_path.iterdir() if p.is_dir()]
        else:
            session_dirs = []

        snapshots: list[SnapshotInfo] = []
        for session_dir in session_dirs:
            if not session_dir.exists():
                continue
            for entry in session_dir.iterdir():
                metadata = entry / METADATA_FILE
                if not metadata.is_file():
                    continue
                try:
                    with open(metadata, "r", encoding="utf-8") as f:
                        snapshots.append(SnapshotInfo.from_dict(json.load(f)))
                except (OSError, KeyError, TypeError, ValueError) as exc:
                    logger.warning("Skipping unreadable snapshot metadata %s: %s", metadata, exc)

        snapshots.sort(key=lambda info: (info.timestamp, info.id), reverse=True)
        return snapshots

    def get(self, session_key: str, snapshot_id: str) -> SnapshotInfo:
        metadata = self._snapshot_dir(session_key, snapshot_id) / METADATA_FILE
        if not metadata.is_file():
            raise SnapshotNotFoundError(session_key, snapshot_id)
        with open(metadata, "r", encoding="utf-8") as f:
            return SnapshotInfo.from_dict(json.load(f))

    def verify(self, session_key: str, snapshot_id: str) -> bool:
        """Recompute the snapshot's content hash and compare it with the recorded one."""
        info = self.get(session_key, snapshot_id)
        actual = hash_directory(self._snapshot_dir(session_key, snapshot_id) / WORLD_DIR)
        if actual != info.content_hash:
            logger.error(
                "Snapshot %s (session %s) is damaged: content hash %s, expected %s",
                snapshot_id,
                session_key,
                actual,
                info.content_hash,
            )
            return False
        return True

    def restore(
        self,
        session_key: str,
        snapshot_id: str,
        target: Path,
        revision_id: str | None = None,
    ) -> SnapshotInfo:
        """
        Replace ``target`` with the contents of a snapshot.

        The snapshot is verified, then the current contents of ``target``
        are saved as an ``auto`` snapshot. Retention runs only after the
        copy, so the snapshot being restored cannot be pruned away by that
        safety copy.

        Raises:
            SnapshotNotFoundError: No such snapshot for this session key
            SnapshotCorruptError: The snapshot no longer matches its content hash
        """
        info = self.get(session_key, snapshot_id)
        if not self.verify(session_key, snapshot_id):
            raise SnapshotCorruptError(session_key, snapshot_id)
        source = self._snapshot_dir(session_key, snapshot_id) / WORLD_DIR

        self.create(session_key, target, kind="auto", revision_id=revision_id, prune=False)

        if target.exists():
            shutil.rmtree(target)
        shutil.copytree(source, target)
        logger.info("World for session %s restored from snapshot %s", session_key, snapshot_id)

        self.prune(session_key)
        return info

    def delete(self, session_key: str, snapshot_id: str) -> None:
        path = self._snapshot_dir(session_key, snapshot_id)
        if not (path / METADATA_FILE).is_file():
            raise SnapshotNotFoundError(session_key, snapshot_id)
        shutil.rmtree(path)
        logger.info("Snapshot %s deleted (session %s)", snapshot_id, session_key)

    def prune(self, session_key: str) -> list[str]:
        """Delete the oldest snapshots beyond ``max_snapshots``; returns removed ids."""
        removed: list[str] = []
        for info in self.list(session_key)[self.max_snapshots:]:
            shutil.rmtree(self._snapshot_dir(session_key, info.id), ignore_errors=True)
            removed.append(info.id)
        if removed:
            logger.info("Pruned %d old snapshots for session %s", len(removed), session_key)
        return removed

    def stats(self, session_key: str | None = None) -> SnapshotStats:
        snapshots = self.list(session_key)
        return SnapshotStats(
            count=len(snapshots),
            total_bytes=sum(info.size_bytes for info in snapshots),
            oldest=snapshots[-1].timestamp if snapshots else None,
            newest=snapshots[0].timestamp if snapshots else None,
        )


__all__ = ["SnapshotStore", "directory_size", "hash_directory"]
