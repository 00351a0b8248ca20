"""Atomic JSON files and cross-platform file locking."""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Any

# Cross-platform file locking
if sys.platform == "win32":
    import msvcrt
else:
    import fcntl


def lock_file(file_handle) -> None:
    """
    Block until this process holds an exclusive lock on an open file.

    append_jsonl takes it around each write to the session event journal, so
    a CLI command and a long-running `host` process appending at the same
    time never interleave partial lines. Advisory only: readers do not lock.
    """
    if sys.platform == "win32":
        msvcrt.locking(file_handle.fileno(), msvcrt.LK_LOCK, 1)
    else:
        fcntl.flock(file_handle.fileno(), fcntl.LOCK_EX)


def unlock_file(file_handle) -> None:
    """Release the lock taken by lock_file; call it before closing the handle."""
    if sys.platform == "win32":
        msvcrt.locking(file_handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(file_handle.fileno(), fcntl.LOCK_UN)


def atomic_write_json(path: Path, data: Any, mode: int | None = 0o600) -> None:
    """
    Write JSON to ``path`` atomically.

    Writes to a sibling temp file, fsyncs, then renames over the target so a
    crash never leaves a half-written file behind.

    Args:
        path: Destination file
        data: JSON-serializable payload
        mode: File permissions to apply after the rename (None to skip)
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    temp_path = path.with_suffix(path.suffix + ".tmp")
    with open(temp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.flush()
        os.fsync(f.fileno())

    temp_path.replace(path)

    if mode is not None:
        path.chmod(mode)


def append_jsonl(path: Path, record: dict[str, Any]) -> None:
    """Append one JSON record to a newline-delimited file under an exclusive lock."""
    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, separators=(",", ":")) + "\n"

    with open(path, "a", encoding="utf-8") as f:
        lock_file(f)
        try:
            f.write(line)
            f.flush()
            os.fsync(f.fileno())
        finally:
            unlock_file(f)


def read_jsonl(path: Path) -> list[dict[str, Any]]:
    """Read all records from a newline-delimited JSON file, skipping corrupt lines."""
    if not path.exists():
        return []

    records: list[dict[str, Any]] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                value = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(value, dict):
                records.append(value)
    return records


__all__ = ["append_jsonl", "atomic_write_json", "lock_file", "read_jsonl", "unlock_file"]
